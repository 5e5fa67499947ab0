import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-change-this'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        f'sqlite:///{BASE_DIR}/data/inventory.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Object store root for uploaded asset images and generated code images
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or str(BASE_DIR / 'data' / 'uploads')
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH') or 16 * 1024 * 1024)

    SCAN_CODE_PREFIX = os.environ.get('SCAN_CODE_PREFIX') or 'AST'

    # 0 disables the sweep
    AUDIT_RETENTION_DAYS = int(os.environ.get('AUDIT_RETENTION_DAYS') or 365)
    AUDIT_RECENT_LIMIT = int(os.environ.get('AUDIT_RECENT_LIMIT') or 20)
    AUDIT_MAX_LIMIT = 500

    LOG_DIR = os.environ.get('LOG_DIR')
    LOG_FILE = os.environ.get('LOG_FILE') or 'asset_tracker.log'
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-key'
    BCRYPT_LOG_ROUNDS = 4
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_DIR = None
