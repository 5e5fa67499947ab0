# asset_tracker/models/__init__.py
from asset_tracker import db

# Import models after db
from .user import User
from .asset import Asset, AssetStatus
from .audit_entry import AuditEntry, AuditAction

__all__ = ['User', 'Asset', 'AssetStatus', 'AuditEntry', 'AuditAction']
