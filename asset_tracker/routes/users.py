import logging
from datetime import datetime

from flask import request, jsonify, Blueprint
from flask_login import login_user, current_user, logout_user, login_required

from asset_tracker import db
from asset_tracker.errors import ConflictError, NotFoundError, ValidationError
from asset_tracker.models import Asset, User
from asset_tracker.principal import ROLES, USER
from asset_tracker.routes import admin_required, current_principal
from asset_tracker.services import custody, registry

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def _get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    return user


def _clean_username(value):
    username = value.strip() if isinstance(value, str) else ''
    if not username:
        raise ValidationError('Username is required', field='username')
    if len(username) > 100:
        raise ValidationError('Username must be at most 100 characters', field='username')
    return username


def _validate_password(password):
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters',
                              field='password')


def _validate_role(role):
    if role not in ROLES:
        raise ValidationError('Role must be either admin or user', field='role')


def _ensure_unique_username(username, exclude_id=None):
    existing = User.query.filter_by(username=username).first()
    if existing is not None and existing.id != exclude_id:
        raise ConflictError('User already exists', field='username')


@users_bp.route("/login", methods=['POST'])
def login():
    data = _payload()
    username, password = data.get('username'), data.get('password')
    user = None
    if isinstance(username, str) and isinstance(password, str):
        user = User.query.filter_by(username=username.strip()).first()
    if user and user.check_password(password):
        login_user(user, remember=bool(data.get('remember')))
        user.last_login = datetime.utcnow()
        db.session.commit()
        logger.info("User %s logged in", user.username)
        return jsonify(user.to_dict())
    return jsonify({'error': 'Login Unsuccessful. Please check username and password'}), 401


@users_bp.route("/logout", methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'msg': 'Logged out'})


@users_bp.route("/me")
@login_required
def me():
    return jsonify(current_user.to_dict())


@users_bp.route("/users")
@admin_required
def list_users():
    users = User.query.order_by(User.created_at.desc()).all()
    return jsonify([user.to_dict() for user in users])


@users_bp.route("/users", methods=['POST'])
@admin_required
def create_user():
    data = _payload()
    username = _clean_username(data.get('username'))
    password = data.get('password')
    _validate_password(password)
    role = data.get('role') or USER
    _validate_role(role)
    _ensure_unique_username(username)

    user = User(username=username, email=(data.get('email') or None), role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    logger.info("User %s created by %s", username, current_user.username)
    return jsonify({'msg': 'User created successfully', 'userId': user.id}), 201


@users_bp.route("/users/<int:user_id>")
@admin_required
def get_user(user_id):
    return jsonify(_get_user_or_404(user_id).to_dict())


@users_bp.route("/users/<int:user_id>", methods=['PATCH', 'PUT'])
@admin_required
def update_user(user_id):
    user = _get_user_or_404(user_id)
    data = _payload()

    renamed = False
    if 'username' in data:
        username = _clean_username(data['username'])
        _ensure_unique_username(username, exclude_id=user.id)
        renamed = username != user.username
        user.username = username
    if data.get('role'):
        _validate_role(data['role'])
        user.role = data['role']
    if data.get('password'):
        _validate_password(data['password'])
        user.set_password(data['password'])
    if 'email' in data:
        user.email = data['email'] or None

    db.session.commit()

    if renamed:
        # Keep the denormalized custodian name on held assets in step
        for asset_id in [a.id for a in Asset.query.filter_by(custodian_id=user.id)]:
            registry.update_asset(asset_id, {'custodian_id': user.id, 'custodian_name': user.username},
                                  current_principal())
    return jsonify({'msg': 'User updated successfully'})


@users_bp.route("/users/<int:user_id>", methods=['DELETE'])
@admin_required
def delete_user(user_id):
    user = _get_user_or_404(user_id)
    if user.id == current_user.id:
        raise ValidationError('Admin cannot delete their own account')

    released = custody.release_all_for_user(user.id, current_principal())
    db.session.delete(user)
    db.session.commit()
    logger.info("User %s deleted by %s, %d assets released", user_id, current_user.username, len(released))
    return jsonify({'msg': 'User deleted successfully', 'released_assets': released})
