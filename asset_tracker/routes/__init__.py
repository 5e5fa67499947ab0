# asset_tracker/routes/__init__.py
from functools import wraps

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from asset_tracker.principal import Principal

# Create blueprints
assets_bp = Blueprint('assets', __name__, url_prefix='/assets')
activity_bp = Blueprint('activity', __name__, url_prefix='/activity')


def current_principal():
    return Principal.from_user(current_user)


def admin_required(view):
    @wraps(view)
    @login_required
    def wrapped(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Unauthorized'}), 403
        return view(*args, **kwargs)
    return wrapped


# Import views after blueprints are created
from . import assets, activity  # noqa: E402,F401
