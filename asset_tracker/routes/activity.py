from flask import request, jsonify

from asset_tracker.routes import activity_bp as bp, admin_required
from asset_tracker.services import audit


@bp.route('/')
@admin_required
def recent_activity():
    entries = audit.recent(
        limit=request.args.get('limit', type=int),
        asset_id=request.args.get('asset_id', type=int),
        actor_id=request.args.get('actor_id', type=int),
    )
    return jsonify([entry.to_dict() for entry in entries])


@bp.route('/users/<int:user_id>')
@admin_required
def user_activity(user_id):
    entries = audit.history_for_user(user_id, limit=request.args.get('limit', type=int))
    return jsonify([entry.to_dict() for entry in entries])
