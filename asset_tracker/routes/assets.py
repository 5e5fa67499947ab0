# asset_tracker/routes/assets.py
from io import BytesIO

from flask import request, jsonify, send_file
from flask_login import login_required, current_user

from asset_tracker.errors import ImportFileError, ValidationError
from asset_tracker.routes import assets_bp as bp, admin_required, current_principal
from asset_tracker.services import audit, bulk_import, custody, registry, scan
from asset_tracker.services.codes import render_qr_base64, render_qr_png
from asset_tracker.storage import get_object_store


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


def _visible_asset(asset_id):
    asset = registry.get_asset(asset_id)
    if not current_user.is_admin and asset.custodian_id != current_user.id:
        return None
    return asset


@bp.route('/')
@login_required
def list_assets():
    filters = request.args.to_dict()
    if not current_user.is_admin:
        filters['custodian_id'] = current_user.id
    assets = registry.list_assets(filters)
    return jsonify([asset.to_dict() for asset in assets])


@bp.route('/', methods=['POST'])
@admin_required
def add_asset():
    asset = registry.create_asset(_payload(), current_principal(),
                                  image=request.files.get('asset_image'))
    return jsonify(asset.to_dict()), 201


@bp.route('/<int:asset_id>')
@login_required
def view_asset(asset_id):
    asset = _visible_asset(asset_id)
    if asset is None:
        return jsonify({'error': 'Unauthorized'}), 403
    return jsonify(asset.to_dict())


@bp.route('/<int:asset_id>', methods=['PATCH', 'PUT'])
@admin_required
def edit_asset(asset_id):
    data = _payload()
    data.pop('id', None)
    asset = registry.update_asset(asset_id, data, current_principal(),
                                  image=request.files.get('asset_image'))
    return jsonify(asset.to_dict())


@bp.route('/<int:asset_id>', methods=['DELETE'])
@admin_required
def delete_asset(asset_id):
    registry.delete_asset(asset_id, current_principal())
    return jsonify({'msg': 'Asset removed'})


@bp.route('/<int:asset_id>/image', methods=['POST'])
@admin_required
def upload_image(asset_id):
    image = request.files.get('asset_image')
    if image is None or not image.filename:
        raise ValidationError("No image uploaded", field='asset_image')
    asset = registry.replace_image(asset_id, image, current_principal())
    return jsonify(asset.to_dict())


@bp.route('/<int:asset_id>/assign', methods=['POST'])
@admin_required
def assign_asset(asset_id):
    data = _payload()
    if not data.get('user_id'):
        raise ValidationError("user_id is required", field='user_id')
    try:
        user_id = int(data['user_id'])
    except (TypeError, ValueError):
        raise ValidationError("user_id must be a number", field='user_id')
    asset = custody.assign_to(asset_id, user_id, current_principal(), user_name=data.get('user_name'))
    return jsonify(asset.to_dict())


@bp.route('/<int:asset_id>/unassign', methods=['POST'])
@admin_required
def unassign_asset(asset_id):
    return jsonify(custody.unassign(asset_id, current_principal()).to_dict())


@bp.route('/<int:asset_id>/maintenance', methods=['POST'])
@admin_required
def maintenance(asset_id):
    return jsonify(custody.enter_maintenance(asset_id, current_principal()).to_dict())


@bp.route('/<int:asset_id>/release', methods=['POST'])
@admin_required
def release_asset(asset_id):
    return jsonify(custody.release(asset_id, current_principal()).to_dict())


@bp.route('/scan', methods=['POST'])
@login_required
def scan_asset():
    data = _payload()
    asset = scan.resolve(data.get('code'), current_principal(),
                         scan_location=data.get('scan_location'))
    return jsonify(asset.to_dict())


@bp.route('/<int:asset_id>/qr')
@login_required
def get_asset_qr(asset_id):
    asset = _visible_asset(asset_id)
    if asset is None:
        return jsonify({'error': 'Unauthorized'}), 403

    if request.args.get('format') == 'base64':
        return jsonify({'scan_code': asset.scan_code,
                        'qr_code': render_qr_base64(asset.scan_payload)})

    store = get_object_store()
    if asset.qr_image_ref and store.exists(asset.qr_image_ref):
        return send_file(store.open(asset.qr_image_ref), mimetype='image/png',
                         download_name=f'{asset.scan_code}.png')
    return send_file(BytesIO(render_qr_png(asset.scan_payload)), mimetype='image/png',
                     download_name=f'{asset.scan_code}.png')


@bp.route('/<int:asset_id>/history')
@admin_required
def asset_history(asset_id):
    entries = audit.history_for_asset(asset_id, limit=request.args.get('limit', type=int))
    return jsonify([entry.to_dict() for entry in entries])


@bp.route('/import', methods=['POST'])
@admin_required
def import_assets():
    file = request.files.get('file')
    if file is None or not file.filename:
        raise ImportFileError("No file uploaded", field='file')
    report = bulk_import.import_file(file.stream, file.filename, current_principal())
    return jsonify(report.to_dict())
