from flask import Blueprint, jsonify, make_response
from flask_login import login_required, current_user
from sqlalchemy import func
import io
import csv

from asset_tracker import db
from asset_tracker.models import Asset, User
from asset_tracker.routes import admin_required
from asset_tracker.services import audit, registry

dashboard_bp = Blueprint('dashboard', __name__)

REPORT_COLUMNS = ['ID', 'Asset Name', 'Category', 'Type', 'Location', 'Status',
                  'Assigned To', 'Date Assigned', 'Serial Number', 'Scan Code']


@dashboard_bp.route('/')
@admin_required
def dashboard():
    counts = registry.asset_counts()
    recent_assets = Asset.query.order_by(Asset.id.desc()).limit(5).all()
    recent_activities = audit.recent()

    return jsonify({
        'total_assets': counts['total'],
        'assigned_assets': counts['assigned'],
        'assets_by_status': counts['by_status'],
        'assets_by_type': counts['by_type'],
        'assets_by_location': counts['by_location'],
        'total_users': db.session.query(func.count(User.id)).scalar(),
        'recent_assets': [asset.to_dict() for asset in recent_assets],
        'recent_activities': [entry.to_dict() for entry in recent_activities],
    })


@dashboard_bp.route('/mine')
@login_required
def my_assets():
    assets = registry.list_assets({'custodian_id': current_user.id})
    return jsonify({
        'user': current_user.to_dict(),
        'total_assets': len(assets),
        'assets': [asset.to_dict() for asset in assets],
    })


@dashboard_bp.route('/download_report')
@admin_required
def download_report():
    assets = Asset.query.order_by(Asset.id).all()

    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(REPORT_COLUMNS)

    for asset in assets:
        writer.writerow([
            asset.id, asset.name, asset.category or '', asset.asset_type, asset.location,
            asset.status, asset.custodian_name or '',
            asset.date_assigned.strftime('%Y-%m-%d') if asset.date_assigned else '',
            asset.serial_number or '', asset.scan_code,
        ])

    output.seek(0)

    response = make_response(output.getvalue())
    response.headers["Content-Disposition"] = "attachment; filename=asset_report.csv"
    response.headers["Content-type"] = "text/csv"

    return response
