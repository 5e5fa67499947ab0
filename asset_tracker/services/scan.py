"""Resolve a scanned code to the asset currently bound to it."""
import json
import logging

from asset_tracker.errors import NotFoundError, ValidationError
from asset_tracker.models import Asset, AuditAction
from asset_tracker.services import audit

logger = logging.getLogger(__name__)

PAYLOAD_KEYS = ('code', 'scan_code')


def parse_code(text):
    """Extract the scan code from camera-decoded text.

    Accepts either the bare code or the JSON payload printed in the QR
    image.
    """
    if text is None:
        raise ValidationError("A scan code is required", field='code')
    text = str(text).strip()
    if not text:
        raise ValidationError("A scan code is required", field='code')
    if text.startswith('{'):
        try:
            payload = json.loads(text)
        except ValueError:
            raise ValidationError("Unreadable code payload", field='code')
        if not isinstance(payload, dict):
            raise ValidationError("Unreadable code payload", field='code')
        for key in PAYLOAD_KEYS:
            if payload.get(key):
                return str(payload[key]).strip()
        raise ValidationError("Code payload does not contain a scan code", field='code')
    return text


def resolve(code, principal, scan_location=None):
    scan_code = parse_code(code)
    asset = Asset.query.filter_by(scan_code=scan_code).first()
    if asset is None:
        logger.info("Scan of unknown or retired code by %s", principal.name)
        raise NotFoundError("Item not found", field='code')

    details = f"Scanned by {principal.name}"
    if scan_location:
        details += f" at {scan_location}"
    audit.append(principal, AuditAction.SCANNED, asset, details)
    return asset
