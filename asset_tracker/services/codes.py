"""Scan identity generation and QR code rendering."""
import base64
import hashlib
import hmac
import json
import secrets
from io import BytesIO

import qrcode
from flask import current_app

from asset_tracker import db
from asset_tracker.errors import ConflictError
from asset_tracker.models import Asset
from asset_tracker.storage import get_object_store

MAX_CODE_ATTEMPTS = 3


def new_scan_code(asset):
    """Derive a code from the asset id, its display snapshot and a random nonce.

    The nonce keeps codes of neighbouring ids from being predictable.
    """
    prefix = current_app.config['SCAN_CODE_PREFIX']
    snapshot = json.dumps(asset.display_snapshot(), sort_keys=True, default=str)
    message = f"{asset.id}:{snapshot}:{secrets.token_hex(8)}".encode('utf-8')
    digest = hmac.new(current_app.config['SECRET_KEY'].encode('utf-8'), message, hashlib.sha256)
    return f"{prefix}-{asset.id}-{digest.hexdigest()[:12].upper()}"


def build_payload(asset, code):
    payload = asset.display_snapshot()
    payload['code'] = code
    return payload


def render_qr_png(payload):
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(json.dumps(payload, sort_keys=True))
    qr.make(fit=True)

    img_buffer = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(img_buffer, format='PNG')
    return img_buffer.getvalue()


def render_qr_base64(payload):
    return base64.b64encode(render_qr_png(payload)).decode()


def _code_taken(code):
    with db.session.no_autoflush:
        return db.session.query(Asset.id).filter_by(scan_code=code).first() is not None


def bind_scan_identity(asset):
    """Issue a fresh scan code, payload and code image for a flushed asset.

    Returns ``(old_qr_ref, new_qr_ref)``; the caller deletes the old image
    once the change is committed, or the new one if it is rolled back.
    """
    for _ in range(MAX_CODE_ATTEMPTS):
        code = new_scan_code(asset)
        if not _code_taken(code):
            break
    else:
        raise ConflictError("Could not generate a unique scan code", field='scan_code')

    payload = build_payload(asset, code)
    old_ref = asset.qr_image_ref
    new_ref = get_object_store().save(render_qr_png(payload), suffix='.png', folder='qr')
    asset.scan_code = code
    asset.scan_payload = payload
    asset.qr_image_ref = new_ref
    return old_ref, new_ref
