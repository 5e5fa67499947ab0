"""Asset registry: creation, patching, reads and deletion of asset records.

Every write goes through :func:`mutate_asset`, which serializes changes to
one asset with the ``version`` column: a write based on a stale read fails
with ``StaleDataError`` and is either retried once or turned into a
``ConflictError`` (see :func:`mutate_asset`).
"""
import logging
import re
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from asset_tracker import db
from asset_tracker.errors import ConflictError, NotFoundError, ValidationError
from asset_tracker.models import Asset, AssetStatus, AuditAction, User
from asset_tracker.models.asset import DISPLAY_FIELDS
from asset_tracker.services import audit
from asset_tracker.services.codes import bind_scan_identity
from asset_tracker.storage import discard_objects, get_object_store

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('name', 'type', 'location')
OPTIONAL_TEXT_FIELDS = ('category', 'subcategory', 'serial_number', 'warranty')
TEXT_LIMITS = {
    'name': 200, 'type': 100, 'location': 200, 'category': 100,
    'subcategory': 100, 'serial_number': 100, 'warranty': 100,
    'custodian_name': 100,
}
# Input field name -> Asset column
COLUMNS = {'type': 'asset_type'}
FIELD_LABELS = {
    'asset_type': 'type', 'custodian_name': 'custodian',
    'image_ref': 'image', 'serial_number': 'serial number',
    'purchase_date': 'purchase date', 'purchase_price': 'purchase price',
}
# Columns compared when summarizing an update
TRACKED_COLUMNS = (
    'name', 'asset_type', 'location', 'status', 'custodian_id', 'custodian_name',
    'category', 'subcategory', 'serial_number', 'purchase_date', 'purchase_price',
    'warranty', 'image_ref',
)
ALLOWED_FILTER_FIELDS = {'type', 'status', 'location', 'custodian_id', 'q'}
DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%m/%d/%Y', '%Y/%m/%d', '%d.%m.%Y')


class _Unset:
    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False


UNSET = _Unset()


@dataclass
class AssetPatch:
    """Fields an update may change. Absent fields stay ``UNSET``."""
    name: object = UNSET
    type: object = UNSET
    location: object = UNSET
    status: object = UNSET
    custodian_id: object = UNSET
    custodian_name: object = UNSET
    category: object = UNSET
    subcategory: object = UNSET
    serial_number: object = UNSET
    purchase_date: object = UNSET
    purchase_price: object = UNSET
    warranty: object = UNSET

    @classmethod
    def from_mapping(cls, data):
        allowed = {f.name for f in dataclass_fields(cls)}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise ValidationError(f"Field cannot be changed: {unknown[0]}", field=unknown[0])
        return cls(**dict(data))

    def supplied(self):
        return {f.name: getattr(self, f.name) for f in dataclass_fields(self)
                if getattr(self, f.name) is not UNSET}


@dataclass
class StoredObjects:
    """Object-store references touched by one mutation.

    ``new`` are dropped if the mutation rolls back, ``old`` once it commits.
    """
    new: list = field(default_factory=list)
    old: list = field(default_factory=list)


# Field parsing

def _text(value):
    if value is None:
        return ''
    return re.sub(r'\s+', ' ', str(value)).strip()


def _required_text(value, name):
    text = _text(value)
    if not text:
        raise ValidationError(f"{name.replace('_', ' ').capitalize()} is required", field=name)
    return _limit(text, name)


def _optional_text(value, name):
    return _limit(_text(value), name) or None


def _limit(text, name):
    limit = TEXT_LIMITS.get(name)
    if limit and len(text) > limit:
        raise ValidationError(f"{name.replace('_', ' ').capitalize()} must be at most {limit} characters",
                              field=name)
    return text


def parse_date(value, name='purchase_date'):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValidationError(f"Invalid date: {text}", field=name)


def parse_price(value, name='purchase_price'):
    if value is None or value == '':
        return None
    text = re.sub(r'[\s,$€£]', '', str(value))
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Invalid price: {value}", field=name)
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid price: {value}", field=name)
    return amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def _parse_user_id(value):
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid user id: {value}", field='custodian_id')


def clean_fields(data, partial=False):
    """Validate raw input fields and convert them to Asset column values.

    ``status`` comes back as an AssetStatus (or is absent), ``custodian_id``
    as an int or None.
    """
    cleaned = {}
    for name in REQUIRED_FIELDS:
        if name in data or not partial:
            cleaned[COLUMNS.get(name, name)] = _required_text(data.get(name), name)
    for name in OPTIONAL_TEXT_FIELDS:
        if name in data:
            cleaned[name] = _optional_text(data[name], name)
    if 'status' in data:
        if data['status'] in (None, ''):
            if partial:
                raise ValidationError("Status cannot be empty", field='status')
        else:
            cleaned['status'] = AssetStatus.canonical(data['status'])
    if 'purchase_date' in data:
        cleaned['purchase_date'] = parse_date(data['purchase_date'])
    if 'purchase_price' in data:
        cleaned['purchase_price'] = parse_price(data['purchase_price'])
    if 'custodian_id' in data:
        cleaned['custodian_id'] = _parse_user_id(data['custodian_id'])
    if 'custodian_name' in data:
        if 'custodian_id' not in data:
            raise ValidationError("Custodian name can only change together with the custodian",
                                  field='custodian_name')
        cleaned['custodian_name'] = _optional_text(data['custodian_name'], 'custodian_name')
    return cleaned


def get_user(user_id, field='custodian_id'):
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        raise NotFoundError(f"User {user_id} not found", field=field)
    return user


# Custody primitives shared with the custody manager

def set_custodian(asset, user, name=None):
    if asset.custodian_id != user.id:
        asset.date_assigned = datetime.utcnow()
    asset.custodian_id = user.id
    asset.custodian_name = name or user.username
    asset.previous_custodian_name = None


def clear_custodian(asset, keep_name=False):
    if keep_name:
        if asset.custodian_name:
            asset.previous_custodian_name = asset.custodian_name
    else:
        asset.previous_custodian_name = None
    asset.custodian_id = None
    asset.custodian_name = None
    asset.date_assigned = None


def apply_status(asset, status, custodian=None, custodian_name=None):
    """Move an asset to ``status`` keeping custodian and status consistent."""
    if status is AssetStatus.IN_USE:
        if custodian is not None:
            set_custodian(asset, custodian, custodian_name)
        elif not asset.is_assigned:
            raise ValidationError("An asset that is In Use needs a custodian", field='custodian_id')
    elif status is AssetStatus.UNDER_MAINTENANCE:
        if asset.is_assigned:
            clear_custodian(asset, keep_name=True)
    else:
        clear_custodian(asset)
    asset.status = status.value


def regenerate_scan_identity(asset, objects):
    old_ref, new_ref = bind_scan_identity(asset)
    objects.new.append(new_ref)
    objects.old.append(old_ref)


def status_action(old_status, new_status):
    """Audit action describing a status change."""
    if new_status is AssetStatus.IN_USE:
        return AuditAction.ASSIGNED
    if new_status is AssetStatus.UNDER_MAINTENANCE:
        return AuditAction.MAINTENANCE
    if new_status is AssetStatus.AVAILABLE and old_status is AssetStatus.IN_USE:
        return AuditAction.UNASSIGNED
    return AuditAction.AVAILABLE


# Reads

def get_asset(asset_id):
    asset = db.session.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError(f"Asset {asset_id} not found")
    return asset


def validate_filter_params(params):
    """Keep only known, non-empty filter keys."""
    return {k: v for k, v in params.items() if k in ALLOWED_FILTER_FIELDS and v not in (None, '')}


def list_assets(filters=None):
    filters = validate_filter_params(filters or {})
    query = Asset.query
    if 'type' in filters:
        query = query.filter_by(asset_type=filters['type'])
    if 'status' in filters:
        query = query.filter_by(status=AssetStatus.canonical(filters['status']).value)
    if 'location' in filters:
        query = query.filter_by(location=filters['location'])
    if 'custodian_id' in filters:
        query = query.filter_by(custodian_id=_parse_user_id(filters['custodian_id']))
    if 'q' in filters:
        pattern = f"%{filters['q']}%"
        query = query.filter(db.or_(Asset.name.ilike(pattern),
                                    Asset.serial_number.ilike(pattern),
                                    Asset.scan_code.ilike(pattern)))
    return query.order_by(Asset.id).all()


def asset_counts():
    def grouped(column):
        return dict(db.session.query(column, func.count(Asset.id)).group_by(column).all())

    by_status = grouped(Asset.status)
    return {
        'total': db.session.query(func.count(Asset.id)).scalar(),
        'by_status': {s.value: by_status.get(s.value, 0) for s in AssetStatus},
        'by_type': grouped(Asset.asset_type),
        'by_location': grouped(Asset.location),
        'assigned': Asset.query.filter(Asset.custodian_id.isnot(None)).count(),
    }


# Writes

def mutate_asset(asset_id, apply):
    """Apply ``apply(asset, objects)`` to one asset and commit.

    On a concurrent write the loser re-reads the asset. If the winner
    changed custody (status or custodian) the loser fails with
    ConflictError; otherwise its change is re-applied once. Returns
    ``(asset, result_of_apply)``.
    """
    for attempt in (1, 2):
        asset = get_asset(asset_id)
        custody_before = asset.custody_state()
        objects = StoredObjects()
        try:
            result = apply(asset, objects)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            discard_objects(*objects.new)
            current = get_asset(asset_id)
            if attempt == 2 or current.custody_state() != custody_before:
                logger.warning("Concurrent write on asset %s rejected", asset_id)
                raise ConflictError("Asset was changed by another request; reload and try again")
            logger.info("Concurrent write on asset %s, retrying", asset_id)
            continue
        except IntegrityError:
            db.session.rollback()
            discard_objects(*objects.new)
            raise ConflictError("Scan code is already bound to another asset", field='scan_code')
        except Exception:
            db.session.rollback()
            discard_objects(*objects.new)
            raise
        discard_objects(*objects.old)
        return asset, result


def create_asset(fields, principal, image=None):
    principal.require_admin()
    data = clean_fields(fields)
    status = data.pop('status', None)
    custodian_id = data.pop('custodian_id', None)
    custodian_name = data.pop('custodian_name', None)
    custodian = get_user(custodian_id) if custodian_id is not None else None

    if custodian is not None:
        if status not in (None, AssetStatus.IN_USE):
            raise ValidationError("An asset with a custodian must be In Use", field='status')
        status = AssetStatus.IN_USE
    elif status is AssetStatus.IN_USE:
        raise ValidationError("An asset that is In Use needs a custodian", field='custodian_id')

    asset = Asset(**data)
    apply_status(asset, status or AssetStatus.AVAILABLE, custodian, custodian_name)

    objects = StoredObjects()
    try:
        if image is not None:
            asset.image_ref = get_object_store().save_upload(image)
            objects.new.append(asset.image_ref)
        db.session.add(asset)
        db.session.flush()  # Flush to get the asset ID
        regenerate_scan_identity(asset, objects)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        discard_objects(*objects.new)
        raise ConflictError("Scan code is already bound to another asset", field='scan_code')
    except Exception:
        db.session.rollback()
        discard_objects(*objects.new)
        raise

    logger.info("Asset %s created by %s", asset.id, principal.name)
    details = f"Created {asset.name} ({asset.asset_type}) at {asset.location}"
    if asset.custodian_name:
        details += f", assigned to {asset.custodian_name}"
    audit.append(principal, AuditAction.CREATED, asset, details)
    return asset


def _snapshot(asset):
    return {column: getattr(asset, column) for column in TRACKED_COLUMNS}


def _format_value(value):
    if value is None or value == '':
        return '-'
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def describe_changes(before, after):
    parts = []
    for column in TRACKED_COLUMNS:
        if column == 'custodian_id' or before[column] == after[column]:
            continue
        label = FIELD_LABELS.get(column, column)
        parts.append(f"{label} '{_format_value(before[column])}' -> '{_format_value(after[column])}'")
    if not parts and before['custodian_id'] != after['custodian_id']:
        parts.append("custodian reassigned")
    return '; '.join(parts)


def _apply_patch(asset, data, objects, image):
    status = data.pop('status', None)
    custodian_supplied = 'custodian_id' in data
    custodian_id = data.pop('custodian_id', None)
    custodian_name = data.pop('custodian_name', None)
    custodian = get_user(custodian_id) if custodian_id is not None else None

    before = _snapshot(asset)
    for column, value in data.items():
        setattr(asset, column, value)

    current = asset.status_enum
    if custodian is not None:
        if status not in (None, AssetStatus.IN_USE):
            raise ValidationError("An asset with a custodian must be In Use", field='status')
        target = AssetStatus.IN_USE
    elif custodian_supplied:
        if status is AssetStatus.IN_USE:
            raise ValidationError("An asset that is In Use needs a custodian", field='custodian_id')
        if status is None and current is AssetStatus.IN_USE:
            clear_custodian(asset)
            target = AssetStatus.AVAILABLE
        else:
            target = status or current
            if asset.is_assigned:
                clear_custodian(asset, keep_name=target is AssetStatus.UNDER_MAINTENANCE)
    else:
        target = status or current
    apply_status(asset, target, custodian, custodian_name)

    if image is not None:
        objects.old.append(asset.image_ref)
        asset.image_ref = get_object_store().save_upload(image)
        objects.new.append(asset.image_ref)

    after = _snapshot(asset)
    if before == after:
        return None
    asset.touch()
    if any(before[c] != after[c] for c in DISPLAY_FIELDS):
        regenerate_scan_identity(asset, objects)
    return before, after


def update_asset(asset_id, patch, principal, image=None):
    principal.require_admin()
    if not isinstance(patch, AssetPatch):
        patch = AssetPatch.from_mapping(patch)
    data = clean_fields(patch.supplied(), partial=True)

    asset, changes = mutate_asset(asset_id, lambda a, objects: _apply_patch(a, dict(data), objects, image))
    if changes is None:
        logger.debug("Update of asset %s changed nothing", asset_id)
        return asset

    before, after = changes
    logger.info("Asset %s updated by %s", asset.id, principal.name)
    audit.append(principal, AuditAction.UPDATED, asset,
                 f"Updated {asset.name}: {describe_changes(before, after)}")

    old_status = AssetStatus(before['status'])
    new_status = AssetStatus(after['status'])
    if old_status is not new_status:
        details = f"Status of {asset.name} changed from {old_status.value} to {new_status.value}"
        if new_status is AssetStatus.IN_USE:
            details += f", assigned to {asset.custodian_name}"
        audit.append(principal, status_action(old_status, new_status), asset, details)
    return asset


def replace_image(asset_id, image, principal):
    return update_asset(asset_id, AssetPatch(), principal, image=image)


def delete_asset(asset_id, principal):
    principal.require_admin()
    asset = get_asset(asset_id)
    asset_name = asset.name
    refs = (asset.image_ref, asset.qr_image_ref)
    try:
        db.session.delete(asset)
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("Asset was changed by another request; reload and try again")
    except Exception:
        db.session.rollback()
        raise

    discard_objects(*refs)
    logger.info("Asset %s deleted by %s", asset_id, principal.name)
    audit.append(principal, AuditAction.DELETED, asset_id=asset_id, asset_name=asset_name,
                 details=f"Deleted {asset_name}")
