# asset_tracker/models/asset.py
import re
from datetime import datetime
from enum import Enum

from asset_tracker import db
from asset_tracker.errors import ValidationError


class AssetStatus(Enum):
    AVAILABLE = "Available"
    RESERVABLE = "Reservable"
    IN_USE = "In Use"
    UNDER_MAINTENANCE = "Under Maintenance"

    @classmethod
    def canonical(cls, value):
        """Map any casing/spacing of a status onto its enum member."""
        if isinstance(value, cls):
            return value
        if value is None:
            raise ValidationError("Status is required", field='status')
        key = re.sub(r'[\s_\-]+', '', str(value)).lower()
        try:
            return next(s for s in cls if s.value.replace(' ', '').lower() == key)
        except StopIteration:
            valid = ', '.join(s.value for s in cls)
            raise ValidationError(
                f"{value} is not a valid status. Valid statuses are: {valid}",
                field='status')


# Fields whose change invalidates the scan code snapshot
DISPLAY_FIELDS = ('name', 'asset_type', 'location', 'status', 'custodian_id', 'custodian_name')


class Asset(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    asset_type = db.Column(db.String(100), nullable=False)
    location = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(30), nullable=False, default=AssetStatus.AVAILABLE.value)

    custodian_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'),
                             nullable=True, index=True)
    custodian_name = db.Column(db.String(100))
    previous_custodian_name = db.Column(db.String(100))
    date_assigned = db.Column(db.DateTime)

    scan_code = db.Column(db.String(80), unique=True, index=True)
    scan_payload = db.Column(db.JSON)
    image_ref = db.Column(db.String(300))
    qr_image_ref = db.Column(db.String(300))

    category = db.Column(db.String(100))
    subcategory = db.Column(db.String(100))
    serial_number = db.Column(db.String(100))
    purchase_date = db.Column(db.Date)
    purchase_price = db.Column(db.Numeric(10, 2))
    warranty = db.Column(db.String(100))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_updated = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False)

    custodian = db.relationship('User', backref='assets_held', lazy=True)

    __mapper_args__ = {'version_id_col': version}

    @property
    def status_enum(self):
        return AssetStatus(self.status)

    @property
    def is_assigned(self):
        return self.custodian_id is not None

    def custody_state(self):
        return (self.status, self.custodian_id)

    def display_snapshot(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.asset_type,
            'location': self.location,
            'status': self.status,
            'custodian': self.custodian_name,
        }

    def touch(self):
        self.last_updated = datetime.utcnow()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.asset_type,
            'location': self.location,
            'status': self.status,
            'custodian_id': self.custodian_id,
            'custodian_name': self.custodian_name,
            'previous_custodian_name': self.previous_custodian_name,
            'date_assigned': self.date_assigned.isoformat() if self.date_assigned else None,
            'scan_code': self.scan_code,
            'image_ref': self.image_ref,
            'qr_image_ref': self.qr_image_ref,
            'category': self.category,
            'subcategory': self.subcategory,
            'serial_number': self.serial_number,
            'purchase_date': self.purchase_date.isoformat() if self.purchase_date else None,
            'purchase_price': str(self.purchase_price) if self.purchase_price is not None else None,
            'warranty': self.warranty,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
        }

    def __repr__(self):
        return f'<Asset {self.id}: {self.name} ({self.status})>'
