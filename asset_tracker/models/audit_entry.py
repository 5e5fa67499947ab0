from datetime import datetime
from enum import Enum

from asset_tracker import db


class AuditAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SCANNED = "scanned"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    MAINTENANCE = "maintenance"
    AVAILABLE = "available"


class AuditEntry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, nullable=True, index=True)  # None for system events
    actor_name = db.Column(db.String(100), nullable=False)
    # Plain column, not a foreign key: entries outlive deleted assets
    asset_id = db.Column(db.Integer, nullable=True, index=True)
    asset_name = db.Column(db.String(200))
    action = db.Column(db.String(20), nullable=False)
    details = db.Column(db.String(500), nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'actor_name': self.actor_name,
            'asset_id': self.asset_id,
            'asset_name': self.asset_name,
            'action': self.action,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }

    def __repr__(self):
        return f"AuditEntry('{self.action}', '{self.timestamp}')"
