"""Custody transitions layered on the registry.

Each transition checks its precondition against the freshly read asset,
writes the new state through ``registry.mutate_asset`` and then records
exactly one audit entry.
"""
import logging

from asset_tracker.errors import ConflictError
from asset_tracker.models import Asset, AssetStatus, AuditAction
from asset_tracker.services import audit, registry

logger = logging.getLogger(__name__)


def _transition(asset, status, objects, custodian=None, custodian_name=None):
    registry.apply_status(asset, status, custodian, custodian_name)
    asset.touch()
    registry.regenerate_scan_identity(asset, objects)


def assign_to(asset_id, user_id, principal, user_name=None):
    principal.require_admin()
    user = registry.get_user(user_id, field='user_id')

    def apply(asset, objects):
        if asset.status_enum is AssetStatus.IN_USE and asset.custodian_id == user.id:
            raise ConflictError(f"Asset is already assigned to {user.username}")
        previous = asset.custodian_name
        _transition(asset, AssetStatus.IN_USE, objects, user, user_name)
        return previous

    asset, previous = registry.mutate_asset(asset_id, apply)
    details = f"Assigned {asset.name} to {asset.custodian_name}"
    if previous and previous != asset.custodian_name:
        details += f" (previously {previous})"
    logger.info("Asset %s assigned to user %s by %s", asset.id, user.id, principal.name)
    audit.append(principal, AuditAction.ASSIGNED, asset, details)
    return asset


def _is_free(asset):
    return asset.status_enum is AssetStatus.AVAILABLE and not asset.is_assigned


def unassign(asset_id, principal):
    principal.require_admin()
    def apply(asset, objects):
        if _is_free(asset):
            raise ConflictError("Asset is already unassigned and available")
        previous = asset.custodian_name
        _transition(asset, AssetStatus.AVAILABLE, objects)
        return previous

    asset, previous = registry.mutate_asset(asset_id, apply)
    details = f"Unassigned {asset.name}"
    if previous:
        details += f" from {previous}"
    logger.info("Asset %s unassigned by %s", asset.id, principal.name)
    audit.append(principal, AuditAction.UNASSIGNED, asset, details)
    return asset


def enter_maintenance(asset_id, principal):
    principal.require_admin()
    def apply(asset, objects):
        if asset.status_enum is AssetStatus.UNDER_MAINTENANCE:
            raise ConflictError("Asset is already under maintenance")
        _transition(asset, AssetStatus.UNDER_MAINTENANCE, objects)

    asset, _ = registry.mutate_asset(asset_id, apply)
    details = f"{asset.name} sent to maintenance"
    if asset.previous_custodian_name:
        details += f" (last held by {asset.previous_custodian_name})"
    logger.info("Asset %s entered maintenance by %s", asset.id, principal.name)
    audit.append(principal, AuditAction.MAINTENANCE, asset, details)
    return asset


def release(asset_id, principal):
    principal.require_admin()
    def apply(asset, objects):
        if _is_free(asset):
            raise ConflictError("Asset is already available")
        previous_status = asset.status
        _transition(asset, AssetStatus.AVAILABLE, objects)
        return previous_status

    asset, previous_status = registry.mutate_asset(asset_id, apply)
    logger.info("Asset %s released by %s", asset.id, principal.name)
    audit.append(principal, AuditAction.AVAILABLE, asset,
                 f"{asset.name} released from {previous_status} to Available")
    return asset


def release_all_for_user(user_id, principal):
    """Unassign every asset held by a user. Returns the released asset ids."""
    principal.require_admin()
    released = []
    held = Asset.query.filter_by(custodian_id=user_id).order_by(Asset.id).all()
    for asset_id in [a.id for a in held]:
        unassign(asset_id, principal)
        released.append(asset_id)
    return released
