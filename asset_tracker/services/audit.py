"""Append-only audit log.

Entries are written after the state change they describe has been
committed, in their own transaction. A failed audit write is logged and
dropped; it never undoes or fails the asset mutation.
"""
import logging
import re
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from asset_tracker import db
from asset_tracker.errors import AuditWriteError
from asset_tracker.models import AuditEntry, AuditAction

logger = logging.getLogger(__name__)

DETAILS_MAX_LENGTH = 500

_URL = re.compile(r'(?:\b[a-z][a-z0-9+.\-]*://|\bwww\.)[^\s)\]]+', re.IGNORECASE)
_WINDOWS_PATH = re.compile(r'\b[a-z]:\\\S*', re.IGNORECASE)
_LOCAL_HOST = re.compile(r'\b(?:localhost|\d{1,3}(?:\.\d{1,3}){3})(?::\d+)?(?:/\S*)?', re.IGNORECASE)
_HOST_WITH_PORT = re.compile(r'\b(?:at|from|via)\s+[\w-]+(?:\.[\w-]+)+:\d{2,5}(?:/\S*)?', re.IGNORECASE)
# Absolute paths with at least two segments
_POSIX_PATH = re.compile(r'(?<![\w.:/])/(?:[\w.~-]+/)+[\w.~-]+/?')
_EMPTY_BRACKETS = re.compile(r'\(\s*\)|\[\s*\]')
_DANGLING_PREPOSITION = re.compile(r'\s+(?:at|from|via|on)\s*([.,;:]?)\s*$', re.IGNORECASE)


def sanitize(details):
    """Strip URLs, host names and absolute paths from free text.

    Scan details in particular used to carry the scanner page URL, which
    leaks internal hosts and ports into the log.
    """
    if details is None:
        return None
    text = str(details)
    for pattern in (_URL, _WINDOWS_PATH, _LOCAL_HOST, _HOST_WITH_PORT, _POSIX_PATH):
        text = pattern.sub('', text)
    text = _EMPTY_BRACKETS.sub('', text)
    text = re.sub(r'\s+', ' ', text).strip()
    text = _DANGLING_PREPOSITION.sub(r'\1', text).strip()
    if not text:
        return None
    return text[:DETAILS_MAX_LENGTH]


def _write(entry):
    db.session.add(entry)
    db.session.commit()


def append(principal, action, asset=None, details=None, asset_id=None, asset_name=None):
    """Record one event. Returns the stored entry, or None if the write failed."""
    action = AuditAction(action)
    if asset is not None:
        asset_id = asset.id
        asset_name = asset.name
    entry = AuditEntry(
        actor_id=principal.id,
        actor_name=principal.name,
        asset_id=asset_id,
        asset_name=asset_name,
        action=action.value,
        details=sanitize(details),
    )
    try:
        _write(entry)
    except SQLAlchemyError:
        db.session.rollback()
        error = AuditWriteError(f"Could not record '{action.value}' for asset {asset_id}")
        logger.error("%s (actor=%s)", error.message, principal.name, exc_info=True)
        return None

    logger.info("Audit: %s asset=%s by %s", action.value, asset_id, principal.name)
    try:
        retention_sweep()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit retention sweep failed")
    return entry


def retention_sweep(max_age=None):
    """Delete entries older than ``max_age`` (defaults to the configured window)."""
    if max_age is None:
        days = current_app.config.get('AUDIT_RETENTION_DAYS') or 0
        if days <= 0:
            return 0
        max_age = timedelta(days=days)
    cutoff = datetime.utcnow() - max_age
    removed = AuditEntry.query.filter(AuditEntry.timestamp < cutoff).delete(synchronize_session=False)
    db.session.commit()
    if removed:
        logger.info("Retention sweep removed %d audit entries older than %s", removed, cutoff)
    return removed


def _clamp_limit(limit):
    if limit is None:
        return current_app.config.get('AUDIT_RECENT_LIMIT', 20)
    return max(1, min(int(limit), current_app.config.get('AUDIT_MAX_LIMIT', 500)))


def recent(limit=None, asset_id=None, actor_id=None):
    query = AuditEntry.query
    if asset_id is not None:
        query = query.filter_by(asset_id=asset_id)
    if actor_id is not None:
        query = query.filter_by(actor_id=actor_id)
    return (query.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
            .limit(_clamp_limit(limit)).all())


def history_for_asset(asset_id, limit=None):
    return recent(limit=limit or current_app.config.get('AUDIT_MAX_LIMIT', 500), asset_id=asset_id)


def history_for_user(user_id, limit=None):
    return recent(limit=limit or current_app.config.get('AUDIT_MAX_LIMIT', 500), actor_id=user_id)
