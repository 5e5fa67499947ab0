import logging
import os

from asset_tracker import db
from asset_tracker.models import User
from asset_tracker.principal import ADMIN

logger = logging.getLogger(__name__)


def seed_db():
    """Create the first admin account on an empty user table.

    Credentials come from ADMIN_USERNAME / ADMIN_PASSWORD; nothing is
    created when the password is not set.
    """
    if User.query.count() > 0:
        return None

    password = os.environ.get('ADMIN_PASSWORD')
    if not password:
        logger.warning("No users exist and ADMIN_PASSWORD is not set; skipping admin seed")
        return None

    admin = User(username=os.environ.get('ADMIN_USERNAME') or 'admin', role=ADMIN)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()
    logger.info("Seeded admin user %s", admin.username)
    return admin
