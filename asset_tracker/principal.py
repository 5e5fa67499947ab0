from dataclasses import dataclass
from typing import Optional

from asset_tracker.errors import AuthorizationError

ADMIN = 'admin'
USER = 'user'
ROLES = (ADMIN, USER)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a core operation.

    Built once per request from the logged-in user and passed explicitly
    into every service call.
    """
    id: Optional[int]
    name: str
    role: str = USER

    @property
    def is_admin(self):
        return self.role == ADMIN

    def require_admin(self):
        if not self.is_admin:
            raise AuthorizationError('Admin privileges are required for this action')

    @classmethod
    def from_user(cls, user):
        return cls(id=user.id, name=user.username, role=user.role)
