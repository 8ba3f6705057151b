"""Authenticated identity handed to every core operation.

Authentication happens upstream; the core trusts the ``Actor`` it is given and
enforces its own authorization rules (owner-only, renter-only, role
exclusions) against it.
"""

from dataclasses import dataclass
from enum import Enum


class UserRole(str, Enum):
    RENTER = "renter"
    OWNER = "owner"
    MODERATOR = "moderator"
    ADMIN = "admin"


STAFF_ROLES = frozenset({UserRole.ADMIN, UserRole.MODERATOR})


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    id: int
    role: UserRole = UserRole.RENTER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_staff(self) -> bool:
        """Return ``True`` for admins and moderators."""
        return self.role in STAFF_ROLES
