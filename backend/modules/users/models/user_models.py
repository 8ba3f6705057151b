# backend/modules/users/models/user_models.py

from sqlalchemy import Column, Integer, String, LargeBinary, Enum as SQLEnum, CheckConstraint
from enum import Enum

from core.auth_context import UserRole
from core.database import Base
from core.mixins import TimestampMixin


class UserStatus(str, Enum):
    """Account lifecycle; replaces the independent active/deleted flags"""
    ACTIVE = "active"
    BANNED = "banned"
    DELETED = "deleted"


# Allowed moves between account states
USER_STATUS_TRANSITIONS = {
    UserStatus.ACTIVE: {UserStatus.BANNED, UserStatus.DELETED},
    UserStatus.BANNED: {UserStatus.ACTIVE, UserStatus.DELETED},
    UserStatus.DELETED: set(),
}


class User(Base, TimestampMixin):
    """
    Marketplace account as seen by the rental core.

    Registration and authentication live elsewhere; the core reads contact
    details, writes the loyalty balance and decrypts the identity document on
    demand.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(30), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.RENTER)
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.ACTIVE, index=True)

    # Denormalized loyalty balance; always equals the latest ledger row
    points = Column(Integer, nullable=False, default=0)

    # Identity document, AES encrypted JSON
    id_card_encrypted = Column(LargeBinary, nullable=True)
    id_card_iv = Column(String(32), nullable=True)

    __table_args__ = (
        CheckConstraint("points >= 0", name="user_points_non_negative"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"
