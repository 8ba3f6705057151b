# backend/modules/items/models/item_models.py

from sqlalchemy import (Column, Integer, String, Text, ForeignKey, JSON,
                        Enum as SQLEnum, Index, CheckConstraint)
from sqlalchemy.orm import relationship
from enum import Enum, IntEnum

from core.database import Base
from core.mixins import TimestampMixin
from modules.users.models.user_models import User


class PriceUnit(IntEnum):
    """Billing unit codes as stored on items"""
    HOUR = 1
    DAY = 2
    WEEK = 3
    MONTH = 4


class ItemStatus(str, Enum):
    """Listing lifecycle; replaces the independent active/deleted flags"""
    PENDING = "pending"          # Awaiting moderation
    AVAILABLE = "available"      # Listed and rentable
    UNAVAILABLE = "unavailable"  # Hidden by owner or moderator
    DELETED = "deleted"


ITEM_STATUS_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.AVAILABLE, ItemStatus.UNAVAILABLE, ItemStatus.DELETED},
    ItemStatus.AVAILABLE: {ItemStatus.UNAVAILABLE, ItemStatus.DELETED},
    ItemStatus.UNAVAILABLE: {ItemStatus.AVAILABLE, ItemStatus.DELETED},
    ItemStatus.DELETED: set(),
}


class Item(Base, TimestampMixin):
    """
    A rentable listing. Only the order workflow writes ``available_quantity``
    and ``rent_count``.
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    images = Column(JSON, nullable=False, default=list)

    price_unit = Column(Integer, nullable=True)
    base_price = Column(Integer, nullable=True)
    deposit_amount = Column(Integer, nullable=False, default=0)

    quantity = Column(Integer, nullable=False, default=1)
    available_quantity = Column(Integer, nullable=False, default=1)
    rent_count = Column(Integer, nullable=False, default=0)
    # In price units; null means no cap
    max_rental_duration = Column(Integer, nullable=True)

    status = Column(SQLEnum(ItemStatus), nullable=False, default=ItemStatus.PENDING, index=True)

    owner = relationship(User, foreign_keys=[owner_id])

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="item_available_non_negative"),
        CheckConstraint("quantity >= 0", name="item_quantity_non_negative"),
        Index("ix_items_owner_status", "owner_id", "status"),
    )

    def can_transition_to(self, new_status: ItemStatus) -> bool:
        return new_status in ITEM_STATUS_TRANSITIONS[self.status]

    def __repr__(self):
        return f"<Item(id={self.id}, title='{self.title}', available={self.available_quantity}/{self.quantity})>"
