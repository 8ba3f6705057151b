# backend/modules/loyalty/models/loyalty_models.py

"""
Loyalty ledger models
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    DateTime,
    JSON,
    Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from enum import Enum

from core.database import Base
from core.mixins import TimestampMixin
from modules.users.models.user_models import User


class LoyaltyTransactionType(str, Enum):
    DAILY_LOGIN = "daily_login"
    ORDER_COMPLETED = "order_completed"
    ORDER_CANCELLED = "order_cancelled"
    REFERRAL = "referral"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    EXPIRED = "expired"
    POINTS_TO_DISCOUNT = "points_to_discount"


class LoyaltyPointTransaction(Base, TimestampMixin):
    """Append-only ledger row; ``points_balance_after`` is the user's balance once applied"""
    __tablename__ = "loyalty_point_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    transaction_type = Column(SQLEnum(LoyaltyTransactionType), nullable=False, index=True)
    points_change = Column(Integer, nullable=False)  # Positive for earning, negative for spending
    points_balance_before = Column(Integer, nullable=False)
    points_balance_after = Column(Integer, nullable=False)

    description = Column(String(255), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    expires_at = Column(DateTime, nullable=True)

    # Serialized LoyaltyMetadata variant, see schemas.loyalty_schemas
    transaction_data = Column(JSON, nullable=True)

    user = relationship(User)

    __table_args__ = (
        Index("ix_loyalty_point_transactions_user_type", "user_id", "transaction_type"),
        Index("ix_loyalty_point_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<LoyaltyPointTransaction(id={self.id}, user_id={self.user_id}, "
            f"points={self.points_change}, balance={self.points_balance_after})>"
        )
