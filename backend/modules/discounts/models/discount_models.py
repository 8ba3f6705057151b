# backend/modules/discounts/models/discount_models.py

from sqlalchemy import (Column, Integer, String, Float, Boolean, DateTime, Text,
                        ForeignKey, JSON, Index, UniqueConstraint, CheckConstraint,
                        Enum as SQLEnum)
from sqlalchemy.orm import relationship
from enum import Enum

from core.database import Base
from core.mixins import TimestampMixin


class DiscountType(str, Enum):
    """How the discount value is applied"""
    PERCENT = "percent"    # value is a percentage of the base amount
    FIXED = "fixed"        # value is a currency amount


class RedemptionStatus(str, Enum):
    APPLIED = "applied"
    REFUNDED = "refunded"


class Discount(Base, TimestampMixin):
    """A reusable discount code with its eligibility rules"""
    __tablename__ = "discounts"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)

    type = Column(SQLEnum(DiscountType), nullable=False)
    value = Column(Float, nullable=False)
    max_discount_amount = Column(Integer, nullable=False, default=0)  # 0 = uncapped
    min_order_amount = Column(Integer, nullable=False, default=0)

    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)

    usage_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    used_count = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)

    # Scope restrictions
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=True, index=True)
    allowed_user_ids = Column(JSON, nullable=False, default=list)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    assignments = relationship(
        "DiscountAssignment", back_populates="discount", cascade="all, delete-orphan"
    )
    redemptions = relationship("DiscountRedemption", back_populates="discount")

    __table_args__ = (
        CheckConstraint("usage_limit = 0 OR used_count <= usage_limit", name="discount_usage_within_limit"),
        CheckConstraint("used_count >= 0", name="discount_used_non_negative"),
        CheckConstraint("end_at > start_at", name="discount_window_valid"),
        Index("ix_discounts_public_active", "is_public", "is_active"),
    )

    def __repr__(self):
        return f"<Discount(code='{self.code}', type={self.type}, value={self.value})>"


class DiscountAssignment(Base, TimestampMixin):
    """Per-user grant of a private discount"""
    __tablename__ = "discount_assignments"

    id = Column(Integer, primary_key=True, index=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    per_user_limit = Column(Integer, nullable=False, default=1)  # 0 = unlimited
    used_count = Column(Integer, nullable=False, default=0)
    effective_from = Column(DateTime, nullable=True)
    effective_to = Column(DateTime, nullable=True)

    discount = relationship("Discount", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("discount_id", "user_id", name="uq_discount_assignment_user"),
        CheckConstraint("per_user_limit = 0 OR used_count <= per_user_limit", name="assignment_usage_within_limit"),
    )

    def __repr__(self):
        return f"<DiscountAssignment(discount_id={self.discount_id}, user_id={self.user_id}, used={self.used_count}/{self.per_user_limit})>"


class DiscountRedemption(Base, TimestampMixin):
    """One application of a discount to one order"""
    __tablename__ = "discount_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    discount_id = Column(Integer, ForeignKey("discounts.id"), nullable=False, index=True)
    assignment_id = Column(Integer, ForeignKey("discount_assignments.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    amount_applied = Column(Integer, nullable=False)
    status = Column(SQLEnum(RedemptionStatus), nullable=False, default=RedemptionStatus.APPLIED)
    refunded_at = Column(DateTime, nullable=True)

    discount = relationship("Discount", back_populates="redemptions")

    __table_args__ = (
        UniqueConstraint("discount_id", "order_id", name="uq_redemption_discount_order"),
    )

    def __repr__(self):
        return f"<DiscountRedemption(discount_id={self.discount_id}, order_id={self.order_id}, amount={self.amount_applied})>"
