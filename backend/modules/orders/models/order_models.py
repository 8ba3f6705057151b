from sqlalchemy import (Column, Integer, String, ForeignKey, DateTime, Float,
                        Text, Boolean, JSON, Index, CheckConstraint, text,
                        Enum as SQLEnum)
from sqlalchemy.orm import relationship
from core.database import Base
from core.mixins import TimestampMixin, SoftDeleteMixin
from modules.items.models.item_models import Item
from modules.users.models.user_models import User
from ..enums.order_enums import (OrderStatus, PaymentStatus, ReturnCondition,
                                 ExtensionStatus)


class Order(Base, TimestampMixin, SoftDeleteMixin):
    """
    One rental transaction. Created once, then mutated only through the
    order state machine; archived via ``deleted_at``.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)

    # Title, images, base price and unit as they were when the order was placed
    item_snapshot = Column(JSON, nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    price_unit = Column(Integer, nullable=False)
    rental_duration = Column(Integer, nullable=False)

    # Money, whole currency units
    rental_amount = Column(Integer, nullable=False)
    deposit_amount = Column(Integer, nullable=False, default=0)
    service_fee = Column(Integer, nullable=False, default=0)
    service_fee_rate = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    discount_breakdown = Column(JSON, nullable=True)
    final_amount = Column(Integer, nullable=False)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    # Lifecycle timestamps
    confirmed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    returned_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    disputed_at = Column(DateTime, nullable=True)

    renter_notes = Column(Text, nullable=True)
    return_notes = Column(Text, nullable=True)
    return_condition = Column(SQLEnum(ReturnCondition), nullable=True)
    damage_fee = Column(Integer, nullable=False, default=0)
    owner_notes = Column(Text, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolution = Column(Text, nullable=True)
    dispute_resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    dispute_resolved_at = Column(DateTime, nullable=True)
    refund_amount = Column(Integer, nullable=False, default=0)

    is_contract_signed = Column(Boolean, nullable=False, default=False)

    renter = relationship(User, foreign_keys=[renter_id])
    owner = relationship(User, foreign_keys=[owner_id])
    item = relationship(Item)
    extension_requests = relationship(
        "ExtensionRequest", back_populates="order", order_by="ExtensionRequest.id"
    )

    __table_args__ = (
        CheckConstraint("final_amount >= 0", name="order_final_amount_non_negative"),
        CheckConstraint("quantity >= 1", name="order_quantity_positive"),
        Index("ix_orders_renter_status", "renter_id", "status"),
        Index("ix_orders_owner_status", "owner_id", "status"),
    )

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.renter_id, self.owner_id)

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, final_amount={self.final_amount})>"


class ExtensionRequest(Base, TimestampMixin):
    """A renter's request to push back an in-progress order's end time"""
    __tablename__ = "order_extension_requests"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    decided_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    original_end_at = Column(DateTime, nullable=False)
    requested_end_at = Column(DateTime, nullable=False)
    extension_duration = Column(Integer, nullable=False)
    price_unit = Column(Integer, nullable=False)
    extension_fee = Column(Integer, nullable=False)

    status = Column(SQLEnum(ExtensionStatus), nullable=False, default=ExtensionStatus.PENDING)
    notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="extension_requests")

    __table_args__ = (
        # At most one pending request per order
        Index(
            "uq_extension_one_pending_per_order",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        CheckConstraint("extension_duration >= 1", name="extension_duration_positive"),
    )

    def __repr__(self):
        return f"<ExtensionRequest(id={self.id}, order_id={self.order_id}, status={self.status})>"
