# backend/modules/contracts/models/contract_models.py

from sqlalchemy import (Column, Integer, String, Text, ForeignKey, DateTime,
                        Boolean, Float, LargeBinary, Index, UniqueConstraint,
                        CheckConstraint, Enum as SQLEnum)
from sqlalchemy.orm import relationship
from enum import Enum

from core.database import Base
from core.mixins import TimestampMixin
from modules.orders.models.order_models import Order
from modules.users.models.user_models import User


class ContractStatus(str, Enum):
    PENDING_SIGNATURE = "PendingSignature"
    SIGNED = "Signed"


# Contract is signed once this many valid signatures exist
REQUIRED_SIGNATURES = 2


class ContractTemplate(Base, TimestampMixin):
    """Reusable header/body/footer text with ``{{ key }}`` placeholders"""
    __tablename__ = "contract_templates"

    id = Column(Integer, primary_key=True, index=True)
    template_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    header_content = Column(Text, nullable=False)
    body_content = Column(Text, nullable=False)
    footer_content = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)

    contracts = relationship("Contract", back_populates="template")

    def __repr__(self):
        return f"<ContractTemplate(id={self.id}, name='{self.template_name}')>"


class Contract(Base, TimestampMixin):
    """The rendered legal document for one order"""
    __tablename__ = "contracts"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    renter_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("contract_templates.id"), nullable=False)

    content = Column(Text, nullable=False)
    custom_clauses = Column(Text, nullable=True)
    status = Column(
        SQLEnum(ContractStatus), nullable=False, default=ContractStatus.PENDING_SIGNATURE, index=True
    )
    signed_at = Column(DateTime, nullable=True)

    order = relationship(Order)
    template = relationship("ContractTemplate", back_populates="contracts")
    signatures = relationship(
        "ContractSignature",
        back_populates="contract",
        order_by="ContractSignature.id",
    )

    @property
    def is_fully_signed(self) -> bool:
        return self.status == ContractStatus.SIGNED

    def __repr__(self):
        return f"<Contract(id={self.id}, order_id={self.order_id}, status={self.status})>"


class UserSignature(Base, TimestampMixin):
    """
    A user's signature image. The raw payload is stored AES encrypted; the
    asset URL points at the rendered image. Once referenced by a valid
    contract signature the row is frozen: replacing it creates a new row.
    """
    __tablename__ = "user_signatures"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    signature_data = Column(LargeBinary, nullable=False)
    iv = Column(String(32), nullable=False)
    image_url = Column(String(500), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=True)

    user = relationship(User)

    __table_args__ = (
        Index("ix_user_signatures_user_active", "user_id", "is_active"),
    )

    def __repr__(self):
        return f"<UserSignature(id={self.id}, user_id={self.user_id}, active={self.is_active})>"


class ContractSignature(Base, TimestampMixin):
    """One party's signature on one contract, with its overlay position"""
    __tablename__ = "contract_signatures"

    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id"), nullable=False, index=True)
    signature_id = Column(Integer, ForeignKey("user_signatures.id"), nullable=False, index=True)
    signer_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    signed_at = Column(DateTime, nullable=False)
    is_valid = Column(Boolean, nullable=False, default=True)
    # Percent of page width / height
    position_x = Column(Float, nullable=False)
    position_y = Column(Float, nullable=False)
    verification_note = Column(String(500), nullable=True)

    contract = relationship("Contract", back_populates="signatures")
    signature = relationship("UserSignature")

    __table_args__ = (
        UniqueConstraint("contract_id", "signer_id", name="uq_contract_signature_signer"),
        CheckConstraint("position_x >= 0 AND position_x <= 100", name="signature_position_x_range"),
        CheckConstraint("position_y >= 0 AND position_y <= 100", name="signature_position_y_range"),
    )

    @property
    def image_url(self):
        return self.signature.image_url if self.signature else None

    def __repr__(self):
        return f"<ContractSignature(id={self.id}, contract_id={self.contract_id}, signer_id={self.signer_id})>"
