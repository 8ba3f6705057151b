from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..enums.order_enums import (OrderStatus, PaymentStatus, ReturnCondition,
                                 ExtensionStatus)


class OrderCreate(BaseModel):
    item_id: int
    quantity: int = Field(1, ge=1)
    start_at: datetime
    end_at: datetime
    public_discount_code: Optional[str] = Field(None, max_length=32)
    private_discount_code: Optional[str] = Field(None, max_length=32)
    notes: Optional[str] = None

    @field_validator("end_at")
    def end_after_start(cls, v, info):
        start_at = info.data.get("start_at")
        if start_at and v <= start_at:
            raise ValueError("End time must be after start time")
        return v

    @field_validator("public_discount_code", "private_discount_code")
    def blank_code_is_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v


def _normalize_condition(v):
    # Accept any casing or spacing of the condition names
    if isinstance(v, str):
        key = v.replace(" ", "").replace("_", "").lower()
        for condition in ReturnCondition:
            if condition.value.lower() == key:
                return condition
    return v


class ReturnRequest(BaseModel):
    notes: Optional[str] = None


class CompleteRequest(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    damage_fee: int = 0
    owner_notes: Optional[str] = None

    @field_validator("condition", mode="before")
    def normalize_condition(cls, v):
        return _normalize_condition(v)

    @field_validator("damage_fee")
    def non_negative_fee(cls, v):
        return max(0, v)


class ResolveDisputeRequest(BaseModel):
    """Staff ruling on a disputed order"""

    decision: str = Field(..., min_length=1)
    notes: Optional[str] = None
    refund_percentage: int = Field(0, ge=0, le=100)
    condition: ReturnCondition = ReturnCondition.GOOD

    @field_validator("decision")
    def decision_not_blank(cls, v):
        if not v.strip():
            raise ValueError("A decision is required")
        return v.strip()

    @field_validator("condition", mode="before")
    def normalize_condition(cls, v):
        return _normalize_condition(v)


class DiscountLine(BaseModel):
    discount_id: int
    code: str
    type: str
    value: float
    is_public: bool
    amount_applied: int


class DiscountSummary(BaseModel):
    public: Optional[DiscountLine] = None
    private: Optional[DiscountLine] = None
    total_amount_applied: int = 0


class OrderQuote(BaseModel):
    """Speculative pricing of an order; nothing is persisted"""

    duration: int
    unit_label: str
    rental_amount: int
    service_fee: int
    service_fee_rate: float
    deposit_amount: int
    total_amount: int
    discount: DiscountSummary
    final_amount: int
    discount_errors: Dict[str, str] = Field(default_factory=dict)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    renter_id: int
    owner_id: int
    item_id: int
    item_snapshot: Dict[str, Any]
    quantity: int
    start_at: datetime
    end_at: datetime
    rental_duration: int
    rental_amount: int
    deposit_amount: int
    service_fee: int
    total_amount: int
    discount_amount: int
    discount_breakdown: Optional[Dict[str, Any]] = None
    final_amount: int
    status: OrderStatus
    payment_status: PaymentStatus
    is_contract_signed: bool
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    refund_amount: int = 0


class OrderPage(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    limit: int


class ExtensionCreate(BaseModel):
    extension_duration: int = Field(..., ge=1)
    notes: Optional[str] = None


class ExtensionReject(BaseModel):
    reason: str = Field(..., min_length=1)


class ExtensionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    requested_by: int
    decided_by: Optional[int] = None
    original_end_at: datetime
    requested_end_at: datetime
    extension_duration: int
    extension_fee: int
    status: ExtensionStatus
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
