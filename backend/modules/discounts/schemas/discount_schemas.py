# backend/modules/discounts/schemas/discount_schemas.py

import math
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime

from ..models.discount_models import DiscountType, RedemptionStatus


class DiscountCreate(BaseModel):
    """Create a discount; the code is generated from an optional prefix"""

    code_prefix: Optional[str] = Field(None, max_length=32)
    code_length: int = Field(10, ge=1, le=32)
    description: Optional[str] = None
    type: DiscountType
    value: float = Field(..., gt=0)
    max_discount_amount: int = Field(0, ge=0)
    min_order_amount: int = Field(0, ge=0)
    start_at: datetime
    end_at: datetime
    usage_limit: int = Field(0, ge=0)
    is_public: bool = True
    owner_id: Optional[int] = None
    item_id: Optional[int] = None
    allowed_user_ids: List[int] = Field(default_factory=list)

    @field_validator("end_at")
    def end_after_start(cls, v, info):
        start_at = info.data.get("start_at")
        if start_at and v <= start_at:
            raise ValueError("End date must be after start date")
        return v

    @model_validator(mode="after")
    def validate_value_for_type(self):
        if self.type == DiscountType.PERCENT and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.type == DiscountType.FIXED:
            self.value = float(math.floor(self.value))
            if self.value <= 0:
                raise ValueError("Fixed discount must be at least 1")
        return self


class DiscountUpdate(BaseModel):
    description: Optional[str] = None
    value: Optional[float] = Field(None, gt=0)
    max_discount_amount: Optional[int] = Field(None, ge=0)
    min_order_amount: Optional[int] = Field(None, ge=0)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    owner_id: Optional[int] = None
    item_id: Optional[int] = None
    allowed_user_ids: Optional[List[int]] = None


class AssignUsersRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)
    per_user_limit: int = Field(1, ge=0)
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None

    @field_validator("effective_to")
    def effective_window(cls, v, info):
        start = info.data.get("effective_from")
        if v and start and v <= start:
            raise ValueError("effective_to must be after effective_from")
        return v


class DiscountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    description: Optional[str] = None
    type: DiscountType
    value: float
    max_discount_amount: int
    min_order_amount: int
    start_at: datetime
    end_at: datetime
    usage_limit: int
    used_count: int
    is_active: bool
    is_public: bool
    owner_id: Optional[int] = None
    item_id: Optional[int] = None


class AvailableDiscount(DiscountResponse):
    is_claimed: bool = False


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    discount_id: int
    user_id: int
    per_user_limit: int
    used_count: int
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None


class RedemptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    discount_id: int
    order_id: int
    user_id: int
    amount_applied: int
    status: RedemptionStatus


class DiscountPage(BaseModel):
    items: List[DiscountResponse]
    total: int
    page: int
    limit: int
