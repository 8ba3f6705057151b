# backend/modules/loyalty/schemas/loyalty_schemas.py

from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..models.loyalty_models import LoyaltyTransactionType


# ========== Ledger metadata ==========
# Closed set of metadata shapes, discriminated on ``kind``. Bump ``version``
# on a variant when its fields change.


class OrderPointsMetadata(BaseModel):
    kind: Literal["order"] = "order"
    version: Literal[1] = 1
    order_id: int
    order_amount: int


class DailyLoginMetadata(BaseModel):
    kind: Literal["daily_login"] = "daily_login"
    version: Literal[1] = 1
    login_date: date


class PointsToDiscountMetadata(BaseModel):
    kind: Literal["points_to_discount"] = "points_to_discount"
    version: Literal[1] = 1
    discount_id: int
    discount_code: str
    discount_percent: int


class AdminAdjustmentMetadata(BaseModel):
    kind: Literal["admin_adjustment"] = "admin_adjustment"
    version: Literal[1] = 1
    adjusted_by: int
    reason: str


class NoteMetadata(BaseModel):
    kind: Literal["note"] = "note"
    version: Literal[1] = 1
    note: Optional[str] = None


LoyaltyMetadata = Annotated[
    Union[
        OrderPointsMetadata,
        DailyLoginMetadata,
        PointsToDiscountMetadata,
        AdminAdjustmentMetadata,
        NoteMetadata,
    ],
    Field(discriminator="kind"),
]

loyalty_metadata_adapter = TypeAdapter(LoyaltyMetadata)


def parse_metadata(raw: Optional[dict]) -> Optional[BaseModel]:
    if raw is None:
        return None
    return loyalty_metadata_adapter.validate_python(raw)


# ========== Requests & responses ==========


class PointsAdjustment(BaseModel):
    user_id: int
    points: int = Field(..., description="Signed delta")
    reason: str = Field(..., min_length=1, max_length=200)


class PointsConversionRequest(BaseModel):
    points: int = Field(..., gt=0)


class PointsTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    transaction_type: LoyaltyTransactionType
    points_change: int
    points_balance_before: int
    points_balance_after: int
    description: str
    order_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    details: Optional[LoyaltyMetadata] = None


class PointsHistoryPage(BaseModel):
    items: List[PointsTransactionResponse]
    total: int
    page: int
    limit: int


class LoyaltyStats(BaseModel):
    user_id: int
    points_balance: int
    lifetime_points_earned: int
    lifetime_points_spent: int


class DailyLoginResult(BaseModel):
    already_claimed: bool
    points_awarded: int
    points_balance: int
