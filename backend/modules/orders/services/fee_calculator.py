# backend/modules/orders/services/fee_calculator.py

"""
Rental fee calculation.

Pure functions only: no database access and no global state. The service-fee
rate is passed in by the caller as a snapshot, so the same inputs always give
the same breakdown and previews are safe to compute speculatively.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from modules.items.models.item_models import PriceUnit


@dataclass(frozen=True)
class TimeUnit:
    label: str
    length: timedelta


TIME_UNITS = {
    PriceUnit.HOUR: TimeUnit("hour", timedelta(hours=1)),
    PriceUnit.DAY: TimeUnit("day", timedelta(days=1)),
    PriceUnit.WEEK: TimeUnit("week", timedelta(days=7)),
    PriceUnit.MONTH: TimeUnit("month", timedelta(days=30)),
}


@dataclass(frozen=True)
class FeeBreakdown:
    duration: int
    price_unit: PriceUnit
    unit_label: str
    rental_amount: int
    service_fee: int
    deposit_amount: int
    total_amount: int


def round_currency(value) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_time_unit(price_unit) -> Optional[TimeUnit]:
    try:
        return TIME_UNITS[PriceUnit(price_unit)]
    except (ValueError, TypeError):
        return None


def compute_duration(price_unit, start_at: datetime, end_at: datetime) -> Optional[int]:
    """
    Smallest whole number of units covering [start_at, end_at].

    Returns None for unknown units or an empty/negative window.
    """
    unit = get_time_unit(price_unit)
    if unit is None or start_at is None or end_at is None:
        return None

    window = (end_at - start_at) // timedelta(microseconds=1)
    unit_length = unit.length // timedelta(microseconds=1)
    duration = -(-window // unit_length)
    if duration <= 0:
        return None
    return duration


def calculate_fees(
    price_unit,
    base_price: Optional[int],
    deposit_per_unit: Optional[int],
    quantity: int,
    start_at: datetime,
    end_at: datetime,
    service_fee_rate: Decimal,
) -> Optional[FeeBreakdown]:
    """
    Price a rental window.

    Args:
        price_unit: PriceUnit code of the item
        base_price: Price per unit per piece
        deposit_per_unit: Deposit per piece
        quantity: Number of pieces, at least 1
        start_at, end_at: Rental window
        service_fee_rate: Percent of the rental amount

    Returns:
        FeeBreakdown, or None when the inputs cannot be priced
    """
    if not base_price or base_price < 0 or quantity is None or quantity < 1:
        return None

    duration = compute_duration(price_unit, start_at, end_at)
    if duration is None:
        return None

    unit = PriceUnit(price_unit)
    rental_amount = round_currency(Decimal(base_price) * duration * quantity)
    service_fee = round_currency(
        Decimal(rental_amount) * Decimal(str(service_fee_rate)) / Decimal(100)
    )
    deposit_amount = round_currency(Decimal(deposit_per_unit or 0) * quantity)

    return FeeBreakdown(
        duration=duration,
        price_unit=unit,
        unit_label=TIME_UNITS[unit].label,
        rental_amount=rental_amount,
        service_fee=service_fee,
        deposit_amount=deposit_amount,
        total_amount=rental_amount + service_fee + deposit_amount,
    )


def calculate_rental_amount(
    price_unit, base_price: Optional[int], quantity: int, start_at: datetime, end_at: datetime
) -> Optional[int]:
    """Rental component only; used to price extensions."""
    breakdown = calculate_fees(
        price_unit, base_price, 0, quantity, start_at, end_at, service_fee_rate=Decimal(0)
    )
    return breakdown.rental_amount if breakdown else None
