# backend/modules/orders/tests/test_fee_calculator.py

"""
Tests for rental fee calculation.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from modules.items.models.item_models import PriceUnit
from modules.orders.services.fee_calculator import (
    calculate_fees,
    calculate_rental_amount,
    compute_duration,
    round_currency,
)

DAY0 = datetime(2026, 3, 1, 0, 0)


class TestComputeDuration:
    """Duration is the smallest whole number of units covering the window"""

    @pytest.mark.parametrize(
        "unit,window,expected",
        [
            (PriceUnit.DAY, timedelta(days=2), 2),
            (PriceUnit.DAY, timedelta(days=2, minutes=1), 3),
            (PriceUnit.HOUR, timedelta(minutes=61), 2),
            (PriceUnit.HOUR, timedelta(hours=5), 5),
            (PriceUnit.WEEK, timedelta(days=8), 2),
            (PriceUnit.MONTH, timedelta(days=30), 1),
            (PriceUnit.MONTH, timedelta(days=31), 2),
        ],
    )
    def test_ceiling(self, unit, window, expected):
        assert compute_duration(unit, DAY0, DAY0 + window) == expected

    def test_empty_window_has_no_duration(self):
        assert compute_duration(PriceUnit.DAY, DAY0, DAY0) is None
        assert compute_duration(PriceUnit.DAY, DAY0, DAY0 - timedelta(hours=1)) is None

    def test_unknown_unit(self):
        assert compute_duration(9, DAY0, DAY0 + timedelta(days=1)) is None
        assert compute_duration(None, DAY0, DAY0 + timedelta(days=1)) is None

    def test_duration_is_minimal(self):
        """duration * unit covers the window and duration - 1 does not"""
        window = timedelta(days=9, hours=3)
        duration = compute_duration(PriceUnit.WEEK, DAY0, DAY0 + window)
        assert timedelta(days=7) * duration >= window
        assert timedelta(days=7) * (duration - 1) < window


class TestCalculateFees:
    def test_two_day_rental_of_two_units(self):
        """100,000/day, 50,000 deposit, 2 units for 2 days at 5%"""
        fees = calculate_fees(
            PriceUnit.DAY,
            base_price=100000,
            deposit_per_unit=50000,
            quantity=2,
            start_at=DAY0,
            end_at=DAY0 + timedelta(days=2),
            service_fee_rate=Decimal("5"),
        )

        assert fees.duration == 2
        assert fees.unit_label == "day"
        assert fees.rental_amount == 400000
        assert fees.service_fee == 20000
        assert fees.deposit_amount == 100000
        assert fees.total_amount == 520000

    def test_service_fee_rounds_half_up(self):
        fees = calculate_fees(
            PriceUnit.HOUR, 15, 0, 1, DAY0, DAY0 + timedelta(hours=1), Decimal("10")
        )
        # 15 * 10% = 1.5
        assert fees.service_fee == 2

    def test_rate_is_taken_from_caller(self):
        args = (PriceUnit.DAY, 100000, 0, 1, DAY0, DAY0 + timedelta(days=1))
        assert calculate_fees(*args, service_fee_rate=Decimal("0")).service_fee == 0
        assert calculate_fees(*args, service_fee_rate=Decimal("12.5")).service_fee == 12500

    @pytest.mark.parametrize(
        "base_price,quantity,end_offset",
        [
            (None, 1, timedelta(days=1)),
            (0, 1, timedelta(days=1)),
            (100000, 0, timedelta(days=1)),
            (100000, 1, timedelta(0)),
        ],
    )
    def test_unpriceable_inputs(self, base_price, quantity, end_offset):
        assert calculate_fees(
            PriceUnit.DAY, base_price, 0, quantity, DAY0, DAY0 + end_offset, Decimal("5")
        ) is None

    def test_missing_deposit_counts_as_zero(self):
        fees = calculate_fees(
            PriceUnit.DAY, 1000, None, 3, DAY0, DAY0 + timedelta(days=1), Decimal("0")
        )
        assert fees.deposit_amount == 0
        assert fees.total_amount == 3000


def test_rental_amount_ignores_deposit_and_fee():
    amount = calculate_rental_amount(
        PriceUnit.DAY, 100000, 1, DAY0, DAY0 + timedelta(days=1)
    )
    assert amount == 100000


def test_round_currency():
    assert round_currency(Decimal("2.5")) == 3
    assert round_currency(Decimal("2.49")) == 2
