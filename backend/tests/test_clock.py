from datetime import date, datetime

import pytest

from core.clock import add_months, local_date, local_day_bounds


def test_local_day_bounds_in_business_timezone():
    start, end = local_day_bounds(datetime(2026, 3, 1, 18, 0), "Asia/Ho_Chi_Minh")
    # 18:00 UTC is 01:00 on 2 March local time
    assert start == datetime(2026, 3, 1, 17, 0)
    assert end == datetime(2026, 3, 2, 17, 0)


def test_local_date_rolls_over_before_utc_midnight():
    assert local_date(datetime(2026, 3, 1, 16, 59), "Asia/Ho_Chi_Minh") == date(2026, 3, 1)
    assert local_date(datetime(2026, 3, 1, 17, 30), "Asia/Ho_Chi_Minh") == date(2026, 3, 2)


@pytest.mark.parametrize(
    "moment,months,expected",
    [
        (datetime(2026, 1, 15, 8, 30), 1, datetime(2026, 2, 15, 8, 30)),
        (datetime(2026, 1, 31), 1, datetime(2026, 2, 28)),
        (datetime(2028, 1, 31), 1, datetime(2028, 2, 29)),
        (datetime(2026, 12, 10), 1, datetime(2027, 1, 10)),
    ],
)
def test_add_months(moment, months, expected):
    assert add_months(moment, months) == expected
