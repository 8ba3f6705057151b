from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_date(moment: datetime, tz_name: str) -> date:
    """Calendar date of a naive UTC ``moment`` in the given timezone."""
    return moment.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).date()


def local_day_bounds(moment: datetime, tz_name: str) -> Tuple[datetime, datetime]:
    """
    Start and end (exclusive) of the calendar day containing ``moment`` in the
    given timezone, returned as naive UTC datetimes.
    """
    tz = ZoneInfo(tz_name)
    start_local = datetime.combine(local_date(moment, tz_name), time.min, tzinfo=tz)
    end_local = start_local + timedelta(days=1)
    return (
        start_local.astimezone(timezone.utc).replace(tzinfo=None),
        end_local.astimezone(timezone.utc).replace(tzinfo=None),
    )


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    for day in (moment.day, 30, 29, 28):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"Cannot add {months} months to {moment}")
