from __future__ import annotations

import sys
from datetime import date, datetime, timedelta, timezone
from itertools import islice
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.recurrence import iter_slot_days, iter_slot_starts  # noqa: E402
from services.schedule import parse_schedule  # noqa: E402
from utils.datetime_utils import add_months, nth_weekday_of_month, with_day_saturating  # noqa: E402


def _recurring(pattern: dict, anchor: str = "2026-10-19T09:00:00Z", **extra):
    return parse_schedule({"kind": "recurring", "anchor": anchor, "pattern": pattern, **extra})


def _days(pattern: dict, anchor: str, n: int) -> list[date]:
    schedule = _recurring(pattern, anchor)
    return list(islice(iter_slot_days(schedule.pattern, schedule.anchor.date()), n))


def test_calendar_helpers():
    assert with_day_saturating(2027, 2, 31) == date(2027, 2, 28)
    assert with_day_saturating(2028, 2, 30) == date(2028, 2, 29)
    assert add_months(date(2026, 11, 30), 3) == date(2027, 2, 1)
    assert nth_weekday_of_month(2026, 10, 0, 1) == date(2026, 10, 5)
    assert nth_weekday_of_month(2026, 11, 0, 5) == date(2026, 11, 30)
    assert nth_weekday_of_month(2026, 10, 0, 5) is None


def test_daily_every_second_day():
    assert _days({"freq": "daily", "every": 2}, "2026-10-19T09:00:00Z", 3) == [
        date(2026, 10, 19),
        date(2026, 10, 21),
        date(2026, 10, 23),
    ]


def test_weekly_defaults_to_anchor_weekday():
    assert _days({"freq": "weekly"}, "2026-10-21T09:00:00Z", 3) == [
        date(2026, 10, 21),
        date(2026, 10, 28),
        date(2026, 11, 4),
    ]


def test_weekly_skips_days_before_anchor_in_first_week():
    # Anchor on a Wednesday; Monday of that week is not an occurrence.
    assert _days({"freq": "weekly", "weekdays": ["mon", "thu"], "every": 2}, "2026-10-21T09:00:00Z", 4) == [
        date(2026, 10, 22),
        date(2026, 11, 2),
        date(2026, 11, 5),
        date(2026, 11, 16),
    ]


def test_monthly_saturates_short_months_without_duplicates():
    assert _days({"freq": "monthly", "days": [30, 31]}, "2027-01-30T09:00:00Z", 5) == [
        date(2027, 1, 30),
        date(2027, 1, 31),
        date(2027, 2, 28),
        date(2027, 3, 30),
        date(2027, 3, 31),
    ]


def test_monthly_weekday_skips_months_without_a_fifth_weekday():
    days = _days({"freq": "monthly_weekday", "weekday": "monday", "weeks": [5]}, "2026-10-01T09:00:00Z", 3)

    assert days == [date(2026, 11, 30), date(2027, 3, 29), date(2027, 5, 31)]
    assert all(day.weekday() == 0 for day in days)


def test_yearly_leap_day_saturates():
    assert _days({"freq": "yearly", "month": 2, "day": 29}, "2027-01-01T09:00:00Z", 2) == [
        date(2027, 2, 28),
        date(2028, 2, 29),
    ]


def test_calendar_starts_keep_anchor_time_of_day():
    schedule = _recurring({"freq": "daily"}, "2026-10-19T09:30:00Z")

    starts = list(islice(iter_slot_starts(schedule), 2))

    assert starts == [
        datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc),
        datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc),
    ]


def test_interval_starts_step_from_anchor():
    schedule = _recurring({"freq": "interval", "interval": 5400})

    starts = list(islice(iter_slot_starts(schedule), 3))

    assert starts[0] == schedule.anchor
    assert [b - a for a, b in zip(starts, starts[1:])] == [timedelta(minutes=90)] * 2


def test_slot_starts_are_deterministic_and_fresh_per_call():
    schedule = _recurring({"freq": "weekly", "weekdays": [0, 3]})

    first = list(islice(iter_slot_starts(schedule), 10))
    second = list(islice(iter_slot_starts(schedule), 10))

    assert first == second
    assert first == sorted(first)
    assert len(set(first)) == len(first)


def test_expansion_stops_at_the_calendar_limit():
    schedule = _recurring({"freq": "yearly", "month": 1, "day": 1, "every": 1000}, "9000-01-01T00:00:00Z")

    assert [d.year for d in iter_slot_starts(schedule)] == [9000]
