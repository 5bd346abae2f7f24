from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterator

from services.schedule import (
    DailyPattern,
    MonthlyPattern,
    MonthlyWeekdayPattern,
    Recurring,
    WeeklyPattern,
    YearlyPattern,
)
from utils.datetime_utils import (
    add_months,
    nth_weekday_of_month,
    start_of_month,
    start_of_week,
    with_day_saturating,
)


# Monthly-by-weekday patterns can ask for a 5th weekday that only shows up in
# some months. Give up after a full Gregorian cycle without a match.
_MAX_EMPTY_MONTHS = 12 * 400


def _daily_days(pattern: DailyPattern, anchor_day: date) -> Iterator[date]:
    step = timedelta(days=pattern.every)
    day = anchor_day
    while True:
        yield day
        day += step


def _weekly_days(pattern: WeeklyPattern, anchor_day: date) -> Iterator[date]:
    weekdays = pattern.weekdays or (anchor_day.weekday(),)
    step = timedelta(weeks=pattern.every)
    week = start_of_week(anchor_day)
    while True:
        for weekday in weekdays:
            day = week + timedelta(days=weekday)
            if day >= anchor_day:
                yield day
        week += step


def _monthly_days(pattern: MonthlyPattern, anchor_day: date) -> Iterator[date]:
    days_of_month = pattern.days or (anchor_day.day,)
    month = start_of_month(anchor_day)
    while True:
        # Saturating can map several requested days onto the last day; keep it once.
        candidates = sorted({with_day_saturating(month.year, month.month, dom) for dom in days_of_month})
        for day in candidates:
            if day >= anchor_day:
                yield day
        month = add_months(month, pattern.every)


def _monthly_weekday_days(pattern: MonthlyWeekdayPattern, anchor_day: date) -> Iterator[date]:
    month = start_of_month(anchor_day)
    empty_months = 0
    while empty_months < _MAX_EMPTY_MONTHS:
        found = False
        for nth in pattern.weeks:
            day = nth_weekday_of_month(month.year, month.month, pattern.weekday, nth)
            if day is not None and day >= anchor_day:
                found = True
                yield day
        empty_months = 0 if found else empty_months + 1
        month = add_months(month, pattern.every)


def _yearly_days(pattern: YearlyPattern, anchor_day: date) -> Iterator[date]:
    year = anchor_day.year
    while True:
        day = with_day_saturating(year, pattern.month, pattern.day)
        if day >= anchor_day:
            yield day
        year += pattern.every


_DAY_GENERATORS: dict[str, Callable[..., Iterator[date]]] = {
    "daily": _daily_days,
    "weekly": _weekly_days,
    "monthly": _monthly_days,
    "monthly_weekday": _monthly_weekday_days,
    "yearly": _yearly_days,
}


def iter_slot_days(pattern, anchor_day: date) -> Iterator[date]:
    """Yield the days a calendar pattern falls on, in order, starting at `anchor_day`."""
    generator = _DAY_GENERATORS.get(pattern.freq)
    if generator is None:
        raise ValueError(f"Pattern has no calendar days: {pattern.freq}")
    try:
        yield from generator(pattern, anchor_day)
    except (OverflowError, ValueError):
        # Ran past the last representable date.
        return


def iter_slot_starts(schedule: Recurring) -> Iterator[datetime]:
    """
    Yield instance start times for a recurring schedule.

    The sequence is deterministic and unbounded except for the calendar limits
    of `datetime`; callers bound it with a horizon. A fresh iterator is returned
    on every call.
    """
    anchor = schedule.anchor
    if schedule.pattern.freq == "interval":
        step = schedule.pattern.interval
        start = anchor
        try:
            while True:
                yield start
                start += step
        except OverflowError:
            return
    start_time = anchor.time()
    for day in iter_slot_days(schedule.pattern, anchor.date()):
        yield datetime.combine(day, start_time, tzinfo=timezone.utc)
