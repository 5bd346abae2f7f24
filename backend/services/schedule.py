"""
Item schedules.

A schedule is either a one-off date range or a recurring pattern anchored at a
point in time. Schedules are validated when an item is written and stored as a
versioned JSON blob; the rest of the engine only ever sees the decoded models.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from services.errors import ValidationError
from utils.datetime_utils import ensure_utc


SCHEDULE_BLOB_VERSION = 1

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _weekday_number(value: Any) -> Any:
    if isinstance(value, str):
        key = value.strip().lower()
        for idx, name in enumerate(WEEKDAY_NAMES):
            if key == name or key == name[:3]:
                return idx
        raise ValueError(f"unknown weekday: {value}")
    return value


def _sorted_unique(values: tuple[int, ...] | None, *, low: int, high: int, label: str) -> tuple[int, ...] | None:
    if values is None:
        return None
    if not values:
        raise ValueError(f"{label} must not be empty")
    for value in values:
        if value < low or value > high:
            raise ValueError(f"{label} must be between {low} and {high}: {value}")
    return tuple(sorted(set(values)))


class _ScheduleModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DailyPattern(_ScheduleModel):
    freq: Literal["daily"] = "daily"
    every: int = Field(default=1, ge=1)


class WeeklyPattern(_ScheduleModel):
    freq: Literal["weekly"] = "weekly"
    weekdays: Optional[tuple[int, ...]] = None  # 0 = Monday; defaults to the anchor's weekday
    every: int = Field(default=1, ge=1)

    @field_validator("weekdays", mode="before")
    @classmethod
    def _names_to_numbers(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(_weekday_number(v) for v in value)
        return value

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        return _sorted_unique(value, low=0, high=6, label="weekdays")


class MonthlyPattern(_ScheduleModel):
    freq: Literal["monthly"] = "monthly"
    days: Optional[tuple[int, ...]] = None  # days of month; defaults to the anchor's day
    every: int = Field(default=1, ge=1)

    @field_validator("days")
    @classmethod
    def _check_days(cls, value: tuple[int, ...] | None) -> tuple[int, ...] | None:
        return _sorted_unique(value, low=1, high=31, label="days")


class MonthlyWeekdayPattern(_ScheduleModel):
    freq: Literal["monthly_weekday"] = "monthly_weekday"
    weekday: int
    weeks: tuple[int, ...]
    every: int = Field(default=1, ge=1)

    @field_validator("weekday", mode="before")
    @classmethod
    def _name_to_number(cls, value: Any) -> Any:
        return _weekday_number(value)

    @field_validator("weekday")
    @classmethod
    def _check_weekday(cls, value: int) -> int:
        if value < 0 or value > 6:
            raise ValueError(f"weekday must be between 0 and 6: {value}")
        return value

    @field_validator("weeks")
    @classmethod
    def _check_weeks(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        return _sorted_unique(value, low=1, high=5, label="weeks")


class YearlyPattern(_ScheduleModel):
    freq: Literal["yearly"] = "yearly"
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)
    every: int = Field(default=1, ge=1)


class IntervalPattern(_ScheduleModel):
    freq: Literal["interval"] = "interval"
    interval: timedelta

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: timedelta) -> timedelta:
        if value < timedelta(seconds=1):
            raise ValueError("interval must be at least one second")
        return value


Pattern = Annotated[
    Union[DailyPattern, WeeklyPattern, MonthlyPattern, MonthlyWeekdayPattern, YearlyPattern, IntervalPattern],
    Field(discriminator="freq"),
]

CALENDAR_FREQS = frozenset({"daily", "weekly", "monthly", "monthly_weekday", "yearly"})


class OneOff(_ScheduleModel):
    kind: Literal["one_off"] = "one_off"
    start: datetime
    end: datetime

    @model_validator(mode="before")
    @classmethod
    def _default_end(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("end") is None and "start" in data:
            data = {**data, "end": data["start"]}
        return data

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_range(self) -> "OneOff":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class Recurring(_ScheduleModel):
    kind: Literal["recurring"] = "recurring"
    pattern: Pattern
    anchor: datetime
    duration: timedelta = timedelta(0)
    span_to_next: bool = False
    until: Optional[datetime] = None
    count: Optional[int] = Field(default=None, ge=1)

    @field_validator("anchor", "until")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("duration must not be negative")
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Recurring":
        if self.span_to_next and self.duration:
            raise ValueError("duration cannot be combined with span_to_next")
        if self.until is not None and self.until < self.anchor:
            raise ValueError("until must not be before anchor")
        return self

    @property
    def is_calendar(self) -> bool:
        return self.pattern.freq in CALENDAR_FREQS


Schedule = Annotated[Union[OneOff, Recurring], Field(discriminator="kind")]

_SCHEDULE_ADAPTER: TypeAdapter = TypeAdapter(Schedule)


def _error_summary(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid schedule"


def parse_schedule(data: Any) -> OneOff | Recurring:
    if isinstance(data, (OneOff, Recurring)):
        return data
    if not isinstance(data, dict):
        raise ValidationError("schedule must be a JSON object")
    try:
        return _SCHEDULE_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid schedule: {_error_summary(exc)}") from exc


def schedule_to_dict(schedule: OneOff | Recurring) -> dict[str, Any]:
    return _SCHEDULE_ADAPTER.dump_python(schedule, mode="json")


def encode_schedule(schedule: OneOff | Recurring) -> bytes:
    envelope = {"v": SCHEDULE_BLOB_VERSION, "schedule": schedule_to_dict(schedule)}
    return json.dumps(envelope, ensure_ascii=True, sort_keys=True).encode("utf-8")


def decode_schedule(blob: bytes | str) -> OneOff | Recurring:
    try:
        envelope = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Stored schedule is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise ValidationError("Stored schedule must be a JSON object")
    version = envelope.get("v")
    if version != SCHEDULE_BLOB_VERSION:
        raise ValidationError(f"Unsupported schedule version: {version!r}")
    return parse_schedule(envelope.get("schedule"))


def only_occ_end(schedule: OneOff | Recurring) -> datetime | None:
    """End of the sole occurrence for one-off schedules; None for recurring ones."""
    if isinstance(schedule, OneOff):
        return schedule.end
    return None
