from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from services.errors import ValidationError
from services.schedule import OneOff, Recurring


class ItemType(str, Enum):
    # Occurrences are fixed points in time.
    EVENT = "event"
    # Occurrences cover completion periods.
    PROGRESS_TASK = "progress_task"
    # Occurrences carry a deadline.
    DEADLINE_TASK = "deadline_task"


def parse_item_type(value: str | ItemType) -> ItemType:
    if isinstance(value, ItemType):
        return value
    try:
        return ItemType(str(value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in ItemType)
        raise ValidationError(f"type must be one of: {allowed}") from None


@dataclass(frozen=True)
class ItemRecord:
    id: int
    created: datetime
    updated: datetime
    type: ItemType
    active: bool
    category: str | None
    name: str
    description: str | None
    schedule: OneOff | Recurring
    only_occ_end: datetime | None = None

    @property
    def is_one_off(self) -> bool:
        return isinstance(self.schedule, OneOff)


@dataclass(frozen=True)
class OccurrenceRecord:
    id: int
    item_id: int
    active: bool
    start: datetime
    end: datetime
    progress: int = 0
    completed: datetime | None = None
