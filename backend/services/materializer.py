"""
Occurrence materialization.

`materialize` projects a schedule onto a time window and returns the desired
instances. `reconcile` diffs those instances against the occurrences already
stored for an item and returns the inserts, date updates and deactivations
needed to bring storage in line. Both are pure: reference time and horizon
are always passed in, and nothing here touches the database.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from itertools import islice, pairwise, takewhile
from typing import Iterator, Sequence

from services.domain import OccurrenceRecord
from services.recurrence import iter_slot_starts
from services.schedule import OneOff, Recurring
from utils.datetime_utils import ensure_utc


SlotKey = date | datetime | None


@dataclass(frozen=True)
class Instance:
    start: datetime
    end: datetime
    # Calendar position used to match the instance to a stored occurrence.
    slot: SlotKey = None


@dataclass(frozen=True)
class OccurrenceUpdate:
    occurrence_id: int
    start: datetime
    end: datetime
    active: bool


@dataclass
class ReconcilePlan:
    inserts: list[Instance] = field(default_factory=list)
    updates: list[OccurrenceUpdate] = field(default_factory=list)
    deactivations: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deactivations)

    def summary(self) -> dict[str, int]:
        return {
            "inserted": len(self.inserts),
            "updated": len(self.updates),
            "deactivated": len(self.deactivations),
        }


def slot_key(schedule: Recurring, start: datetime) -> SlotKey:
    if schedule.is_calendar:
        return ensure_utc(start).date()
    return ensure_utc(start)


def _iter_recurring(schedule: Recurring) -> Iterator[Instance]:
    starts = iter_slot_starts(schedule)
    if schedule.span_to_next:
        for start, following in pairwise(starts):
            yield Instance(start=start, end=following, slot=slot_key(schedule, start))
        return
    for start in starts:
        yield Instance(start=start, end=start + schedule.duration, slot=slot_key(schedule, start))


def iter_instances(schedule: OneOff | Recurring) -> Iterator[Instance]:
    """Lazily yield every instance of a schedule, ordered by start."""
    if isinstance(schedule, OneOff):
        yield Instance(start=schedule.start, end=schedule.end)
        return
    instances = _iter_recurring(schedule)
    if schedule.until is not None:
        until = schedule.until
        instances = takewhile(lambda inst: inst.start <= until, instances)
    if schedule.count is not None:
        instances = islice(instances, schedule.count)
    yield from instances


def materialize(
    schedule: OneOff | Recurring,
    horizon_end: datetime,
    since: datetime | None = None,
) -> list[Instance]:
    """
    Return the desired instances starting no later than `horizon_end`.

    Instances that ended before `since` are left out. Calling this twice with
    the same arguments yields the same list.
    """
    horizon_end = ensure_utc(horizon_end)
    since = ensure_utc(since) if since is not None else None
    desired: list[Instance] = []
    for instance in iter_instances(schedule):
        if instance.start > horizon_end:
            break
        if since is not None and instance.end < since:
            continue
        desired.append(instance)
    return desired


def _target_active(occ: OccurrenceRecord) -> bool:
    # Completed occurrences keep whatever state the completion policy left them in.
    return occ.active or occ.completed is None


def _update_if_changed(plan: ReconcilePlan, occ: OccurrenceRecord, instance: Instance) -> None:
    active = _target_active(occ)
    if (occ.start, occ.end, occ.active) != (instance.start, instance.end, active):
        plan.updates.append(
            OccurrenceUpdate(occurrence_id=occ.id, start=instance.start, end=instance.end, active=active)
        )


def _reconcile_one_off(desired: Sequence[Instance], stored: Sequence[OccurrenceRecord]) -> ReconcilePlan:
    plan = ReconcilePlan()
    if not desired:
        return plan
    instance = desired[0]
    if not stored:
        plan.inserts.append(instance)
        return plan
    sole, *others = sorted(stored, key=lambda occ: occ.id)
    _update_if_changed(plan, sole, instance)
    plan.deactivations.extend(occ.id for occ in others if occ.active)
    return plan


def _reconcile_recurring(
    schedule: Recurring,
    desired: Sequence[Instance],
    stored: Sequence[OccurrenceRecord],
) -> ReconcilePlan:
    plan = ReconcilePlan()
    by_slot: dict[SlotKey, OccurrenceRecord] = {}
    for occ in sorted(stored, key=lambda o: o.id):
        key = slot_key(schedule, occ.start)
        if key in by_slot:
            # Only the oldest occurrence in a slot is tracked.
            if occ.active:
                plan.deactivations.append(occ.id)
            continue
        by_slot[key] = occ

    matched: set[int] = set()
    for instance in desired:
        occ = by_slot.get(instance.slot)
        if occ is None:
            plan.inserts.append(instance)
            continue
        matched.add(occ.id)
        _update_if_changed(plan, occ, instance)

    for occ in by_slot.values():
        if occ.id not in matched and occ.active:
            plan.deactivations.append(occ.id)
    plan.deactivations.sort()
    return plan


def reconcile(
    schedule: OneOff | Recurring,
    desired: Sequence[Instance],
    stored: Sequence[OccurrenceRecord],
) -> ReconcilePlan:
    """
    Diff desired instances against stored occurrences.

    Stored occurrences are never dropped: ones the schedule no longer projects
    are deactivated, matched ones keep their id and progress.
    """
    if isinstance(schedule, OneOff):
        return _reconcile_one_off(desired, stored)
    return _reconcile_recurring(schedule, desired, stored)
