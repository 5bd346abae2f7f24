from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Sequence

from services.config_resolver import ResolvedConfig
from services.domain import OccurrenceRecord
from services.errors import ConflictError, ValidationError


@dataclass(frozen=True)
class ProgressPolicy:
    maximum: int = 100
    # Reject values lower than the current progress.
    monotonic: bool = False
    # Deactivate the occurrence once it is completed.
    auto_deactivate: bool = False

    @classmethod
    def from_settings(cls, settings) -> "ProgressPolicy":
        return cls(
            maximum=int(settings.PROGRESS_MAX),
            monotonic=bool(settings.PROGRESS_MONOTONIC),
            auto_deactivate=bool(settings.COMPLETION_AUTO_DEACTIVATE),
        )


def validate_progress(value, policy: ProgressPolicy) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("progress must be an integer")
    if value < 0 or value > policy.maximum:
        raise ValidationError(f"progress must be between 0 and {policy.maximum}: {value}")
    return value


def apply_progress(
    occurrence: OccurrenceRecord,
    value: int,
    policy: ProgressPolicy,
    now: datetime,
    total: int | None = None,
) -> OccurrenceRecord:
    """
    Return `occurrence` with its progress set to `value` under `policy`.

    The occurrence counts as completed once `value` reaches `total`, the
    resolved completion total, which defaults to (and never exceeds)
    `policy.maximum`.
    """
    if not occurrence.active:
        raise ConflictError(f"Occurrence {occurrence.id} is inactive")
    value = validate_progress(value, policy)
    if policy.monotonic and value < occurrence.progress:
        raise ValidationError(
            f"progress cannot decrease from {occurrence.progress} to {value}"
        )

    target = policy.maximum if total is None else min(total, policy.maximum)
    if value >= target:
        return replace(
            occurrence,
            progress=value,
            completed=occurrence.completed or now,
            active=not policy.auto_deactivate,
        )
    return replace(occurrence, progress=value, completed=None)


def in_alert_period(occurrence: OccurrenceRecord, config: ResolvedConfig, now: datetime) -> bool:
    """Whether `now` falls in the alert window leading up to the occurrence's end."""
    alert_start = occurrence.end - config.occ_alert
    return alert_start <= now < occurrence.end


@dataclass(frozen=True)
class ProgressReport:
    occurrence_id: int
    # Progress registered directly on the occurrence; may exceed `total`.
    progress: int
    total: int
    unit: str
    received_excess: int = 0
    donated_excess: int = 0

    @property
    def credited(self) -> int:
        return self.progress - self.donated_excess + self.received_excess

    @property
    def complete(self) -> bool:
        return self.credited >= self.total


def resolve_progress(
    occurrences: Sequence[tuple[OccurrenceRecord, ResolvedConfig]],
) -> dict[int, ProgressReport]:
    """
    Compute progress reports for occurrences of a single item.

    Progress beyond an occurrence's target is excess that may count towards
    other occurrences whose excess windows reach it. Nearer donors are used
    first; ties go to the earlier recipient, then the earlier donor.
    """
    excess: dict[int, int] = {}
    needed: dict[int, int] = {}
    for occ, config in occurrences:
        excess[occ.id] = max(occ.progress - config.completion_total, 0)
        needed[occ.id] = max(config.completion_total - occ.progress, 0)

    candidates: list[tuple[timedelta, datetime, datetime, int, int]] = []
    for recv, config in occurrences:
        if not needed[recv.id]:
            continue
        earliest = recv.start - config.excess_past
        latest = recv.end + config.excess_future
        for donor, _ in occurrences:
            if donor.id == recv.id or not excess[donor.id]:
                continue
            if donor.start < recv.start and donor.end > earliest:
                distance = recv.start - donor.end
            elif donor.start > recv.start and donor.start < latest:
                distance = donor.start - recv.end
            else:
                continue
            candidates.append((distance, recv.start, donor.start, recv.id, donor.id))
    candidates.sort()

    received: dict[int, int] = {}
    donated: dict[int, int] = {}
    for _, _, _, recv_id, donor_id in candidates:
        transfer = min(needed[recv_id], excess[donor_id])
        if transfer <= 0:
            continue
        needed[recv_id] -= transfer
        excess[donor_id] -= transfer
        received[recv_id] = received.get(recv_id, 0) + transfer
        donated[donor_id] = donated.get(donor_id, 0) + transfer

    return {
        occ.id: ProgressReport(
            occurrence_id=occ.id,
            progress=occ.progress,
            total=config.completion_total,
            unit=config.completion_unit,
            received_excess=received.get(occ.id, 0),
            donated_excess=donated.get(occ.id, 0),
        )
        for occ, config in occurrences
    }
