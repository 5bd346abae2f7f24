from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from config import settings
from db.gateway import StorageGateway
from services.completion_tracker import (
    ProgressPolicy,
    ProgressReport,
    apply_progress,
    in_alert_period,
    resolve_progress,
)
from services.config_resolver import (
    SCOPE_PRECEDENCE,
    ConfigContext,
    ConfigPayload,
    ConfigScope,
    ResolvedConfig,
    ScopeLevel,
    default_values,
    parse_config_payload,
    resolve,
    scopes_for,
)
from services.domain import ItemRecord, ItemType, OccurrenceRecord, parse_item_type
from services.errors import NotFoundError, ValidationError
from services.materializer import ReconcilePlan, materialize, reconcile, slot_key
from services.schedule import OneOff, parse_schedule
from utils.datetime_utils import ensure_utc, utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentOccurrence:
    item: ItemRecord
    occurrence: OccurrenceRecord
    config: ResolvedConfig
    alert: bool


def progress_policy() -> ProgressPolicy:
    return ProgressPolicy.from_settings(settings)


def config_defaults() -> dict[str, Any]:
    return default_values(settings.PROGRESS_MAX)


def default_horizon(now: datetime) -> datetime:
    return now + timedelta(days=settings.LOOKAHEAD_DAYS)


def _clean_name(name: str | None) -> str:
    cleaned = " ".join(str(name or "").split())
    if not cleaned:
        raise ValidationError("name must not be empty")
    return cleaned


def _clean_optional(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _recurring_window(gateway: StorageGateway, item: ItemRecord, *, horizon: datetime, now: datetime):
    """
    Desired instances and stored occurrences of a recurring item to diff.

    A slot takes part when either side of it is still running at `now`, so a
    change of duration that moves an end across `now` updates the stored
    occurrence in place.
    """
    schedule = item.schedule
    live_stored = gateway.fetch_occurrences(item.id, start=now)
    # Judge every occurrence materialized earlier, even past a shorter horizon.
    horizon = max([horizon] + [occ.start for occ in live_stored])
    instances = materialize(schedule, horizon)
    live_desired = [inst for inst in instances if inst.end >= now]

    slots = {inst.slot for inst in live_desired}
    slots.update(slot_key(schedule, occ.start) for occ in live_stored)
    if not slots:
        return [], []

    earliest = min([inst.start for inst in live_desired] + [occ.start for occ in live_stored])
    day_start = datetime.combine(earliest.date(), time(), tzinfo=timezone.utc)
    candidates = gateway.fetch_occurrences(item.id, start=day_start)
    desired = [inst for inst in instances if inst.slot in slots]
    stored = [occ for occ in candidates if slot_key(schedule, occ.start) in slots]
    return desired, stored


def _reconcile_item(gateway: StorageGateway, item: ItemRecord, *, horizon: datetime, now: datetime) -> ReconcilePlan:
    schedule = item.schedule
    if isinstance(schedule, OneOff):
        stored = gateway.fetch_occurrences(item.id)
        desired = materialize(schedule, max(horizon, schedule.start))
    else:
        desired, stored = _recurring_window(gateway, item, horizon=horizon, now=now)

    plan = reconcile(schedule, desired, stored)
    if plan.is_empty:
        return plan
    for occ_id in plan.deactivations:
        logger.warning("Deactivating occurrence %s of item %s: no longer projected by its schedule", occ_id, item.id)
    gateway.upsert_occurrences(item.id, plan)
    logger.info("Reconciled item %s: %s", item.id, plan.summary())
    return plan


def create_item(
    db: Session,
    *,
    item_type: str | ItemType,
    name: str,
    schedule: Any,
    category: str | None = None,
    description: str | None = None,
    active: bool = True,
    now: datetime | None = None,
    horizon: datetime | None = None,
) -> ItemRecord:
    parsed_type = parse_item_type(item_type)
    parsed_schedule = parse_schedule(schedule)
    clean_name = _clean_name(name)
    now = ensure_utc(now) if now is not None else utcnow()
    horizon = ensure_utc(horizon) if horizon is not None else default_horizon(now)

    gateway = StorageGateway(db)
    with gateway.transaction():
        item = gateway.insert_item(
            item_type=parsed_type,
            name=clean_name,
            schedule=parsed_schedule,
            category=_clean_optional(category),
            description=_clean_optional(description),
            active=active,
            now=now,
        )
        if item.active:
            _reconcile_item(gateway, item, horizon=horizon, now=now)
    logger.info("Created item %s (%s)", item.id, item.type.value)
    return item


def get_item(db: Session, item_id: int) -> ItemRecord:
    return StorageGateway(db).fetch_item(item_id)


def list_items(
    db: Session,
    *,
    active: bool | None = None,
    start: datetime | None = None,
) -> list[ItemRecord]:
    return StorageGateway(db).list_items(
        active=active,
        start=ensure_utc(start) if start is not None else None,
        limit=settings.ITEMS_PAGE_SIZE,
    )


def update_item(
    db: Session,
    item_id: int,
    *,
    name: str | None = None,
    description: str | None = None,
    category: str | None = None,
    item_type: str | ItemType | None = None,
    active: bool | None = None,
    now: datetime | None = None,
) -> ItemRecord:
    now = ensure_utc(now) if now is not None else utcnow()
    changes: dict[str, Any] = {}
    if name is not None:
        changes["name"] = _clean_name(name)
    if description is not None:
        changes["description"] = _clean_optional(description)
    if category is not None:
        changes["category"] = _clean_optional(category)
    if item_type is not None:
        changes["type"] = parse_item_type(item_type)
    if active is not None:
        changes["active"] = bool(active)

    gateway = StorageGateway(db)
    with gateway.transaction(item_id):
        item = gateway.fetch_item(item_id)
        if not changes:
            return item
        item = gateway.save_item(replace(item, **changes), now)
    return item


def edit_schedule(
    db: Session,
    item_id: int,
    schedule: Any,
    *,
    now: datetime | None = None,
    horizon: datetime | None = None,
) -> tuple[ItemRecord, ReconcilePlan]:
    """Replace an item's schedule and reconcile its occurrences against it."""
    parsed_schedule = parse_schedule(schedule)
    now = ensure_utc(now) if now is not None else utcnow()
    horizon = ensure_utc(horizon) if horizon is not None else default_horizon(now)

    gateway = StorageGateway(db)
    with gateway.transaction(item_id):
        item = gateway.fetch_item(item_id)
        item = gateway.save_item(replace(item, schedule=parsed_schedule), now)
        plan = _reconcile_item(gateway, item, horizon=horizon, now=now)
    return item, plan


def materialize_upcoming(
    db: Session,
    item_id: int,
    horizon: datetime | None = None,
    *,
    now: datetime | None = None,
    include_inactive: bool = False,
) -> list[OccurrenceRecord]:
    """
    Make sure an item's occurrences exist up to `horizon` and return the ones
    that have not ended before `now`, ordered by start date.
    """
    now = ensure_utc(now) if now is not None else utcnow()
    horizon = ensure_utc(horizon) if horizon is not None else default_horizon(now)
    if horizon < now:
        raise ValidationError("horizon must not be before now")

    gateway = StorageGateway(db)
    with gateway.transaction(item_id):
        item = gateway.fetch_item(item_id)
        if item.active:
            _reconcile_item(gateway, item, horizon=horizon, now=now)
        occurrences = gateway.fetch_occurrences(item_id, start=now, end=horizon, include_inactive=include_inactive)
    return occurrences


def list_occurrences(
    db: Session,
    item_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    include_inactive: bool = True,
) -> list[OccurrenceRecord]:
    gateway = StorageGateway(db)
    gateway.fetch_item(item_id)
    return gateway.fetch_occurrences(
        item_id,
        start=ensure_utc(start) if start is not None else None,
        end=ensure_utc(end) if end is not None else None,
        include_inactive=include_inactive,
    )


def get_occurrence(db: Session, occurrence_id: int) -> OccurrenceRecord:
    return StorageGateway(db).fetch_occurrence(occurrence_id)


def delete_item(db: Session, item_id: int, *, cascade: bool = False) -> dict[str, int]:
    gateway = StorageGateway(db)
    with gateway.transaction(item_id):
        removed = gateway.delete_item(item_id, cascade=cascade)
    logger.info("Deleted item %s: %s", item_id, removed)
    return removed


def set_progress(
    db: Session,
    occurrence_id: int,
    value: int,
    *,
    now: datetime | None = None,
) -> OccurrenceRecord:
    now = ensure_utc(now) if now is not None else utcnow()
    gateway = StorageGateway(db)
    occurrence = gateway.fetch_occurrence(occurrence_id)
    with gateway.transaction(occurrence.item_id):
        occurrence = gateway.fetch_occurrence(occurrence_id)
        item = gateway.fetch_item(occurrence.item_id)
        (config,) = _resolve_many(gateway, [_context_for(item, occurrence_id)])
        updated = apply_progress(occurrence, value, progress_policy(), now, total=config.completion_total)
        updated = gateway.save_occurrence(updated)
    if occurrence.active and not updated.active:
        logger.info("Occurrence %s completed and deactivated", occurrence_id)
    return updated


def _context_for(item: ItemRecord, occurrence_id: int | None = None) -> ConfigContext:
    return ConfigContext(
        occurrence_id=occurrence_id,
        item_id=item.id,
        item_type=item.type,
        category=item.category,
    )


def _resolve_many(gateway: StorageGateway, contexts: list[ConfigContext]) -> list[ResolvedConfig]:
    scopes: dict[ConfigScope, None] = {}
    for context in contexts:
        for scope in scopes_for(context):
            scopes[scope] = None
    entries = gateway.fetch_config_entries(scopes.keys())
    defaults = config_defaults()
    return [resolve(entries, context, defaults) for context in contexts]


def get_progress(db: Session, occurrence_id: int) -> ProgressReport:
    """
    Progress report for one occurrence, including excess progress moved in
    from, or out to, neighbouring occurrences of the same item.
    """
    gateway = StorageGateway(db)
    target = gateway.fetch_occurrence(occurrence_id)
    item = gateway.fetch_item(target.item_id)
    # Transfers depend on every occurrence of the item, not just nearby ones.
    neighbours = gateway.fetch_occurrences(item.id)
    configs = _resolve_many(gateway, [_context_for(item, occ.id) for occ in neighbours])
    reports = resolve_progress(list(zip(neighbours, configs)))
    return reports[target.id]


def resolve_config(
    db: Session,
    *,
    occurrence_id: int | None = None,
    item_id: int | None = None,
    item_type: str | ItemType | None = None,
    category: str | None = None,
) -> ResolvedConfig:
    gateway = StorageGateway(db)
    if occurrence_id is not None:
        occurrence = gateway.fetch_occurrence(occurrence_id)
        if item_id is not None and int(item_id) != occurrence.item_id:
            raise ValidationError(f"Occurrence {occurrence_id} does not belong to item {item_id}")
        item_id = occurrence.item_id

    if item_id is not None:
        item = gateway.fetch_item(item_id)
        context = _context_for(item, occurrence_id)
    else:
        context = ConfigContext(
            item_type=parse_item_type(item_type) if item_type is not None else None,
            category=_clean_optional(category),
        )
    (resolved,) = _resolve_many(gateway, [context])
    return resolved


def set_config(db: Session, scope: ConfigScope, payload: Any) -> ConfigPayload:
    parsed = parse_config_payload(payload)
    if parsed.completion_total is not None and parsed.completion_total > settings.PROGRESS_MAX:
        raise ValidationError(
            f"completion_total must not exceed the progress maximum {settings.PROGRESS_MAX}: {parsed.completion_total}"
        )
    gateway = StorageGateway(db)
    item_id: int | None = None
    if scope.level == ScopeLevel.ITEM:
        item_id = gateway.fetch_item(scope.key).id
    elif scope.level == ScopeLevel.OCCURRENCE:
        item_id = gateway.fetch_occurrence(scope.key).item_id

    with gateway.transaction(item_id):
        gateway.upsert_config_entry(scope, parsed)
    logger.info("Stored config for scope %s", scope.to_dict())
    return parsed


def delete_config(db: Session, scope: ConfigScope) -> None:
    gateway = StorageGateway(db)
    with gateway.transaction():
        removed = gateway.delete_config_entry(scope)
        if not removed:
            raise NotFoundError(f"No config stored for scope {scope.level.value}={scope.key}")


def list_config_entries(db: Session) -> list[tuple[ConfigScope, ConfigPayload]]:
    entries = StorageGateway(db).fetch_config_entries()
    order = {level: idx for idx, level in enumerate(reversed(SCOPE_PRECEDENCE))}
    return sorted(entries.items(), key=lambda kv: (order[kv[0].level], str(kv[0].key)))


def current_occurrences(db: Session, *, now: datetime | None = None) -> list[CurrentOccurrence]:
    """
    Active items paired with their current occurrence.

    For events that is the next occurrence starting at or after `now`; for
    tasks it is the occurrence whose period covers `now`. Items without one
    are left out.

    Each item is reconciled up to the default horizon first, so occurrences
    are written as a side effect.
    """
    now = ensure_utc(now) if now is not None else utcnow()
    horizon = default_horizon(now)
    gateway = StorageGateway(db)
    pairs: list[tuple[ItemRecord, OccurrenceRecord]] = []
    for item in gateway.list_items(active=True, start=now, limit=settings.ITEMS_PAGE_SIZE):
        with gateway.transaction(item.id):
            _reconcile_item(gateway, item, horizon=horizon, now=now)
            upcoming = gateway.fetch_occurrences(item.id, start=now, include_inactive=False)
        if item.type == ItemType.EVENT:
            current = next((occ for occ in upcoming if occ.start >= now), None)
        else:
            current = next((occ for occ in upcoming if occ.start <= now <= occ.end), None)
        if current is not None:
            pairs.append((item, current))

    configs = _resolve_many(gateway, [_context_for(item, occ.id) for item, occ in pairs])
    return [
        CurrentOccurrence(item=item, occurrence=occ, config=config, alert=in_alert_period(occ, config, now))
        for (item, occ), config in zip(pairs, configs)
    ]


def is_in_alert_period(db: Session, occurrence_id: int, *, now: datetime | None = None) -> bool:
    now = ensure_utc(now) if now is not None else utcnow()
    gateway = StorageGateway(db)
    occurrence = gateway.fetch_occurrence(occurrence_id)
    item = gateway.fetch_item(occurrence.item_id)
    (config,) = _resolve_many(gateway, [_context_for(item, occurrence.id)])
    return in_alert_period(occurrence, config, now)
