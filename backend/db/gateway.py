"""
Storage gateway.

Translates between database rows and the engine's records, and provides the
per-item transaction boundary that keeps a read-reconcile-write cycle atomic.
SQLAlchemy failures surface as `StorageError` with the original exception
chained; nothing here retries.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator

from sqlalchemy import and_, delete, insert, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import CONFIG_ID_ALL, Item, Occurrence, config_entries
from services.config_resolver import ConfigPayload, ConfigScope, ScopeLevel, decode_config, encode_config
from services.domain import ItemRecord, ItemType, OccurrenceRecord, parse_item_type
from services.errors import ConflictError, DunsumdayError, NotFoundError, StorageError, ValidationError
from services.materializer import ReconcilePlan
from services.schedule import decode_schedule, encode_schedule, only_occ_end
from utils.datetime_utils import from_epoch, to_epoch


logger = logging.getLogger(__name__)

_SCOPE_COLUMNS: dict[ScopeLevel, str] = {
    ScopeLevel.ALL: "id_all",
    ScopeLevel.TYPE: "id_type",
    ScopeLevel.CATEGORY: "id_category",
    ScopeLevel.ITEM: "id_item",
    ScopeLevel.OCCURRENCE: "id_occ",
}

_item_locks: dict[int, threading.Lock] = {}
_item_locks_guard = threading.Lock()


def _lock_for_item(item_id: int) -> threading.Lock:
    with _item_locks_guard:
        lock = _item_locks.get(item_id)
        if lock is None:
            lock = threading.Lock()
            _item_locks[item_id] = lock
        return lock


def _item_from_row(row: Item) -> ItemRecord:
    try:
        schedule = decode_schedule(row.sched_blob)
        item_type = parse_item_type(row.type)
    except ValidationError as exc:
        raise StorageError(f"error reading item {row.id} from database: {exc}") from exc
    return ItemRecord(
        id=int(row.id),
        created=from_epoch(row.created_date),
        updated=from_epoch(row.updated_date),
        type=item_type,
        active=bool(row.active),
        category=row.category,
        name=row.name,
        description=row.description,
        schedule=schedule,
        only_occ_end=from_epoch(row.only_occ_end),
    )


def _occurrence_from_row(row: Occurrence) -> OccurrenceRecord:
    return OccurrenceRecord(
        id=int(row.id),
        item_id=int(row.item_id),
        active=bool(row.active),
        start=from_epoch(row.start_date),
        end=from_epoch(row.end_date),
        progress=int(row.task_completion_progress or 0),
        completed=from_epoch(row.completed_date),
    )


def _scope_value(scope: ConfigScope):
    if scope.level == ScopeLevel.ALL:
        return CONFIG_ID_ALL
    return scope.key


def _scope_from_row(row) -> ConfigScope:
    if row.id_occ is not None:
        return ConfigScope.for_occurrence(row.id_occ)
    if row.id_item is not None:
        return ConfigScope.for_item(row.id_item)
    if row.id_category is not None:
        return ConfigScope.for_category(row.id_category)
    if row.id_type is not None:
        return ConfigScope(ScopeLevel.TYPE, row.id_type)
    if row.id_all is not None:
        return ConfigScope.all_items()
    raise StorageError("config entry has no scope")


def _scope_filter(scope: ConfigScope):
    column = config_entries.c[_SCOPE_COLUMNS[scope.level]]
    return column == _scope_value(scope)


class StorageGateway:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self, item_id: int | None = None) -> Iterator["StorageGateway"]:
        """
        Run a unit of work in one database transaction.

        With `item_id`, the item's lock is held for the whole block so no other
        edit of the same item can interleave. Any error rolls the work back.
        """
        lock = _lock_for_item(int(item_id)) if item_id is not None else None
        if lock is not None:
            lock.acquire()
        try:
            try:
                yield self
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("Storage transaction failed: %s", exc)
                raise StorageError(f"database error: {exc}") from exc
            except BaseException:
                self.db.rollback()
                raise
        finally:
            if lock is not None:
                lock.release()

    def _run(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except DunsumdayError:
            raise
        except SQLAlchemyError as exc:
            raise StorageError(f"database error: {exc}") from exc

    # Items

    def _item_row(self, item_id: int) -> Item:
        row = self._run(lambda: self.db.get(Item, int(item_id)))
        if row is None:
            raise NotFoundError(f"Item not found: {item_id}")
        return row

    def fetch_item(self, item_id: int) -> ItemRecord:
        return _item_from_row(self._item_row(item_id))

    def insert_item(
        self,
        *,
        item_type: ItemType,
        name: str,
        schedule,
        category: str | None = None,
        description: str | None = None,
        active: bool = True,
        now: datetime,
    ) -> ItemRecord:
        end = only_occ_end(schedule)
        row = Item(
            created_date=to_epoch(now),
            updated_date=to_epoch(now),
            type=item_type.value,
            active=bool(active),
            category=category,
            name=name,
            description=description,
            sched_blob=encode_schedule(schedule),
            only_occ_end=to_epoch(end) if end is not None else None,
        )

        def _insert():
            self.db.add(row)
            self.db.flush()
            return row

        return _item_from_row(self._run(_insert))

    def save_item(self, record: ItemRecord, now: datetime) -> ItemRecord:
        row = self._item_row(record.id)
        end = only_occ_end(record.schedule)
        row.updated_date = to_epoch(now)
        row.type = record.type.value
        row.active = bool(record.active)
        row.category = record.category
        row.name = record.name
        row.description = record.description
        row.sched_blob = encode_schedule(record.schedule)
        row.only_occ_end = to_epoch(end) if end is not None else None
        self._run(self.db.flush)
        return _item_from_row(row)

    def list_items(
        self,
        *,
        active: bool | None = None,
        start: datetime | None = None,
        limit: int | None = None,
    ) -> list[ItemRecord]:
        """
        Items ordered by creation date.

        With `start`, one-off items whose only occurrence ended before it are
        left out; recurring items are always included.
        """
        query = select(Item)
        if active is not None:
            query = query.where(Item.active.is_(bool(active)))
        if start is not None:
            query = query.where(or_(Item.only_occ_end.is_(None), Item.only_occ_end >= to_epoch(start)))
        query = query.order_by(Item.created_date.asc(), Item.id.asc())
        if limit is not None:
            query = query.limit(int(limit))
        rows = self._run(lambda: self.db.execute(query).scalars().all())
        return [_item_from_row(row) for row in rows]

    def delete_item(self, item_id: int, *, cascade: bool = False) -> dict[str, int]:
        row = self._item_row(item_id)
        occ_ids = [
            int(occ_id)
            for occ_id in self._run(
                lambda: self.db.execute(select(Occurrence.id).where(Occurrence.item_id == row.id)).scalars().all()
            )
        ]
        if occ_ids and not cascade:
            raise ConflictError(
                f"Item {item_id} has {len(occ_ids)} occurrences; deactivate it or delete with cascade"
            )

        def _delete() -> dict[str, int]:
            conditions = [config_entries.c.id_item == row.id]
            if occ_ids:
                conditions.append(config_entries.c.id_occ.in_(occ_ids))
            configs_removed = self.db.execute(delete(config_entries).where(or_(*conditions))).rowcount
            occs_removed = self.db.execute(delete(Occurrence).where(Occurrence.item_id == row.id)).rowcount
            self.db.delete(row)
            self.db.flush()
            return {"occurrences": int(occs_removed or 0), "configs": int(configs_removed or 0)}

        return self._run(_delete)

    # Occurrences

    def fetch_occurrence(self, occurrence_id: int) -> OccurrenceRecord:
        row = self._run(lambda: self.db.get(Occurrence, int(occurrence_id)))
        if row is None:
            raise NotFoundError(f"Occurrence not found: {occurrence_id}")
        return _occurrence_from_row(row)

    def fetch_occurrences(
        self,
        item_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        include_inactive: bool = True,
    ) -> list[OccurrenceRecord]:
        """Occurrences of an item overlapping [start, end], ordered by start date."""
        query = select(Occurrence).where(Occurrence.item_id == int(item_id))
        if start is not None:
            query = query.where(Occurrence.end_date >= to_epoch(start))
        if end is not None:
            query = query.where(Occurrence.start_date <= to_epoch(end))
        if not include_inactive:
            query = query.where(Occurrence.active.is_(True))
        query = query.order_by(Occurrence.start_date.asc(), Occurrence.id.asc())
        rows = self._run(lambda: self.db.execute(query).scalars().all())
        return [_occurrence_from_row(row) for row in rows]

    def upsert_occurrences(self, item_id: int, plan: ReconcilePlan) -> list[OccurrenceRecord]:
        """Apply a reconcile plan; returns the newly inserted occurrences."""

        def _apply() -> list[OccurrenceRecord]:
            touched_ids = [u.occurrence_id for u in plan.updates] + list(plan.deactivations)
            rows: dict[int, Occurrence] = {}
            if touched_ids:
                found = self.db.execute(
                    select(Occurrence).where(
                        and_(Occurrence.item_id == int(item_id), Occurrence.id.in_(touched_ids))
                    )
                ).scalars().all()
                rows = {int(r.id): r for r in found}
            for update in plan.updates:
                row = rows.get(update.occurrence_id)
                if row is None:
                    raise NotFoundError(f"Occurrence not found: {update.occurrence_id}")
                row.start_date = to_epoch(update.start)
                row.end_date = to_epoch(update.end)
                row.active = bool(update.active)
            for occ_id in plan.deactivations:
                row = rows.get(occ_id)
                if row is None:
                    raise NotFoundError(f"Occurrence not found: {occ_id}")
                row.active = False

            created: list[Occurrence] = []
            for instance in plan.inserts:
                row = Occurrence(
                    item_id=int(item_id),
                    active=True,
                    start_date=to_epoch(instance.start),
                    end_date=to_epoch(instance.end),
                    task_completion_progress=0,
                )
                self.db.add(row)
                created.append(row)
            self.db.flush()
            return [_occurrence_from_row(row) for row in created]

        return self._run(_apply)

    def save_occurrence(self, record: OccurrenceRecord) -> OccurrenceRecord:
        row = self._run(lambda: self.db.get(Occurrence, record.id))
        if row is None:
            raise NotFoundError(f"Occurrence not found: {record.id}")
        row.active = bool(record.active)
        row.task_completion_progress = int(record.progress)
        row.completed_date = to_epoch(record.completed) if record.completed is not None else None
        self._run(self.db.flush)
        return _occurrence_from_row(row)

    # Config entries

    def fetch_config_entries(self, scopes: Iterable[ConfigScope] | None = None) -> dict[ConfigScope, ConfigPayload]:
        query = select(config_entries)
        if scopes is not None:
            scope_list = list(scopes)
            if not scope_list:
                return {}
            query = query.where(or_(*[_scope_filter(scope) for scope in scope_list]))
        rows = self._run(lambda: self.db.execute(query).all())
        entries: dict[ConfigScope, ConfigPayload] = {}
        for row in rows:
            scope = _scope_from_row(row)
            try:
                entries[scope] = decode_config(row.config_blob)
            except ValidationError as exc:
                raise StorageError(f"error reading config for scope {scope.to_dict()}: {exc}") from exc
        return entries

    def upsert_config_entry(self, scope: ConfigScope, payload: ConfigPayload) -> None:
        """Store `payload` at `scope`, replacing whatever entry the scope held."""
        values = {column: None for column in _SCOPE_COLUMNS.values()}
        values[_SCOPE_COLUMNS[scope.level]] = _scope_value(scope)
        values["config_blob"] = encode_config(payload)

        def _upsert() -> None:
            self.db.execute(delete(config_entries).where(_scope_filter(scope)))
            self.db.execute(insert(config_entries).values(**values))
            self.db.flush()

        self._run(_upsert)

    def delete_config_entry(self, scope: ConfigScope) -> bool:
        result = self._run(lambda: self.db.execute(delete(config_entries).where(_scope_filter(scope))))
        return bool(result.rowcount)
