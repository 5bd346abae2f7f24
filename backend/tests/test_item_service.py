from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.gateway import StorageGateway  # noqa: E402
from db.models import Occurrence, config_entries  # noqa: E402
from services import item_service  # noqa: E402
from services.config_resolver import ConfigPayload, ConfigScope, ScopeLevel  # noqa: E402
from services.domain import ItemType  # noqa: E402
from services.errors import ConflictError, NotFoundError, StorageError, ValidationError  # noqa: E402


MONDAY = datetime(2026, 10, 19, 9, tzinfo=timezone.utc)
NOW = MONDAY + timedelta(hours=3)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _weekly(**extra) -> dict:
    return {"kind": "recurring", "anchor": MONDAY.isoformat(), "pattern": {"freq": "weekly"}, **extra}


def _new_item(db, name: str = "Water plants", item_type: str = "progress_task", schedule=None, **extra):
    return item_service.create_item(
        db,
        item_type=item_type,
        name=name,
        schedule=schedule or _weekly(),
        now=NOW,
        **extra,
    )


def test_weekly_item_materializes_two_upcoming_occurrences():
    db = _new_db()
    item = _new_item(db)

    occurrences = item_service.materialize_upcoming(db, item.id, NOW + timedelta(days=14), now=NOW)

    assert len(occurrences) == 2
    assert occurrences[1].start - occurrences[0].start == timedelta(days=7)
    assert all(occ.active and occ.progress == 0 for occ in occurrences)


def test_materialize_upcoming_is_idempotent():
    db = _new_db()
    item = _new_item(db)
    horizon = NOW + timedelta(days=28)

    first = item_service.materialize_upcoming(db, item.id, horizon, now=NOW)
    second = item_service.materialize_upcoming(db, item.id, horizon, now=NOW)

    assert first == second
    assert db.scalar(select(func.count()).select_from(Occurrence)) == len(first)


def test_materialize_upcoming_rejects_horizon_before_now():
    db = _new_db()
    item = _new_item(db)

    with pytest.raises(ValidationError):
        item_service.materialize_upcoming(db, item.id, NOW - timedelta(days=1), now=NOW)


@pytest.mark.parametrize("auto_deactivate", [False, True])
def test_completed_occurrence_survives_rematerialization(monkeypatch, auto_deactivate):
    monkeypatch.setattr(settings, "COMPLETION_AUTO_DEACTIVATE", auto_deactivate)
    db = _new_db()
    item = _new_item(db)
    horizon = NOW + timedelta(days=14)
    first, _ = item_service.materialize_upcoming(db, item.id, horizon, now=NOW)

    done = item_service.set_progress(db, first.id, 100, now=NOW)
    item_service.materialize_upcoming(db, item.id, horizon, now=NOW)
    stored = item_service.get_occurrence(db, first.id)

    assert done.completed == NOW
    assert stored == done
    assert stored.progress == 100
    assert stored.active is (not auto_deactivate)


def test_monotonic_setting_rejects_decreasing_progress(monkeypatch):
    db = _new_db()
    item = _new_item(db)
    occ = item_service.materialize_upcoming(db, item.id, now=NOW)[0]
    item_service.set_progress(db, occ.id, 70, now=NOW)

    assert item_service.set_progress(db, occ.id, 30, now=NOW).progress == 30

    monkeypatch.setattr(settings, "PROGRESS_MONOTONIC", True)
    with pytest.raises(ValidationError):
        item_service.set_progress(db, occ.id, 10, now=NOW)
    assert item_service.get_occurrence(db, occ.id).progress == 30


def test_edit_schedule_deactivates_instead_of_deleting():
    db = _new_db()
    item = _new_item(db)
    before = item_service.materialize_upcoming(db, item.id, now=NOW)
    item_service.set_progress(db, before[0].id, 40, now=NOW)

    _, plan = item_service.edit_schedule(
        db,
        item.id,
        _weekly(pattern={"freq": "weekly", "weekdays": ["tue"]}),
        now=NOW,
    )
    history = item_service.list_occurrences(db, item.id)

    assert sorted(plan.deactivations) == sorted(occ.id for occ in before)
    assert {occ.id for occ in before} <= {occ.id for occ in history}
    kept = next(occ for occ in history if occ.id == before[0].id)
    assert not kept.active and kept.progress == 40
    assert all(occ.start.weekday() == 1 for occ in history if occ.active)


def test_edit_schedule_keeps_occurrence_identity_for_matching_slots():
    db = _new_db()
    item = _new_item(db)
    before = item_service.materialize_upcoming(db, item.id, now=NOW)

    _, plan = item_service.edit_schedule(db, item.id, _weekly(duration=3600), now=NOW)
    after = item_service.materialize_upcoming(db, item.id, now=NOW)

    assert [occ.id for occ in after] == [occ.id for occ in before]
    assert all(occ.end - occ.start == timedelta(hours=1) for occ in after)
    assert not plan.deactivations


def _monday_occurrence(db, duration: int):
    item = _new_item(db, schedule=_weekly(duration=duration))
    first = item_service.materialize_upcoming(db, item.id, now=MONDAY)[0]
    assert first.start == MONDAY
    item_service.set_progress(db, first.id, 40, now=MONDAY)
    return item, first


def test_lengthening_duration_past_now_updates_the_ended_occurrence():
    db = _new_db()
    item, first = _monday_occurrence(db, 3600)
    later = MONDAY + timedelta(days=1)

    _, plan = item_service.edit_schedule(db, item.id, _weekly(duration=3 * 86400), now=later)
    monday = [occ for occ in item_service.list_occurrences(db, item.id) if occ.start == MONDAY]

    assert [occ.id for occ in monday] == [first.id]
    assert monday[0].active and monday[0].progress == 40
    assert monday[0].end == MONDAY + timedelta(days=3)
    assert all(inst.start != MONDAY for inst in plan.inserts)
    assert not plan.deactivations
    assert item_service.edit_schedule(db, item.id, _weekly(duration=3 * 86400), now=later)[1].is_empty


def test_shortening_duration_before_now_keeps_the_occurrence_active():
    db = _new_db()
    item, first = _monday_occurrence(db, 3 * 86400)
    later = MONDAY + timedelta(days=1)

    _, plan = item_service.edit_schedule(db, item.id, _weekly(duration=3600), now=later)
    stored = item_service.get_occurrence(db, first.id)

    assert not plan.deactivations
    assert stored.active and stored.progress == 40
    assert stored.end == MONDAY + timedelta(hours=1)
    assert [occ.id for occ in item_service.list_occurrences(db, item.id) if occ.start == MONDAY] == [first.id]


def test_edit_schedule_with_invalid_schedule_leaves_item_untouched():
    db = _new_db()
    item = _new_item(db)

    with pytest.raises(ValidationError):
        item_service.edit_schedule(db, item.id, {"kind": "recurring", "pattern": {"freq": "weekly"}}, now=NOW)
    assert item_service.get_item(db, item.id).schedule == item.schedule


def test_one_off_item_keeps_a_single_occurrence():
    db = _new_db()
    item = _new_item(
        db,
        name="Dentist",
        item_type="event",
        schedule={"kind": "one_off", "start": "2026-10-30T14:00:00Z", "end": "2026-10-30T15:00:00Z"},
    )
    (occ,) = item_service.list_occurrences(db, item.id)

    updated, _ = item_service.edit_schedule(
        db, item.id, {"kind": "one_off", "start": "2026-11-30T14:00:00Z"}, now=NOW
    )
    occurrences = item_service.list_occurrences(db, item.id)

    assert item.is_one_off
    assert updated.only_occ_end == datetime(2026, 11, 30, 14, tzinfo=timezone.utc)
    assert [o.id for o in occurrences] == [occ.id]
    assert occurrences[0].start == datetime(2026, 11, 30, 14, tzinfo=timezone.utc)


def test_list_items_hides_finished_one_offs_when_filtering_by_start():
    db = _new_db()
    weekly = _new_item(db)
    past = _new_item(db, name="Old", schedule={"kind": "one_off", "start": "2026-10-01T09:00:00Z"})
    item_service.update_item(db, weekly.id, active=False, now=NOW)

    assert [i.id for i in item_service.list_items(db)] == [weekly.id, past.id]
    assert [i.id for i in item_service.list_items(db, start=NOW)] == [weekly.id]
    assert [i.id for i in item_service.list_items(db, active=True)] == [past.id]


def test_update_item_validates_and_normalizes_fields():
    db = _new_db()
    item = _new_item(db, category="garden")

    updated = item_service.update_item(db, item.id, name="  Water   the plants ", category="", item_type="EVENT")

    assert updated.name == "Water the plants"
    assert updated.category is None
    assert updated.type == ItemType.EVENT
    with pytest.raises(ValidationError):
        item_service.update_item(db, item.id, name="   ")
    with pytest.raises(NotFoundError):
        item_service.update_item(db, 999, name="Missing")


def test_create_item_rejects_bad_input_without_writing():
    db = _new_db()

    with pytest.raises(ValidationError):
        _new_item(db, item_type="reminder")
    with pytest.raises(ValidationError):
        _new_item(db, schedule={"kind": "recurring", "anchor": MONDAY.isoformat(), "pattern": {"freq": "yearly"}})
    assert item_service.list_items(db) == []


def test_inactive_items_are_not_materialized():
    db = _new_db()
    item = _new_item(db, active=False)

    assert item_service.materialize_upcoming(db, item.id, now=NOW) == []


def test_config_resolution_prefers_item_entry():
    db = _new_db()
    first = _new_item(db, name="First")
    second = _new_item(db, name="Second")
    occ_first = item_service.materialize_upcoming(db, first.id, now=NOW)[0]
    occ_second = item_service.materialize_upcoming(db, second.id, now=NOW)[0]

    item_service.set_config(db, ConfigScope.all_items(), {"completion_total": 5})
    item_service.set_config(db, ConfigScope.for_item(first.id), {"completion_total": 9})

    assert item_service.resolve_config(db, occurrence_id=occ_first.id).completion_total == 9
    assert item_service.resolve_config(db, occurrence_id=occ_second.id).completion_total == 5
    assert item_service.resolve_config(db, item_type="event").completion_total == 5


def test_second_write_to_a_scope_replaces_the_first():
    db = _new_db()
    item = _new_item(db)
    scope = ConfigScope.for_item(item.id)

    item_service.set_config(db, scope, {"completion_total": 3})
    item_service.set_config(db, scope, {"completion_unit": "glasses"})

    rows = db.execute(select(config_entries).where(config_entries.c.id_item == item.id)).all()
    assert len(rows) == 1
    entries = StorageGateway(db).fetch_config_entries([scope])
    assert entries == {scope: ConfigPayload(completion_unit="glasses")}


def test_config_for_unknown_item_or_occurrence_is_rejected():
    db = _new_db()

    with pytest.raises(NotFoundError):
        item_service.set_config(db, ConfigScope.for_item(404), {"completion_total": 3})
    with pytest.raises(NotFoundError):
        item_service.set_config(db, ConfigScope.for_occurrence(404), {"completion_total": 3})
    with pytest.raises(NotFoundError):
        item_service.delete_config(db, ConfigScope.for_category("nothing"))


def test_list_config_entries_orders_broadest_scope_first():
    db = _new_db()
    item = _new_item(db, category="garden")
    item_service.set_config(db, ConfigScope.for_item(item.id), {"completion_total": 2})
    item_service.set_config(db, ConfigScope.for_category("garden"), {"completion_unit": "cans"})
    item_service.set_config(db, ConfigScope.all_items(), {"occ_alert": 3600})

    levels = [scope.level for scope, _ in item_service.list_config_entries(db)]

    assert levels == [ScopeLevel.ALL, ScopeLevel.CATEGORY, ScopeLevel.ITEM]


def test_progress_report_applies_excess_from_previous_occurrence():
    db = _new_db()
    item = _new_item(db)
    first, second = item_service.materialize_upcoming(db, item.id, now=NOW)[:2]
    item_service.set_config(db, ConfigScope.for_item(item.id), {"completion_total": 10})
    item_service.set_config(db, ConfigScope.for_occurrence(second.id), {"excess_past": 8 * 86400})

    item_service.set_progress(db, first.id, 25, now=NOW)
    item_service.set_progress(db, second.id, 2, now=NOW)
    report = item_service.get_progress(db, second.id)

    assert report.total == 10
    assert report.received_excess == 8
    assert report.complete
    assert item_service.get_progress(db, first.id).donated_excess == 8


def test_progress_completes_at_the_configured_total(monkeypatch):
    monkeypatch.setattr(settings, "COMPLETION_AUTO_DEACTIVATE", True)
    db = _new_db()
    item = _new_item(db)
    occ = item_service.materialize_upcoming(db, item.id, now=NOW)[0]
    item_service.set_config(db, ConfigScope.for_item(item.id), {"completion_total": 50})

    done = item_service.set_progress(db, occ.id, 50, now=NOW)

    assert done.completed == NOW
    assert not done.active
    assert item_service.get_progress(db, occ.id).complete


def test_completion_total_above_progress_maximum_is_rejected():
    db = _new_db()
    item = _new_item(db)

    with pytest.raises(ValidationError, match="completion_total"):
        item_service.set_config(db, ConfigScope.for_item(item.id), {"completion_total": settings.PROGRESS_MAX + 1})
    assert item_service.list_config_entries(db) == []
    item_service.set_config(db, ConfigScope.for_item(item.id), {"completion_total": settings.PROGRESS_MAX})


def test_current_occurrences_materializes_up_to_the_default_horizon():
    db = _new_db()
    item = _new_item(db, name="Standup", item_type="event", horizon=NOW)
    assert item_service.list_occurrences(db, item.id) == []

    current = item_service.current_occurrences(db, now=NOW)

    assert [entry.item.id for entry in current] == [item.id]
    starts = [occ.start for occ in item_service.list_occurrences(db, item.id)]
    assert starts == [MONDAY + timedelta(days=7), MONDAY + timedelta(days=14)]


def test_current_occurrences_pick_next_event_and_covering_task():
    db = _new_db()
    task = _new_item(db, name="Weekly review", schedule=_weekly(span_to_next=True))
    event = _new_item(db, name="Standup", item_type="event", schedule=_weekly())
    item_service.set_config(db, ConfigScope.for_item(task.id), {"occ_alert": 7 * 86400})

    current = {entry.item.id: entry for entry in item_service.current_occurrences(db, now=NOW)}

    assert current[task.id].occurrence.start == MONDAY
    assert current[task.id].alert
    assert current[event.id].occurrence.start == MONDAY + timedelta(days=7)
    assert not current[event.id].alert


def test_delete_item_requires_cascade_when_history_exists():
    db = _new_db()
    item = _new_item(db)
    occ = item_service.materialize_upcoming(db, item.id, now=NOW)[0]
    item_service.set_config(db, ConfigScope.for_occurrence(occ.id), {"completion_total": 4})

    with pytest.raises(ConflictError):
        item_service.delete_item(db, item.id)
    removed = item_service.delete_item(db, item.id, cascade=True)

    assert removed["occurrences"] >= 1
    assert removed["configs"] == 1
    with pytest.raises(NotFoundError):
        item_service.get_item(db, item.id)


def test_corrupt_schedule_blob_surfaces_as_storage_error():
    db = _new_db()
    item = _new_item(db)
    db.execute(
        Base.metadata.tables["tbl_items"].update().values(sched_blob=b"{broken")
    )
    db.commit()

    with pytest.raises(StorageError):
        item_service.get_item(db, item.id)


def test_alert_period_uses_resolved_config():
    db = _new_db()
    item = _new_item(db, schedule=_weekly(duration=3600))
    occ = item_service.materialize_upcoming(db, item.id, now=NOW)[0]

    assert not item_service.is_in_alert_period(db, occ.id, now=occ.end - timedelta(minutes=30))

    item_service.set_config(db, ConfigScope.for_type(ItemType.PROGRESS_TASK), {"occ_alert": 3600})

    assert item_service.is_in_alert_period(db, occ.id, now=occ.end - timedelta(minutes=30))
    assert not item_service.is_in_alert_period(db, occ.id, now=occ.end - timedelta(hours=2))
