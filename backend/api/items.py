from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db.database import get_db
from services import item_service
from services.domain import ItemRecord, OccurrenceRecord
from services.materializer import ReconcilePlan
from services.schedule import schedule_to_dict
from utils.datetime_utils import utcnow

router = APIRouter(prefix="/items", tags=["items"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def item_to_dict(item: ItemRecord) -> dict:
    return {
        "id": item.id,
        "type": item.type.value,
        "active": item.active,
        "category": item.category,
        "name": item.name,
        "description": item.description,
        "schedule": schedule_to_dict(item.schedule),
        "only_occ_end": _iso(item.only_occ_end),
        "created_at": _iso(item.created),
        "updated_at": _iso(item.updated),
    }


def occurrence_to_dict(occ: OccurrenceRecord) -> dict:
    return {
        "id": occ.id,
        "item_id": occ.item_id,
        "active": occ.active,
        "start": _iso(occ.start),
        "end": _iso(occ.end),
        "progress": occ.progress,
        "completed_at": _iso(occ.completed),
    }


class ItemCreateRequest(BaseModel):
    type: str
    name: str = Field(min_length=1, max_length=300)
    schedule: dict[str, Any]
    category: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = None
    active: bool = True


class ItemUpdateRequest(BaseModel):
    type: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=300)
    category: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = None
    active: Optional[bool] = None


class ScheduleUpdateRequest(BaseModel):
    schedule: dict[str, Any]


def _plan_to_dict(plan: ReconcilePlan) -> dict:
    return {**plan.summary(), "deactivated_ids": list(plan.deactivations)}


@router.post("", status_code=201)
def create_item(payload: ItemCreateRequest, db: Session = Depends(get_db)):
    item = item_service.create_item(
        db,
        item_type=payload.type,
        name=payload.name,
        schedule=payload.schedule,
        category=payload.category,
        description=payload.description,
        active=payload.active,
    )
    return item_to_dict(item)


@router.get("")
def list_items(
    active: Optional[bool] = None,
    start: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    items = item_service.list_items(db, active=active, start=start)
    return {"items": [item_to_dict(item) for item in items], "count": len(items)}


@router.get("/{item_id}")
def get_item(item_id: int, db: Session = Depends(get_db)):
    return item_to_dict(item_service.get_item(db, item_id))


@router.patch("/{item_id}")
def update_item(item_id: int, payload: ItemUpdateRequest, db: Session = Depends(get_db)):
    item = item_service.update_item(
        db,
        item_id,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        item_type=payload.type,
        active=payload.active,
    )
    return item_to_dict(item)


@router.put("/{item_id}/schedule")
def edit_schedule(item_id: int, payload: ScheduleUpdateRequest, db: Session = Depends(get_db)):
    item, plan = item_service.edit_schedule(db, item_id, payload.schedule)
    return {"item": item_to_dict(item), "reconciled": _plan_to_dict(plan)}


@router.post("/{item_id}/materialize")
def materialize_upcoming(
    item_id: int,
    days: Optional[int] = Query(default=None, ge=0, le=3660),
    include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    now = utcnow()
    horizon = now + timedelta(days=days) if days is not None else None
    occurrences = item_service.materialize_upcoming(
        db, item_id, horizon, now=now, include_inactive=include_inactive
    )
    return {"occurrences": [occurrence_to_dict(occ) for occ in occurrences]}


@router.get("/{item_id}/occurrences")
def list_occurrences(
    item_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_inactive: bool = True,
    db: Session = Depends(get_db),
):
    occurrences = item_service.list_occurrences(
        db, item_id, start=start, end=end, include_inactive=include_inactive
    )
    return {"occurrences": [occurrence_to_dict(occ) for occ in occurrences]}


@router.delete("/{item_id}")
def delete_item(item_id: int, cascade: bool = False, db: Session = Depends(get_db)):
    removed = item_service.delete_item(db, item_id, cascade=cascade)
    return {"status": "deleted", "item_id": item_id, "removed": removed}
