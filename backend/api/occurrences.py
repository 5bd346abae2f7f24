from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.config import resolved_to_dict
from api.items import item_to_dict, occurrence_to_dict
from db.database import get_db
from services import item_service
from services.completion_tracker import ProgressReport

router = APIRouter(prefix="/occurrences", tags=["occurrences"])


class ProgressUpdateRequest(BaseModel):
    progress: Any


def _report_to_dict(report: ProgressReport) -> dict:
    return {
        "occurrence_id": report.occurrence_id,
        "progress": report.progress,
        "credited": report.credited,
        "total": report.total,
        "unit": report.unit,
        "received_excess": report.received_excess,
        "donated_excess": report.donated_excess,
        "complete": report.complete,
    }


@router.get("/current")
def current_occurrences(db: Session = Depends(get_db)):
    """Current occurrence of every active item.

    Materializes upcoming occurrences of each item up to the lookahead
    horizon before answering, so this read may insert rows.
    """
    current = item_service.current_occurrences(db)
    return {
        "occurrences": [
            {
                "item": item_to_dict(entry.item),
                "occurrence": occurrence_to_dict(entry.occurrence),
                "config": resolved_to_dict(entry.config),
                "alert": entry.alert,
            }
            for entry in current
        ]
    }


@router.put("/{occurrence_id}/progress")
def set_progress(occurrence_id: int, payload: ProgressUpdateRequest, db: Session = Depends(get_db)):
    occurrence = item_service.set_progress(db, occurrence_id, payload.progress)
    report = item_service.get_progress(db, occurrence_id)
    return {"occurrence": occurrence_to_dict(occurrence), "report": _report_to_dict(report)}


@router.get("/{occurrence_id}/progress")
def get_progress(occurrence_id: int, db: Session = Depends(get_db)):
    return _report_to_dict(item_service.get_progress(db, occurrence_id))
