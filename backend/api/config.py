from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from db.database import get_db
from services import item_service
from services.config_resolver import ConfigScope, ResolvedConfig, scope_from_fields

router = APIRouter(prefix="/config", tags=["config"])


def resolved_to_dict(config: ResolvedConfig) -> dict:
    return {
        "occ_alert": config.occ_alert.total_seconds(),
        "completion_total": config.completion_total,
        "completion_unit": config.completion_unit,
        "excess_past": config.excess_past.total_seconds(),
        "excess_future": config.excess_future.total_seconds(),
        "sources": {
            name: level.value if level is not None else "default"
            for name, level in config.sources.items()
        },
    }


class ConfigScopeRequest(BaseModel):
    all: Optional[bool] = None
    type: Optional[str] = None
    category: Optional[str] = None
    item: Optional[int] = None
    occurrence: Optional[int] = None

    def to_scope(self) -> ConfigScope:
        return scope_from_fields(
            all_items=self.all,
            item_type=self.type,
            category=self.category,
            item_id=self.item,
            occurrence_id=self.occurrence,
        )


class ConfigUpdateRequest(ConfigScopeRequest):
    config: dict[str, Any] = Field(default_factory=dict)


@router.get("/resolve")
def resolve_config(
    occurrence: Optional[int] = None,
    item: Optional[int] = None,
    type: Optional[str] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db),
):
    resolved = item_service.resolve_config(
        db,
        occurrence_id=occurrence,
        item_id=item,
        item_type=type,
        category=category,
    )
    return resolved_to_dict(resolved)


@router.get("")
def list_config_entries(db: Session = Depends(get_db)):
    entries = item_service.list_config_entries(db)
    return {
        "entries": [
            {"scope": scope.to_dict(), "config": payload.model_dump(mode="json", exclude_none=True)}
            for scope, payload in entries
        ]
    }


@router.put("")
def set_config(payload: ConfigUpdateRequest, db: Session = Depends(get_db)):
    scope = payload.to_scope()
    stored = item_service.set_config(db, scope, payload.config)
    return {"scope": scope.to_dict(), "config": stored.model_dump(mode="json", exclude_none=True)}


@router.delete("")
def delete_config(
    all: Optional[bool] = None,
    type: Optional[str] = None,
    category: Optional[str] = None,
    item: Optional[int] = None,
    occurrence: Optional[int] = None,
    db: Session = Depends(get_db),
):
    scope = ConfigScopeRequest(all=all, type=type, category=category, item=item, occurrence=occurrence).to_scope()
    item_service.delete_config(db, scope)
    return {"status": "deleted", "scope": scope.to_dict()}
