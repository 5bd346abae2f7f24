"""
Per-occurrence configuration.

Config entries are stored against exactly one scope. Resolution walks the
scopes that apply to a context from most to least specific and takes each
field from the first entry that sets it, falling back to built-in defaults.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from services.domain import ItemType, parse_item_type
from services.errors import ValidationError


CONFIG_BLOB_VERSION = 1


class ScopeLevel(str, Enum):
    ALL = "all"
    TYPE = "type"
    CATEGORY = "category"
    ITEM = "item"
    OCCURRENCE = "occurrence"


# Most specific first.
SCOPE_PRECEDENCE: tuple[ScopeLevel, ...] = (
    ScopeLevel.OCCURRENCE,
    ScopeLevel.ITEM,
    ScopeLevel.CATEGORY,
    ScopeLevel.TYPE,
    ScopeLevel.ALL,
)


@dataclass(frozen=True)
class ConfigScope:
    level: ScopeLevel
    key: str | int | None = None

    @classmethod
    def all_items(cls) -> "ConfigScope":
        return cls(ScopeLevel.ALL)

    @classmethod
    def for_type(cls, item_type: ItemType | str) -> "ConfigScope":
        return cls(ScopeLevel.TYPE, parse_item_type(item_type).value)

    @classmethod
    def for_category(cls, category: str) -> "ConfigScope":
        return cls(ScopeLevel.CATEGORY, category)

    @classmethod
    def for_item(cls, item_id: int) -> "ConfigScope":
        return cls(ScopeLevel.ITEM, int(item_id))

    @classmethod
    def for_occurrence(cls, occurrence_id: int) -> "ConfigScope":
        return cls(ScopeLevel.OCCURRENCE, int(occurrence_id))

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level.value, "key": self.key}


def scope_from_fields(
    *,
    all_items: bool | None = None,
    item_type: str | None = None,
    category: str | None = None,
    item_id: int | None = None,
    occurrence_id: int | None = None,
) -> ConfigScope:
    """Build a scope from the five storage discriminators; exactly one must be set."""
    populated: list[ConfigScope] = []
    if all_items:
        populated.append(ConfigScope.all_items())
    if item_type is not None:
        populated.append(ConfigScope.for_type(item_type))
    if category is not None:
        if not str(category).strip():
            raise ValidationError("category scope must not be empty")
        populated.append(ConfigScope.for_category(str(category).strip()))
    if item_id is not None:
        populated.append(ConfigScope.for_item(item_id))
    if occurrence_id is not None:
        populated.append(ConfigScope.for_occurrence(occurrence_id))

    if not populated:
        raise ValidationError("Config scope is empty: set exactly one of all, type, category, item, occurrence")
    if len(populated) > 1:
        levels = ", ".join(scope.level.value for scope in populated)
        raise ValidationError(f"Config scope is ambiguous: got {levels}")
    return populated[0]


class ConfigPayload(BaseModel):
    """A stored config entry. Every field is optional; unset fields inherit."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # How long before an occurrence ends to alert about it.
    occ_alert: Optional[timedelta] = None
    # Target completion amount.
    completion_total: Optional[int] = Field(default=None, ge=1)
    # Display unit for completion values.
    completion_unit: Optional[str] = None
    # Excess progress from other occurrences may count towards this one up to
    # this far into the past / future.
    excess_past: Optional[timedelta] = None
    excess_future: Optional[timedelta] = None

    @field_validator("occ_alert", "excess_past", "excess_future")
    @classmethod
    def _non_negative(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and value < timedelta(0):
            raise ValueError("durations must not be negative")
        return value


CONFIG_FIELDS: tuple[str, ...] = tuple(ConfigPayload.model_fields)


def default_values(progress_max: int = 100) -> dict[str, Any]:
    return {
        "occ_alert": timedelta(0),
        "completion_total": progress_max,
        "completion_unit": "%",
        "excess_past": timedelta(0),
        "excess_future": timedelta(0),
    }


def parse_config_payload(data: Any) -> ConfigPayload:
    if isinstance(data, ConfigPayload):
        return data
    if not isinstance(data, dict):
        raise ValidationError("config must be a JSON object")
    try:
        return ConfigPayload.model_validate(data)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid config: {details}") from exc


def encode_config(payload: ConfigPayload) -> bytes:
    envelope = {"v": CONFIG_BLOB_VERSION, "config": payload.model_dump(mode="json", exclude_none=True)}
    return json.dumps(envelope, ensure_ascii=True, sort_keys=True).encode("utf-8")


def decode_config(blob: bytes | str) -> ConfigPayload:
    try:
        envelope = json.loads(blob)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Stored config is not valid JSON") from exc
    if not isinstance(envelope, dict) or envelope.get("v") != CONFIG_BLOB_VERSION:
        raise ValidationError("Unsupported stored config version")
    return parse_config_payload(envelope.get("config") or {})


@dataclass(frozen=True)
class ConfigContext:
    occurrence_id: int | None = None
    item_id: int | None = None
    item_type: ItemType | None = None
    category: str | None = None


def scopes_for(context: ConfigContext) -> list[ConfigScope]:
    """Scopes applying to a context, most specific first."""
    by_level: dict[ScopeLevel, ConfigScope] = {ScopeLevel.ALL: ConfigScope.all_items()}
    if context.occurrence_id is not None:
        by_level[ScopeLevel.OCCURRENCE] = ConfigScope.for_occurrence(context.occurrence_id)
    if context.item_id is not None:
        by_level[ScopeLevel.ITEM] = ConfigScope.for_item(context.item_id)
    if context.category:
        by_level[ScopeLevel.CATEGORY] = ConfigScope.for_category(context.category)
    if context.item_type is not None:
        by_level[ScopeLevel.TYPE] = ConfigScope.for_type(context.item_type)
    return [by_level[level] for level in SCOPE_PRECEDENCE if level in by_level]


@dataclass(frozen=True, eq=True)
class ResolvedConfig:
    occ_alert: timedelta
    completion_total: int
    completion_unit: str
    excess_past: timedelta
    excess_future: timedelta
    # Field name -> scope level that supplied it; None means the built-in default.
    sources: dict[str, ScopeLevel | None] = field(default_factory=dict, compare=False, hash=False)

    def values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CONFIG_FIELDS}


def resolve(
    entries: Mapping[ConfigScope, ConfigPayload],
    context: ConfigContext,
    defaults: Mapping[str, Any] | None = None,
) -> ResolvedConfig:
    """Merge stored entries field by field; every field always resolves."""
    base = dict(defaults) if defaults is not None else default_values()
    chain = [(scope, entries[scope]) for scope in scopes_for(context) if scope in entries]
    values: dict[str, Any] = {}
    sources: dict[str, ScopeLevel | None] = {}
    for name in CONFIG_FIELDS:
        values[name] = base[name]
        sources[name] = None
        for scope, payload in chain:
            value = getattr(payload, name)
            if value is not None:
                values[name] = value
                sources[name] = scope.level
                break
    return ResolvedConfig(sources=sources, **values)
