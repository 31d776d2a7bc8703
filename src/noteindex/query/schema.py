"""Field schema shared by the query compiler and the indexing pipeline."""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

class FieldType(str, Enum):
    TEXT = "text"          # tokenized, scored, phrase-matchable
    KEYWORD = "keyword"    # whole-value match (tags, status...)
    DATE = "date"          # typed, range-filterable
    NUMBER = "number"      # typed, range-filterable

@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    boost: float = 1.0

    @property
    def rangeable(self) -> bool:
        return self.type in (FieldType.DATE, FieldType.NUMBER)

BUILTIN_FIELDS: dict[str, FieldType] = {
    "title": FieldType.TEXT,
    "body": FieldType.TEXT,
    "tags": FieldType.KEYWORD,
    "status": FieldType.KEYWORD,
    "category": FieldType.KEYWORD,
    "file_name": FieldType.KEYWORD,
    "id": FieldType.KEYWORD,
    "type": FieldType.KEYWORD,
    "date": FieldType.DATE,
    "created": FieldType.DATE,
    "modified": FieldType.DATE,
    "scheduled": FieldType.DATE,
    "deadline": FieldType.DATE,
    "closed": FieldType.DATE,
}

DEFAULT_BOOSTS: dict[str, float] = {"title": 2.0, "body": 1.0, "tags": 1.5}

@dataclass(frozen=True)
class FieldSchema:
    """The set of searchable fields, their types and scoring boosts.

    Unfielded query terms resolve against `default_fields`.
    """
    fields: Mapping[str, FieldSpec]
    default_fields: tuple[str, ...] = ("title", "body")

    def __post_init__(self) -> None:
        for name in self.default_fields:
            spec = self.fields.get(name)
            if spec is None or spec.type != FieldType.TEXT:
                raise ValueError(f"Default field {name!r} must be a declared text field")

    def get(self, name: str) -> FieldSpec | None:
        return self.fields.get(name.lower())

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def boost(self, name: str) -> float:
        spec = self.get(name)
        return spec.boost if spec else 1.0

    def of_type(self, *types: FieldType) -> list[FieldSpec]:
        return [s for s in self.fields.values() if s.type in types]

    @classmethod
    def default(
        cls,
        extra_fields: Mapping[str, str | FieldType] | None = None,
        boosts: Mapping[str, float] | None = None,
        default_fields: tuple[str, ...] = ("title", "body"),
    ) -> "FieldSchema":
        """Build the built-in schema, extended with property-backed fields.

        `extra_fields` maps a note property name to its field type, e.g.
        `{"priority": "number", "project": "keyword"}`.
        """
        types: dict[str, FieldType] = dict(BUILTIN_FIELDS)
        for name, ftype in (extra_fields or {}).items():
            key = name.lower()
            if key in BUILTIN_FIELDS:
                raise ValueError(f"Field {name!r} is built in and cannot be redeclared")
            types[key] = FieldType(ftype)
        all_boosts = dict(DEFAULT_BOOSTS)
        all_boosts.update({k.lower(): float(v) for k, v in (boosts or {}).items()})
        for name, boost in all_boosts.items():
            if boost < 0:
                raise ValueError(f"Invalid boost for {name!r}: {boost}. Must be >= 0.")
        fields = {name: FieldSpec(name, t, all_boosts.get(name, 1.0)) for name, t in types.items()}
        return cls(fields=fields, default_fields=tuple(default_fields))

def parse_typed_value(spec: FieldSpec, raw: Any) -> float:
    """Convert a raw value to the comparable number stored for a typed field.

    Dates compare at day granularity (proleptic Gregorian ordinal).
    Raises ValueError when the value doesn't fit the field's type.
    """
    if spec.type == FieldType.DATE:
        return float(_as_date(raw).toordinal())
    if spec.type == FieldType.NUMBER:
        if isinstance(raw, bool):
            raise ValueError(f"not a number: {raw!r}")
        number = float(raw)
        if not math.isfinite(number):
            raise ValueError(f"not a finite number: {raw!r}")
        return number
    raise ValueError(f"field {spec.name!r} of type {spec.type.value} has no typed value")

def canonical_value(spec: FieldSpec, raw: str) -> str:
    """Render a typed value the same way regardless of how it was written."""
    if spec.type == FieldType.DATE:
        return _as_date(raw).isoformat()
    number = parse_typed_value(spec, raw)
    return str(int(number)) if number.is_integer() else repr(number)

def _as_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if len(text) != 10:
        raise ValueError(f"expected a YYYY-MM-DD date, got {text!r}")
    return date.fromisoformat(text)
