"""
Data schema types consumed by the semantic validator and both code generators.

The host application owns the schema; this module only describes it. The core
never infers field types on its own: every lookup goes through
``resolve_field``.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, Field


class FieldType(str, Enum):
    """Declared type of a data-capture field."""

    NUMBER = "number"
    INTEGER = "integer"
    TEXT = "text"
    DATE = "date"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.INTEGER)

    @property
    def is_ordered(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.INTEGER, FieldType.DATE)


@runtime_checkable
class FieldResolver(Protocol):
    """Capability provided by the host application to type field names."""

    def resolve_field(self, name: str) -> FieldType | None:
        ...


class FieldSpec(BaseModel):
    """A single declared field."""

    name: str
    type: FieldType
    column: str | None = Field(None, description="Column name in the data table (defaults to name)")
    label: str | None = None
    choices: list[str] = Field(default_factory=list)

    @property
    def column_name(self) -> str:
        return self.column or self.name


class DataSchema(BaseModel):
    """Field declarations for the interactive path."""

    fields: dict[str, FieldSpec] = Field(default_factory=dict)

    def resolve_field(self, name: str) -> FieldType | None:
        spec = self.fields.get(name)
        return spec.type if spec else None

    def get_field(self, name: str) -> FieldSpec | None:
        return self.fields.get(name)

    def fingerprint(self) -> str:
        """Stable hash of the schema, used to detect stale compiled plans."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    @classmethod
    def from_types(cls, types: dict[str, FieldType | str], **kwargs) -> "DataSchema":
        """Build a schema from a plain ``{name: type}`` mapping."""
        fields = {
            name: FieldSpec(name=name, type=FieldType(field_type))
            for name, field_type in types.items()
        }
        return cls(fields=fields, **kwargs)


class PopulationSpec(BaseModel):
    """A table enumerating who (or which visit) must have data.

    Used by ``required for all <population>`` rules, which compile into an
    anti-join from the population table to the data table.
    """

    table: str
    subject_column: str = "subject_id"
    visit_column: str | None = None


class TableSchema(DataSchema):
    """Field declarations plus the physical layout of the data table.

    The data table holds one row per subject visit, with one column per field.
    """

    table: str = "records"
    subject_column: str = "subject_id"
    visit_column: str = "visit_id"
    visit_order_column: str = "visit_seq"
    populations: dict[str, PopulationSpec] = Field(default_factory=dict)

    def column_for(self, field_name: str) -> str:
        spec = self.fields.get(field_name)
        return spec.column_name if spec else field_name


def load_schema(path: str | Path) -> TableSchema:
    """Load a table schema from a YAML file.

    The file format is::

        table: records
        fields:
          age: {type: integer}
          sex: {type: text, choices: [Male, Female]}
        populations:
          subjects: {table: subjects}

    Args:
        path: Path to the YAML file

    Returns:
        Parsed TableSchema
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Schema file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        content = yaml.safe_load(f) or {}

    return schema_from_dict(content)


def schema_from_dict(content: dict) -> TableSchema:
    """Build a TableSchema from its mapping form (as found in YAML)."""
    content = dict(content)
    raw_fields = content.pop("fields", {}) or {}
    fields: dict[str, FieldSpec] = {}
    for name, spec in raw_fields.items():
        if isinstance(spec, str):
            spec = {"type": spec}
        fields[name] = FieldSpec(name=name, **spec)
    return TableSchema(fields=fields, **content)
