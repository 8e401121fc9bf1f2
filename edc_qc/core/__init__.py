"""Core configuration, errors, logging and schema types."""

from edc_qc.core.config import Settings, get_settings
from edc_qc.core.schema import DataSchema, FieldResolver, FieldSpec, FieldType, TableSchema

__all__ = [
    "DataSchema",
    "FieldResolver",
    "FieldSpec",
    "FieldType",
    "Settings",
    "TableSchema",
    "get_settings",
]
