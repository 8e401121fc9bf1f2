"""
Real-time validation service.

The boundary the data-entry application calls on every field change and on
form submission. Each call reads one cache snapshot and performs no I/O.
"""

from __future__ import annotations

from typing import Any, Mapping

from edc_qc.runtime.cache import CacheSnapshot, ValidatorCache, get_validator_cache
from edc_qc.runtime.results import (
    FieldValidationResult,
    FormValidationResult,
    ValidationContext,
)


class RealtimeValidationService:
    """Runs cached validators against values entered in a form."""

    def __init__(self, cache: ValidatorCache | None = None):
        self.cache = cache or get_validator_cache()

    def validate_field(
        self,
        field: str,
        value: Any,
        sibling_values: Mapping[str, Any] | None = None,
        context: ValidationContext | None = None,
    ) -> FieldValidationResult:
        """Validate one field value.

        Args:
            field: Field that changed
            value: Its new value (raw, as typed)
            sibling_values: Other values of the same record, for cross-field rules
            context: Other visits, statistics and the reference date

        Returns:
            FieldValidationResult; a field without rules passes trivially
        """
        snapshot = self.cache.snapshot()
        values = dict(sibling_values or {})
        values[field] = value
        return self._run(snapshot, field, values, context)

    def validate_form(
        self,
        values: Mapping[str, Any],
        context: ValidationContext | None = None,
    ) -> FormValidationResult:
        """Validate every field of a submitted form that has cached rules.

        ``valid`` is False only when an error-severity rule fails; warnings
        and indeterminate outcomes are reported separately.
        """
        snapshot = self.cache.snapshot()
        values = dict(values)
        field_results = [
            self._run(snapshot, field, values, context)
            for field in sorted(values)
            if snapshot.get(field) is not None
        ]
        return FormValidationResult.from_fields(field_results, cache_version=snapshot.version)

    def _run(
        self,
        snapshot: CacheSnapshot,
        field: str,
        values: dict[str, Any],
        context: ValidationContext | None,
    ) -> FieldValidationResult:
        validator = snapshot.get(field)
        results = validator(values, context) if validator is not None else []
        return FieldValidationResult(
            field=field,
            value=values.get(field),
            results=results,
            cache_version=snapshot.version,
        )
