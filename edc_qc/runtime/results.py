"""
Result and context types for real-time validation.

Validators return three-valued results: ``pass``, ``fail`` or
``indeterminate``. Indeterminate means the rule could not be decided from the
data supplied (a referenced field has not been entered yet, no previous visit
exists, no statistics are available) and is never reported as a violation.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from edc_qc.rules.models import Severity


class ValidationStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


class FieldStatistics(BaseModel):
    """Summary statistics of a numeric field, used by outlier rules."""

    model_config = ConfigDict(frozen=True)

    mean: float
    sd: float | None = None
    count: int = 0


class ValidationContext(BaseModel):
    """Data outside the current record that a rule may consult.

    Supplied by the caller; validators never fetch anything themselves.
    """

    model_config = ConfigDict(frozen=True)

    visits: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Other visits of the same subject keyed by visit id; 'previous' is the prior visit",
    )
    statistics: dict[str, FieldStatistics] = Field(
        default_factory=dict,
        description="Field statistics across all visits, keyed by field name",
    )
    visit_statistics: dict[str, dict[str, FieldStatistics]] = Field(
        default_factory=dict,
        description="Field statistics per visit, keyed by visit id then field name",
    )
    current_visit: str | None = None
    today: date | None = None

    def visit_values(self, visit: str) -> dict[str, Any] | None:
        return self.visits.get(visit)

    def statistics_for(self, field: str, by_visit: bool = False) -> FieldStatistics | None:
        if by_visit:
            if self.current_visit is None:
                return None
            return self.visit_statistics.get(self.current_visit, {}).get(field)
        return self.statistics.get(field)

    def resolve_today(self) -> date:
        return self.today or date.today()


EMPTY_CONTEXT = ValidationContext()


class ValidationResult(BaseModel):
    """Outcome of one rule against one record."""

    rule_id: str | None = None
    field: str
    status: ValidationStatus
    severity: Severity = Severity.ERROR
    message: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASS

    @property
    def failed(self) -> bool:
        return self.status == ValidationStatus.FAIL

    @property
    def indeterminate(self) -> bool:
        return self.status == ValidationStatus.INDETERMINATE


class FieldValidationResult(BaseModel):
    """All rule outcomes for one field."""

    field: str
    value: Any = None
    results: list[ValidationResult] = Field(default_factory=list)
    cache_version: int | None = None

    @property
    def errors(self) -> list[ValidationResult]:
        return [r for r in self.results if r.failed and r.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationResult]:
        return [r for r in self.results if r.failed and r.severity == Severity.WARNING]

    @property
    def indeterminate(self) -> list[ValidationResult]:
        return [r for r in self.results if r.indeterminate]

    @property
    def valid(self) -> bool:
        """False only when an error-severity rule failed."""
        return not self.errors

    @property
    def status(self) -> ValidationStatus:
        if any(r.failed for r in self.results):
            return ValidationStatus.FAIL
        if any(r.indeterminate for r in self.results):
            return ValidationStatus.INDETERMINATE
        return ValidationStatus.PASS

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "valid": self.valid,
            "status": self.status.value,
            "errors": [r.model_dump(mode="json") for r in self.errors],
            "warnings": [r.model_dump(mode="json") for r in self.warnings],
            "indeterminate": [r.model_dump(mode="json") for r in self.indeterminate],
            "cache_version": self.cache_version,
        }


class FormValidationResult(BaseModel):
    """Aggregate of every cached rule over a whole form."""

    valid: bool
    errors: list[ValidationResult] = Field(default_factory=list)
    warnings: list[ValidationResult] = Field(default_factory=list)
    indeterminate: list[ValidationResult] = Field(default_factory=list)
    fields_checked: list[str] = Field(default_factory=list)
    rules_evaluated: int = 0
    cache_version: int | None = None

    @classmethod
    def from_fields(cls, field_results: list[FieldValidationResult], cache_version: int | None = None) -> "FormValidationResult":
        errors: list[ValidationResult] = []
        warnings: list[ValidationResult] = []
        indeterminate: list[ValidationResult] = []
        rules_evaluated = 0
        for field_result in field_results:
            errors.extend(field_result.errors)
            warnings.extend(field_result.warnings)
            indeterminate.extend(field_result.indeterminate)
            rules_evaluated += len(field_result.results)
        return cls(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            indeterminate=indeterminate,
            fields_checked=[f.field for f in field_results],
            rules_evaluated=rules_evaluated,
            cache_version=cache_version,
        )
