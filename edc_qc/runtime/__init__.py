"""Real-time validation: result types, validator cache and the validation service."""

from edc_qc.runtime.results import (
    FieldStatistics,
    FieldValidationResult,
    FormValidationResult,
    ValidationContext,
    ValidationResult,
    ValidationStatus,
)

__all__ = [
    "FieldStatistics",
    "FieldValidationResult",
    "FormValidationResult",
    "ValidationContext",
    "ValidationResult",
    "ValidationStatus",
]
