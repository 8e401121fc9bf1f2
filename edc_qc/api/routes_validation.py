"""Real-time validation endpoints called by the data-entry application."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from edc_qc.runtime.results import ValidationContext
from edc_qc.runtime.service import RealtimeValidationService


router = APIRouter(prefix="/validate", tags=["validation"])


# =============================================================================
# Request Models
# =============================================================================

class FieldValidationRequest(BaseModel):
    """A single field change."""
    field: str = Field(..., min_length=1)
    value: Any = None
    values: dict[str, Any] = Field(default_factory=dict, description="Other values of the same record")
    context: ValidationContext | None = None


class FormValidationRequest(BaseModel):
    """A complete form submission."""
    values: dict[str, Any]
    context: ValidationContext | None = None


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/field")
def validate_field(request: FieldValidationRequest) -> dict[str, Any]:
    """Run every cached rule on one field."""
    result = RealtimeValidationService().validate_field(
        request.field,
        request.value,
        sibling_values=request.values,
        context=request.context,
    )
    return result.to_dict()


@router.post("/form")
def validate_form(request: FormValidationRequest) -> dict[str, Any]:
    """Run every cached rule on every submitted field."""
    result = RealtimeValidationService().validate_form(request.values, context=request.context)
    return result.model_dump(mode="json")
