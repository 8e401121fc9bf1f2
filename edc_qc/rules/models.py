"""Rule definitions as authored by data managers."""

from __future__ import annotations

import hashlib
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RuleContext(str, Enum):
    """Where a rule is enforced."""

    REALTIME = "real-time"
    BATCH = "batch"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class RuleCategory(str, Enum):
    """Classification used for reporting and filtering."""

    FIELD = "field"
    CROSS_FIELD = "cross_field"
    CROSS_FORM = "cross_form"
    CROSS_VISIT = "cross_visit"
    ELIGIBILITY = "eligibility"
    SAFETY = "safety"
    COMPLETENESS = "completeness"


class Rule(BaseModel):
    """A single validation rule.

    Rules are immutable. A change to the text produces a new Rule with a
    bumped ``version``; compiled artifacts of the old version are discarded.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(..., min_length=1)
    raw_text: str = Field(..., description="Rule expression in the rule language")
    target_field: str = Field(..., min_length=1)
    context: RuleContext = RuleContext.REALTIME
    severity: Severity = Severity.ERROR
    active: bool = True
    message: str | None = Field(None, description="Custom failure message")
    category: RuleCategory = RuleCategory.FIELD
    form: str | None = Field(None, description="Form code the rule belongs to")
    version: int = Field(1, ge=1)

    @property
    def source_hash(self) -> str:
        """Hash of everything that determines the compiled output."""
        payload = f"{self.target_field}\x00{self.raw_text}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    @property
    def is_realtime(self) -> bool:
        return self.context == RuleContext.REALTIME

    @property
    def is_batch(self) -> bool:
        return self.context == RuleContext.BATCH

    def same_definition(self, other: "Rule") -> bool:
        """True when two rules compile to the same artifacts."""
        return self.source_hash == other.source_hash
