"""SQLModel table definitions for violations, their history and QC runs.

Violations are never deleted. Every detection and every resolution
transition is also appended to ``violation_events``. QC runs and their
per-rule outcomes are written once and not changed after the run finishes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResolutionState(str, Enum):
    """Lifecycle of a violation. Transitions only move forward from OPEN."""
    OPEN = "open"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class ViolationEventType(str, Enum):
    DETECTED = "detected"          # First time a key is seen while no open violation exists
    REDETECTED = "redetected"      # Seen again by a later run while still open
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class RuleOutcomeStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Violation(SQLModel, table=True):
    """A record that failed a batch rule.

    Identified among open violations by ``(rule_id, subject_id, field)``.
    """

    __tablename__ = "violations"

    id: Optional[int] = Field(default=None, primary_key=True)
    rule_id: str = Field(..., index=True)
    rule_version: int = Field(default=1)
    subject_id: str = Field(..., index=True)
    visit_id: Optional[str] = Field(default=None, description="Visit of the latest detection")
    field: str = Field(..., index=True)
    observed_value: Optional[str] = Field(default=None)
    severity: str = Field(default="error", index=True)

    resolution_state: str = Field(default=ResolutionState.OPEN.value, index=True)
    resolution_notes: Optional[str] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)

    detected_at: datetime = Field(default_factory=utcnow, description="Latest detection")
    first_detected_at: datetime = Field(default_factory=utcnow)
    run_id: Optional[str] = Field(default=None, index=True, description="Run of the latest detection")
    first_run_id: Optional[str] = Field(default=None)

    @property
    def is_open(self) -> bool:
        return self.resolution_state == ResolutionState.OPEN.value

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["is_open"] = self.is_open
        return data


class ViolationEvent(SQLModel, table=True):
    """Append-only history entry for a violation."""

    __tablename__ = "violation_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    violation_id: int = Field(..., foreign_key="violations.id", index=True)
    event_type: str = Field(..., description="detected, redetected, resolved, false_positive")
    run_id: Optional[str] = Field(default=None)
    actor: Optional[str] = Field(default=None)
    notes: Optional[str] = Field(default=None)
    observed_value: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


class QCRun(SQLModel, table=True):
    """One execution of the batch QC engine."""

    __tablename__ = "qc_runs"

    run_id: str = Field(..., primary_key=True)
    trigger: str = Field(default=RunTrigger.MANUAL.value)
    status: str = Field(default=RunStatus.RUNNING.value, index=True)
    started_at: datetime = Field(default_factory=utcnow, index=True)
    finished_at: Optional[datetime] = Field(default=None)
    duration_seconds: Optional[float] = Field(default=None)

    rules_executed: int = Field(default=0)
    rules_failed: int = Field(default=0)
    rules_skipped: int = Field(default=0)
    violations_found: int = Field(default=0)
    new_violations: int = Field(default=0)


class QCRunRuleOutcome(SQLModel, table=True):
    """Result of one rule within a QC run."""

    __tablename__ = "qc_run_rules"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(..., foreign_key="qc_runs.run_id", index=True)
    rule_id: str = Field(..., index=True)
    rule_version: Optional[int] = Field(default=None)
    status: str = Field(..., description="executed, failed, skipped")
    plan_kind: Optional[str] = Field(default=None)
    violations_found: int = Field(default=0)
    new_violations: int = Field(default=0)
    error_message: Optional[str] = Field(default=None)
    duration_seconds: float = Field(default=0.0)
