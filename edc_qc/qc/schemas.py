"""Pydantic views over QC runs and violations."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from edc_qc.qc.models import QCRun, QCRunRuleOutcome


class RuleOutcome(BaseModel):
    """Per-rule result within a run."""

    rule_id: str
    rule_version: int | None = None
    status: str
    plan_kind: str | None = None
    violations_found: int = 0
    new_violations: int = 0
    error_message: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def from_model(cls, outcome: QCRunRuleOutcome) -> "RuleOutcome":
        return cls(
            rule_id=outcome.rule_id,
            rule_version=outcome.rule_version,
            status=outcome.status,
            plan_kind=outcome.plan_kind,
            violations_found=outcome.violations_found,
            new_violations=outcome.new_violations,
            error_message=outcome.error_message,
            duration_seconds=outcome.duration_seconds,
        )


class RunSummary(BaseModel):
    """Outcome of one QC run."""

    run_id: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: float | None = None
    rules_executed: int = 0
    rules_failed: int = 0
    rules_skipped: int = 0
    violations_found: int = 0
    new_violations: int = 0
    outcomes: list[RuleOutcome] = Field(default_factory=list)

    @classmethod
    def from_models(cls, run: QCRun, outcomes: list[QCRunRuleOutcome] | None = None) -> "RunSummary":
        return cls(
            run_id=run.run_id,
            trigger=run.trigger,
            status=run.status,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=run.duration_seconds,
            rules_executed=run.rules_executed,
            rules_failed=run.rules_failed,
            rules_skipped=run.rules_skipped,
            violations_found=run.violations_found,
            new_violations=run.new_violations,
            outcomes=[RuleOutcome.from_model(o) for o in outcomes or []],
        )

    def outcome_for(self, rule_id: str) -> RuleOutcome | None:
        for outcome in self.outcomes:
            if outcome.rule_id == rule_id:
                return outcome
        return None


class ViolationFilter(BaseModel):
    """Criteria for listing violations. Unset fields do not filter."""

    rule_id: str | None = None
    subject_id: str | None = None
    field: str | None = None
    state: str | None = Field(None, description="open, resolved or false_positive")
    severity: str | None = None
    run_id: str | None = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class ViolationStatistics(BaseModel):
    """Violation counts for reporting."""

    total: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    open_by_rule: dict[str, int] = Field(default_factory=dict)


class SkippedViolation(BaseModel):
    violation_id: int
    reason: str


class BulkResolveResult(BaseModel):
    """Outcome of a bulk resolution: what was resolved and what was skipped."""

    resolved: list[int] = Field(default_factory=list)
    skipped: list[SkippedViolation] = Field(default_factory=list)
