"""
Record types for the raw-SQL rule and plan tables.

Dataclasses mirror the database rows and convert to and from the domain
models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from edc_qc.compiler.ir import QueryPlan
from edc_qc.rules.models import Rule


def now_iso() -> str:
    """Get current time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Rule Record
# =============================================================================


@dataclass
class RuleRecord:
    """Database record for a rule."""

    rule_id: str
    raw_text: str
    target_field: str
    source_hash: str
    version: int = 1
    context: str = "real-time"
    severity: str = "error"
    category: str = "field"
    form: str | None = None
    message: str | None = None
    is_active: bool = True

    compile_status: str = "pending"
    compile_error: str | None = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> RuleRecord:
        """Create from database row."""
        return cls(
            rule_id=row["rule_id"],
            raw_text=row["raw_text"],
            target_field=row["target_field"],
            source_hash=row["source_hash"],
            version=row["version"],
            context=row["context"],
            severity=row["severity"],
            category=row["category"],
            form=row["form"],
            message=row["message"],
            is_active=bool(row["is_active"]),
            compile_status=row["compile_status"],
            compile_error=row["compile_error"],
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    @classmethod
    def from_rule(cls, rule: Rule) -> RuleRecord:
        return cls(
            rule_id=rule.rule_id,
            raw_text=rule.raw_text,
            target_field=rule.target_field,
            source_hash=rule.source_hash,
            version=rule.version,
            context=rule.context.value,
            severity=rule.severity.value,
            category=rule.category.value,
            form=rule.form,
            message=rule.message,
            is_active=rule.active,
        )

    def to_rule(self) -> Rule:
        return Rule(
            rule_id=self.rule_id,
            raw_text=self.raw_text,
            target_field=self.target_field,
            context=self.context,
            severity=self.severity,
            active=self.is_active,
            message=self.message,
            category=self.category,
            form=self.form,
            version=self.version,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            "rule_id": self.rule_id,
            "raw_text": self.raw_text,
            "target_field": self.target_field,
            "source_hash": self.source_hash,
            "version": self.version,
            "context": self.context,
            "severity": self.severity,
            "category": self.category,
            "form": self.form,
            "message": self.message,
            "is_active": 1 if self.is_active else 0,
            "compile_status": self.compile_status,
            "compile_error": self.compile_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# =============================================================================
# Plan Record
# =============================================================================


@dataclass
class PlanRecord:
    """Database record for a compiled query plan."""

    rule_id: str
    rule_version: int
    source_hash: str
    plan_kind: str
    plan_json: str
    schema_fingerprint: str | None = None
    compiled_at: str = field(default_factory=now_iso)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> PlanRecord:
        """Create from database row."""
        return cls(
            rule_id=row["rule_id"],
            rule_version=row["rule_version"],
            source_hash=row["source_hash"],
            plan_kind=row["plan_kind"],
            plan_json=row["plan_json"],
            schema_fingerprint=row["schema_fingerprint"],
            compiled_at=str(row["compiled_at"]),
        )

    @classmethod
    def from_plan(cls, plan: QueryPlan, rule_version: int) -> PlanRecord:
        return cls(
            rule_id=plan.rule_id,
            rule_version=rule_version,
            source_hash=plan.source_hash or "",
            plan_kind=plan.plan_kind.value,
            plan_json=plan.to_json(),
            schema_fingerprint=plan.schema_fingerprint,
            compiled_at=plan.compiled_at.isoformat(),
        )

    def to_plan(self) -> QueryPlan:
        return QueryPlan.from_json(self.plan_json)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion."""
        return {
            "rule_id": self.rule_id,
            "rule_version": self.rule_version,
            "source_hash": self.source_hash,
            "plan_kind": self.plan_kind,
            "plan_json": self.plan_json,
            "schema_fingerprint": self.schema_fingerprint,
            "compiled_at": self.compiled_at,
        }
