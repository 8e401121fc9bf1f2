"""
Intermediate representation for compiled batch query plans.

A QueryPlan is a declarative, JSON-serialisable description of how to find the
records that violate one rule. It names tables, joins and aggregate stages and
carries a violation predicate as a small expression tree. It contains no SQL
text and no literal values: every constant is a named parameter, and values
only known at run time (``today``) are deferred parameters.

The data store renders a plan to SQL for its own dialect.
"""

from __future__ import annotations

import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Field


class PlanKind(str, Enum):
    """Shape of a query plan."""

    FILTER = "filter"
    """Single table scan with a violation predicate."""

    CROSS_VISIT = "cross_visit"
    """Self-joins to other visits of the same subject."""

    OUTLIER = "outlier"
    """Aggregate stage joined back to the detail rows."""

    MISSING_DATA = "missing_data"
    """Anti-join from a population table to the data table."""


# =============================================================================
# Expressions
# =============================================================================


class _Expr(BaseModel):
    model_config = ConfigDict(frozen=True)


class ColumnExpr(_Expr):
    """A column of a table alias.

    With ``blank_as_null`` an empty or whitespace-only text value reads as
    NULL, matching the real-time blank policy.
    """

    kind: typing.Literal["column"] = "column"
    alias: str
    column: str
    blank_as_null: bool = False


class ParamExpr(_Expr):
    kind: typing.Literal["param"] = "param"
    name: str


class TrueExpr(_Expr):
    kind: typing.Literal["true"] = "true"


class FuncExpr(_Expr):
    """Portable scalar function: abs, length, year, to_float."""

    kind: typing.Literal["func"] = "func"
    name: str
    args: tuple[PlanExpr, ...] = ()


class BinaryExpr(_Expr):
    """Comparison, and/or, or arithmetic. Division is always true division."""

    kind: typing.Literal["binary"] = "binary"
    op: str
    left: PlanExpr
    right: PlanExpr


class NotExpr(_Expr):
    kind: typing.Literal["not"] = "not"
    operand: PlanExpr


class NegExpr(_Expr):
    kind: typing.Literal["neg"] = "neg"
    operand: PlanExpr


class IsNullExpr(_Expr):
    kind: typing.Literal["is_null"] = "is_null"
    operand: PlanExpr
    negated: bool = False


class InListExpr(_Expr):
    kind: typing.Literal["in_list"] = "in_list"
    operand: PlanExpr
    params: tuple[str, ...]
    negated: bool = False


class BetweenExpr(_Expr):
    kind: typing.Literal["between"] = "between"
    operand: PlanExpr
    low: PlanExpr
    high: PlanExpr


class RegexExpr(_Expr):
    kind: typing.Literal["regex"] = "regex"
    operand: PlanExpr
    param: str


class CaseExpr(_Expr):
    """``CASE WHEN c THEN a WHEN NOT c THEN b END``.

    A NULL condition yields NULL, so an undecidable condition never produces
    a violation.
    """

    kind: typing.Literal["case"] = "case"
    condition: PlanExpr
    then: PlanExpr
    otherwise: PlanExpr


class DayDiffExpr(_Expr):
    """Whole days from ``right`` to ``left``."""

    kind: typing.Literal["day_diff"] = "day_diff"
    left: PlanExpr
    right: PlanExpr


class DateShiftExpr(_Expr):
    """A date moved by a number of days."""

    kind: typing.Literal["date_shift"] = "date_shift"
    operand: PlanExpr
    days: PlanExpr


PlanExpr = Annotated[
    Union[
        ColumnExpr,
        ParamExpr,
        TrueExpr,
        FuncExpr,
        BinaryExpr,
        NotExpr,
        NegExpr,
        IsNullExpr,
        InListExpr,
        BetweenExpr,
        RegexExpr,
        CaseExpr,
        DayDiffExpr,
        DateShiftExpr,
    ],
    Field(discriminator="kind"),
]

for _model in (FuncExpr, BinaryExpr, NotExpr, NegExpr, IsNullExpr, InListExpr,
               BetweenExpr, RegexExpr, CaseExpr, DayDiffExpr, DateShiftExpr):
    _model.model_rebuild()


# =============================================================================
# Plan stages
# =============================================================================


class ParamSpec(BaseModel):
    """A named bind parameter."""

    value: Any = None
    """Constant value; None for deferred parameters."""

    type: str = "text"
    """Field type used to bind the value (number, integer, text, date, boolean)."""

    deferred: str | None = None
    """Name of the run-time value that fills this parameter (e.g. ``today``)."""


class VisitJoin(BaseModel):
    """Join of the data table to another visit of the same subject."""

    alias: str
    visit: str
    """Visit id, or ``previous`` for the latest earlier visit."""

    param: str | None = None
    """Parameter holding the visit id for fixed-visit joins."""


class AggregateStage(BaseModel):
    """Per-column statistics (count, mean, sample variance) joined back to detail rows."""

    alias: str
    column: str
    by_visit: bool = False


class PopulationStage(BaseModel):
    """Population table driving a missing-data anti-join."""

    name: str
    table: str
    subject_column: str = "subject_id"
    visit_column: str | None = None


class IndexRecommendation(BaseModel):
    """An index that would speed a plan up. Correctness never depends on it."""

    table: str
    columns: list[str]
    reason: str

    def ddl(self) -> str:
        name = "ix_" + "_".join([self.table, *self.columns])
        return f"CREATE INDEX IF NOT EXISTS {name} ON {self.table} ({', '.join(self.columns)})"


class QueryPlan(BaseModel):
    """Compiled batch form of one rule.

    Stored next to the rule it came from and tagged with the rule's source
    hash and the schema fingerprint so stale plans can be detected.
    """

    plan_kind: PlanKind
    rule_id: str
    target_field: str

    source_hash: str | None = None
    schema_fingerprint: str | None = None

    # Data table layout
    table: str
    base_alias: str = "r"
    subject_column: str
    visit_column: str
    visit_order_column: str
    value_column: str
    """Column reported as the observed value of a violation."""

    columns: dict[str, str] = Field(default_factory=dict)
    """Every data-table column the plan touches, mapped to its field type."""

    # Stages
    visit_joins: list[VisitJoin] = Field(default_factory=list)
    aggregates: list[AggregateStage] = Field(default_factory=list)
    population: PopulationStage | None = None

    predicate: PlanExpr | None = None
    """Violation predicate: rows where it is TRUE are violations (NULL is not)."""

    params: dict[str, ParamSpec] = Field(default_factory=dict)
    index_recommendations: list[IndexRecommendation] = Field(default_factory=list)

    compiled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def deferred_params(self) -> dict[str, str]:
        """Parameter name -> run-time value name for parameters bound at execution."""
        return {name: spec.deferred for name, spec in self.params.items() if spec.deferred}

    def is_current(self, source_hash: str, schema_fingerprint: str | None = None) -> bool:
        """True when the plan was compiled from this rule text and schema."""
        if self.source_hash != source_hash:
            return False
        if schema_fingerprint is not None and self.schema_fingerprint != schema_fingerprint:
            return False
        return True

    def to_json(self) -> str:
        """Serialize to JSON string for database storage."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> "QueryPlan":
        """Deserialize from JSON string."""
        return cls.model_validate_json(json_str)
