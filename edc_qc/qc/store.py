"""
Tabular data store that executes query plans.

``SqlDataStore`` renders a QueryPlan to SQLAlchemy Core for the connected
dialect (SQLite and PostgreSQL) and returns the violating rows. Anything with
an ``execute(plan)`` method returning ``ViolationRow`` objects can stand in
for it.
"""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Protocol, runtime_checkable

from sqlalchemy import (
    Boolean,
    Date,
    Float,
    Integer,
    String,
    and_,
    bindparam,
    case,
    cast,
    column,
    create_engine,
    extract,
    func,
    not_,
    null,
    or_,
    select,
    table,
    true,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

from edc_qc.compiler import ir
from edc_qc.core.errors import CompilationError, ExecutionError
from edc_qc.dsl.ast import PREVIOUS_VISIT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViolationRow:
    """One record selected by a plan's violation predicate."""

    subject_id: str
    visit_id: str | None = None
    observed_value: str | None = None
    visit_seq: int | None = None


@runtime_checkable
class DataStore(Protocol):
    """Query execution boundary used by the QC engine."""

    def execute(self, plan: ir.QueryPlan) -> list[ViolationRow]:
        ...


# =============================================================================
# Dialect-specific date functions
# =============================================================================


class day_diff(FunctionElement):
    """Whole days from the second date to the first."""

    type = Integer()
    name = "day_diff"
    inherit_cache = True


@compiles(day_diff)
def _day_diff_default(element, compiler, **kw):
    left, right = list(element.clauses)
    return "CAST(julianday(%s) - julianday(%s) AS INTEGER)" % (
        compiler.process(left, **kw),
        compiler.process(right, **kw),
    )


@compiles(day_diff, "postgresql")
def _day_diff_postgresql(element, compiler, **kw):
    left, right = list(element.clauses)
    return "(CAST(%s AS DATE) - CAST(%s AS DATE))" % (
        compiler.process(left, **kw),
        compiler.process(right, **kw),
    )


class date_shift(FunctionElement):
    """A date moved by a (possibly negative) number of days."""

    type = Date()
    name = "date_shift"
    inherit_cache = True


@compiles(date_shift)
def _date_shift_default(element, compiler, **kw):
    value, days = list(element.clauses)
    return "date(%s, CAST(%s AS INTEGER) || ' days')" % (
        compiler.process(value, **kw),
        compiler.process(days, **kw),
    )


@compiles(date_shift, "postgresql")
def _date_shift_postgresql(element, compiler, **kw):
    value, days = list(element.clauses)
    return "(CAST(%s AS DATE) + CAST(%s AS INTEGER))" % (
        compiler.process(value, **kw),
        compiler.process(days, **kw),
    )


# =============================================================================
# Plan rendering
# =============================================================================

SQL_TYPES = {
    "number": Float,
    "integer": Integer,
    "text": String,
    "date": Date,
    "boolean": Boolean,
}

_COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _bind_value(spec: ir.ParamSpec, value: Any) -> Any:
    if spec.type == "date" and isinstance(value, str):
        return date.fromisoformat(value)
    if spec.type == "date" and isinstance(value, datetime):
        return value.date()
    return value


class PlanRenderer:
    """Turns one QueryPlan into a SQLAlchemy ``Select``."""

    def __init__(self, plan: ir.QueryPlan, runtime: dict[str, Any] | None = None):
        self.plan = plan
        self.runtime = runtime or {}
        self.aliases: dict[str, Any] = {}
        self._binds: dict[str, Any] = {}

    # =========================================================================
    # Building blocks
    # =========================================================================

    def data_table(self, alias: str):
        plan = self.plan
        columns: dict[str, str] = {
            plan.subject_column: "text",
            plan.visit_column: "text",
            plan.visit_order_column: "integer",
        }
        columns.update(plan.columns)
        clause = table(plan.table, *(column(name, SQL_TYPES[type_name]()) for name, type_name in columns.items()))
        aliased = clause.alias(alias)
        self.aliases[alias] = aliased
        return aliased

    def bind(self, name: str):
        if name in self._binds:
            return self._binds[name]
        spec = self.plan.params.get(name)
        if spec is None:
            raise CompilationError(f"Plan for rule {self.plan.rule_id} has no parameter '{name}'")
        if spec.deferred:
            if spec.deferred not in self.runtime:
                raise ExecutionError(f"No run-time value for deferred parameter '{spec.deferred}'")
            value = self.runtime[spec.deferred]
        else:
            value = spec.value
        param = bindparam(name, _bind_value(spec, value), type_=SQL_TYPES.get(spec.type, String)())
        self._binds[name] = param
        return param

    def blank_as_null(self, col):
        return case((func.trim(col) == "", null()), else_=col)

    # =========================================================================
    # Expressions
    # =========================================================================

    def expr(self, node: ir.PlanExpr):
        method = getattr(self, "render_" + node.kind, None)
        if method is None:
            raise CompilationError(f"Cannot render plan expression '{node.kind}'")
        return method(node)

    def render_column(self, node: ir.ColumnExpr):
        source = self.aliases.get(node.alias)
        if source is None:
            raise CompilationError(f"Plan references unknown alias '{node.alias}'")
        col = source.c[node.column]
        return self.blank_as_null(col) if node.blank_as_null else col

    def render_param(self, node: ir.ParamExpr):
        return self.bind(node.name)

    def render_true(self, node: ir.TrueExpr):
        return true()

    def render_func(self, node: ir.FuncExpr):
        args = [self.expr(arg) for arg in node.args]
        if node.name == "abs":
            return func.abs(*args)
        if node.name == "length":
            return func.length(*args)
        if node.name == "year":
            return extract("year", args[0])
        raise CompilationError(f"Unknown plan function '{node.name}'")

    def render_binary(self, node: ir.BinaryExpr):
        left = self.expr(node.left)
        right = self.expr(node.right)
        op = node.op
        if op == "and":
            return and_(left, right)
        if op == "or":
            return or_(left, right)
        if op in _COMPARISONS:
            return _COMPARISONS[op](left, right)
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            # true division; a zero divisor yields NULL
            return cast(left, Float) / func.nullif(cast(right, Float), 0)
        raise CompilationError(f"Unknown plan operator '{op}'")

    def render_not(self, node: ir.NotExpr):
        return not_(self.expr(node.operand))

    def render_neg(self, node: ir.NegExpr):
        return -self.expr(node.operand)

    def render_is_null(self, node: ir.IsNullExpr):
        operand = self.expr(node.operand)
        return operand.is_not(None) if node.negated else operand.is_(None)

    def render_in_list(self, node: ir.InListExpr):
        membership = self.expr(node.operand).in_([self.bind(name) for name in node.params])
        return not_(membership) if node.negated else membership

    def render_between(self, node: ir.BetweenExpr):
        return self.expr(node.operand).between(self.expr(node.low), self.expr(node.high))

    def render_regex(self, node: ir.RegexExpr):
        return self.expr(node.operand).regexp_match(self.bind(node.param))

    def render_case(self, node: ir.CaseExpr):
        condition = self.expr(node.condition)
        return case(
            (condition, self.expr(node.then)),
            (not_(condition), self.expr(node.otherwise)),
        )

    def render_day_diff(self, node: ir.DayDiffExpr):
        return day_diff(self.expr(node.left), self.expr(node.right))

    def render_date_shift(self, node: ir.DateShiftExpr):
        return date_shift(self.expr(node.operand), self.expr(node.days))

    # =========================================================================
    # Stages
    # =========================================================================

    def _join_visit(self, from_clause, base, join: ir.VisitJoin):
        plan = self.plan
        other = self.data_table(join.alias)

        if join.visit == PREVIOUS_VISIT:
            # Latest earlier visit per subject/visit, then back to the table.
            current = table(plan.table, column(plan.subject_column), column(plan.visit_column),
                            column(plan.visit_order_column, Integer())).alias(f"{join.alias}_cur")
            earlier = table(plan.table, column(plan.subject_column),
                            column(plan.visit_order_column, Integer())).alias(f"{join.alias}_prev")
            latest = (
                select(
                    current.c[plan.subject_column].label("subject"),
                    current.c[plan.visit_column].label("visit"),
                    func.max(earlier.c[plan.visit_order_column]).label("prev_seq"),
                )
                .select_from(current.join(
                    earlier,
                    and_(
                        earlier.c[plan.subject_column] == current.c[plan.subject_column],
                        earlier.c[plan.visit_order_column] < current.c[plan.visit_order_column],
                    ),
                ))
                .group_by(current.c[plan.subject_column], current.c[plan.visit_column])
                .subquery(f"{join.alias}_latest")
            )
            from_clause = from_clause.outerjoin(
                latest,
                and_(
                    latest.c.subject == base.c[plan.subject_column],
                    latest.c.visit == base.c[plan.visit_column],
                ),
            )
            return from_clause.outerjoin(
                other,
                and_(
                    other.c[plan.subject_column] == base.c[plan.subject_column],
                    other.c[plan.visit_order_column] == latest.c.prev_seq,
                ),
            )

        if join.param is None:
            raise CompilationError(f"Visit join '{join.alias}' has no visit parameter")
        return from_clause.outerjoin(
            other,
            and_(
                other.c[plan.subject_column] == base.c[plan.subject_column],
                other.c[plan.visit_column] == self.bind(join.param),
            ),
        )

    def _join_aggregate(self, from_clause, base, stage: ir.AggregateStage):
        plan = self.plan
        source = table(plan.table, column(plan.visit_column), column(stage.column)).alias(f"{stage.alias}_src")
        value = cast(source.c[stage.column], Float)
        n = func.count(source.c[stage.column])
        mean = func.avg(value)
        raw_variance = (func.avg(value * value) - mean * mean) * n / func.nullif(n - 1, 0)
        variance = case((raw_variance < 0, 0.0), else_=raw_variance)

        outputs = [n.label("n"), mean.label("mean"), variance.label("variance")]
        if stage.by_visit:
            stmt = (
                select(source.c[plan.visit_column].label("visit"), *outputs)
                .where(source.c[stage.column].is_not(None))
                .group_by(source.c[plan.visit_column])
            )
        else:
            stmt = select(*outputs).where(source.c[stage.column].is_not(None))

        stats = stmt.subquery(stage.alias)
        self.aliases[stage.alias] = stats
        on = stats.c.visit == base.c[plan.visit_column] if stage.by_visit else true()
        return from_clause.outerjoin(stats, on)

    def render(self):
        """Build the Select returning ``subject_id, visit_id, observed_value, visit_seq``.

        Rows come ordered by subject, then visit order.
        """
        plan = self.plan
        if plan.plan_kind == ir.PlanKind.MISSING_DATA:
            return self._render_missing_data()
        if plan.predicate is None:
            raise CompilationError(f"Plan for rule {plan.rule_id} has no violation predicate")

        base = self.data_table(plan.base_alias)
        from_clause = base
        for join in plan.visit_joins:
            from_clause = self._join_visit(from_clause, base, join)
        for stage in plan.aggregates:
            from_clause = self._join_aggregate(from_clause, base, stage)

        return (
            select(
                base.c[plan.subject_column].label("subject_id"),
                base.c[plan.visit_column].label("visit_id"),
                base.c[plan.value_column].label("observed_value"),
                base.c[plan.visit_order_column].label("visit_seq"),
            )
            .select_from(from_clause)
            .where(self.expr(plan.predicate))
            .order_by(base.c[plan.subject_column], base.c[plan.visit_order_column])
        )

    def _render_missing_data(self):
        plan = self.plan
        pop = plan.population
        if pop is None:
            raise CompilationError(f"Missing-data plan for rule {plan.rule_id} has no population")

        pop_columns = [column(pop.subject_column)]
        if pop.visit_column:
            pop_columns.append(column(pop.visit_column))
        population = table(pop.table, *pop_columns).alias("p")
        base = self.data_table(plan.base_alias)

        value = base.c[plan.value_column]
        if plan.columns.get(plan.value_column) == "text":
            value = self.blank_as_null(value)
        on = and_(
            base.c[plan.subject_column] == population.c[pop.subject_column],
            value.is_not(None),
        )
        if pop.visit_column:
            on = and_(on, base.c[plan.visit_column] == population.c[pop.visit_column])
            visit = population.c[pop.visit_column]
        else:
            visit = null()

        return (
            select(
                population.c[pop.subject_column].label("subject_id"),
                visit.label("visit_id"),
                null().label("observed_value"),
                null().label("visit_seq"),
            )
            .select_from(population.outerjoin(base, on))
            .where(base.c[plan.subject_column].is_(None))
            .distinct()
            .order_by(population.c[pop.subject_column])
        )


def render_plan(plan: ir.QueryPlan, runtime: dict[str, Any] | None = None):
    """Render a plan to a SQLAlchemy Select with its parameters bound."""
    return PlanRenderer(plan, runtime).render()


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


# =============================================================================
# Store
# =============================================================================


class SqlDataStore:
    """Executes plans against a SQL database holding the clinical data.

    Args:
        engine: SQLAlchemy engine of the data database
        today: Callable returning the date bound to deferred ``today``
            parameters; defaults to the current date
    """

    def __init__(self, engine: Engine, today: Callable[[], date] | None = None):
        self.engine = engine
        self._today = today or date.today

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SqlDataStore":
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        return cls(create_engine(url, echo=False, connect_args=connect_args), **kwargs)

    def runtime_values(self) -> dict[str, Any]:
        return {"today": self._today()}

    def explain(self, plan: ir.QueryPlan) -> str:
        """SQL text of a plan for the connected dialect (parameters not inlined)."""
        stmt = render_plan(plan, self.runtime_values())
        return str(stmt.compile(dialect=self.engine.dialect))

    def execute(self, plan: ir.QueryPlan) -> list[ViolationRow]:
        """Run a plan and return the violating rows.

        Raises:
            ExecutionError: On any driver or data conversion failure
        """
        try:
            stmt = render_plan(plan, self.runtime_values())
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            raise ExecutionError(f"Query for rule {plan.rule_id} failed: {e}") from e
        except (ValueError, TypeError) as e:
            raise ExecutionError(f"Query for rule {plan.rule_id} returned unreadable data: {e}") from e

        logger.debug("Rule %s selected %d rows", plan.rule_id, len(rows))
        return [
            ViolationRow(
                subject_id=str(row.subject_id),
                visit_id=_as_text(row.visit_id),
                observed_value=_as_text(row.observed_value),
                visit_seq=row.visit_seq,
            )
            for row in rows
        ]
