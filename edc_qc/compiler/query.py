"""
Query code generator.

Lowers a rule tree into a declarative QueryPlan for the batch QC engine. The
plan's violation predicate is ``NOT(rule)`` evaluated under SQL three-valued
logic: a NULL predicate is not a violation, which is the batch counterpart of
an indeterminate real-time result.
"""

from __future__ import annotations

from typing import Any

from edc_qc.compiler import ir
from edc_qc.compiler.semantic import static_type
from edc_qc.core.errors import CompilationError
from edc_qc.core.schema import FieldType, TableSchema
from edc_qc.dsl import ast


BASE_ALIAS = "r"
PREVIOUS_ALIAS = "pv"
STATS_ALIAS = "s"
TODAY_PARAM = "today"


def _literal_type(value: Any) -> str:
    if isinstance(value, bool):
        return FieldType.BOOLEAN.value
    if isinstance(value, int):
        return FieldType.INTEGER.value
    if isinstance(value, float):
        return FieldType.NUMBER.value
    return FieldType.TEXT.value


class QueryGenerator(ast.NodeVisitor):
    """Builds plan expressions and collects the stages they need.

    ``visit`` returns a ``PlanExpr``. Joins, aggregate stages, parameters and
    touched columns accumulate on the generator and are assembled into the
    plan by ``compile_batch``.
    """

    def __init__(self, schema: TableSchema, target_field: str):
        self.schema = schema
        self.target_field = target_field
        self.params: dict[str, ir.ParamSpec] = {}
        self.columns: dict[str, str] = {}
        self.visit_joins: dict[str, ir.VisitJoin] = {}
        self.aggregates: dict[str, ir.AggregateStage] = {}

    # =========================================================================
    # Helpers
    # =========================================================================

    def param(self, value: Any, type_name: str | None = None) -> ir.ParamExpr:
        name = f"p{len(self.params)}"
        self.params[name] = ir.ParamSpec(value=value, type=type_name or _literal_type(value))
        return ir.ParamExpr(name=name)

    def column(self, alias: str, field_name: str) -> ir.ColumnExpr:
        field_type = self.schema.resolve_field(field_name)
        type_name = FieldType(field_type).value if field_type is not None else FieldType.TEXT.value
        column_name = self.schema.column_for(field_name)
        self.columns[column_name] = type_name
        return ir.ColumnExpr(
            alias=alias,
            column=column_name,
            blank_as_null=type_name == FieldType.TEXT.value,
        )

    def _static_type(self, node: ast.Node) -> FieldType | None:
        return static_type(node, self.schema, self.target_field)

    def _operand(self, node: ast.Node, other: ast.Node | None = None) -> ir.PlanExpr:
        """Lower a value, binding ISO date strings as dates next to date operands."""
        if (
            node.kind == "literal"
            and isinstance(node.value, str)
            and other is not None
            and self._static_type(other) == FieldType.DATE
        ):
            return self.param(node.value, FieldType.DATE.value)
        return self.visit(node)

    def condition(self, node: ast.Node) -> ir.PlanExpr:
        """Lower a node used as a truth value; bare boolean fields compare to true."""
        expr = self.visit(node)
        if node.kind in ("field_ref", "cross_field_ref", "cross_visit_ref"):
            return ir.BinaryExpr(op="==", left=expr, right=self.param(True, FieldType.BOOLEAN.value))
        return expr

    # =========================================================================
    # Operands
    # =========================================================================

    def visit_literal(self, node: ast.Literal) -> ir.PlanExpr:
        if node.unit == "days":
            raise CompilationError("A duration can only be added to or subtracted from a date")
        return self.param(node.value)

    def visit_field_ref(self, node: ast.FieldRef) -> ir.PlanExpr:
        return self.column(BASE_ALIAS, self.target_field)

    def visit_cross_field_ref(self, node: ast.CrossFieldRef) -> ir.PlanExpr:
        return self.column(BASE_ALIAS, node.name)

    def visit_cross_visit_ref(self, node: ast.CrossVisitRef) -> ir.PlanExpr:
        join = self.visit_joins.get(node.visit)
        if join is None:
            if node.visit == ast.PREVIOUS_VISIT:
                join = ir.VisitJoin(alias=PREVIOUS_ALIAS, visit=node.visit)
            else:
                alias = f"v{len(self.visit_joins)}"
                param = self.param(node.visit, FieldType.TEXT.value)
                join = ir.VisitJoin(alias=alias, visit=node.visit, param=param.name)
            self.visit_joins[node.visit] = join
        return self.column(join.alias, node.name)

    def visit_function_call(self, node: ast.FunctionCall) -> ir.PlanExpr:
        if node.name == "today":
            self.params.setdefault(
                TODAY_PARAM,
                ir.ParamSpec(type=FieldType.DATE.value, deferred=TODAY_PARAM),
            )
            return ir.ParamExpr(name=TODAY_PARAM)
        if node.name == "is_blank":
            (arg,) = node.args
            return ir.IsNullExpr(operand=self.visit(arg))
        if node.name in ("length", "abs", "year"):
            return ir.FuncExpr(name=node.name, args=tuple(self.visit(arg) for arg in node.args))
        raise CompilationError(f"No batch implementation for function '{node.name}'")

    # =========================================================================
    # Operators
    # =========================================================================

    def visit_binary_op(self, node: ast.BinaryOp) -> ir.PlanExpr:
        op = node.op
        if op in ast.LOGICAL_OPS:
            return ir.BinaryExpr(op=op, left=self.condition(node.left), right=self.condition(node.right))

        if op in ast.COMPARISON_OPS:
            for value_node, literal in ((node.left, node.right), (node.right, node.left)):
                if literal.kind == "literal" and literal.value is None and op in ("==", "!="):
                    return ir.IsNullExpr(operand=self.visit(value_node), negated=op == "!=")
            return ir.BinaryExpr(
                op=op,
                left=self._operand(node.left, node.right),
                right=self._operand(node.right, node.left),
            )

        if op in ("+", "-"):
            shifted = self._date_arithmetic(node)
            if shifted is not None:
                return shifted
        if op in ast.ARITHMETIC_OPS:
            return ir.BinaryExpr(op=op, left=self.visit(node.left), right=self.visit(node.right))
        raise CompilationError(f"Unknown operator '{op}'")

    def _date_arithmetic(self, node: ast.BinaryOp) -> ir.PlanExpr | None:
        left, right = node.left, node.right
        if right.kind == "literal" and right.unit == "days":
            amount = right.value if node.op == "+" else -right.value
            return ir.DateShiftExpr(
                operand=self._operand(left), days=self.param(amount, FieldType.NUMBER.value)
            )
        if left.kind == "literal" and left.unit == "days" and node.op == "+":
            return ir.DateShiftExpr(
                operand=self._operand(right), days=self.param(left.value, FieldType.NUMBER.value)
            )
        if (
            node.op == "-"
            and self._static_type(left) == FieldType.DATE
            and self._static_type(right) == FieldType.DATE
        ):
            return ir.DayDiffExpr(left=self.visit(left), right=self.visit(right))
        return None

    def visit_unary_op(self, node: ast.UnaryOp) -> ir.PlanExpr:
        if node.op == "not":
            return ir.NotExpr(operand=self.condition(node.operand))
        return ir.NegExpr(operand=self.visit(node.operand))

    def visit_conditional(self, node: ast.Conditional) -> ir.PlanExpr:
        otherwise = (
            self.condition(node.else_branch) if node.else_branch is not None else ir.TrueExpr()
        )
        return ir.CaseExpr(
            condition=self.condition(node.condition),
            then=self.condition(node.then_branch),
            otherwise=otherwise,
        )

    # =========================================================================
    # Checks
    # =========================================================================

    def visit_list_membership(self, node: ast.ListMembership) -> ir.PlanExpr:
        operand = self.visit(node.operand)
        is_date = self._static_type(node.operand) == FieldType.DATE
        names = []
        for literal in node.values:
            type_name = FieldType.DATE.value if is_date and isinstance(literal.value, str) else None
            names.append(self.param(literal.value, type_name).name)
        return ir.InListExpr(operand=operand, params=tuple(names), negated=node.negated)

    def visit_range(self, node: ast.Range) -> ir.PlanExpr:
        return ir.BetweenExpr(
            operand=self.visit(node.operand),
            low=self._operand(node.low, node.operand),
            high=self._operand(node.high, node.operand),
        )

    def visit_required(self, node: ast.Required) -> ir.PlanExpr:
        return ir.IsNullExpr(operand=self.visit(node.operand), negated=True)

    def visit_pattern_match(self, node: ast.PatternMatch) -> ir.PlanExpr:
        param = self.param(node.pattern, FieldType.TEXT.value)
        return ir.RegexExpr(operand=self.visit(node.operand), param=param.name)

    def visit_tolerance(self, node: ast.Tolerance) -> ir.PlanExpr:
        current = self.visit(node.operand)
        baseline = self.visit(node.reference)

        if node.unit == "percent":
            deviation = ir.BinaryExpr(
                op="/",
                left=ir.FuncExpr(name="abs", args=(ir.BinaryExpr(op="-", left=current, right=baseline),)),
                right=baseline,
            )
            return ir.BinaryExpr(
                op="<=", left=deviation, right=self.param(node.amount / 100, FieldType.NUMBER.value)
            )

        days = ir.FuncExpr(name="abs", args=(ir.DayDiffExpr(left=current, right=baseline),))
        return ir.BinaryExpr(op="<=", left=days, right=self.param(node.amount, FieldType.NUMBER.value))

    def visit_outlier(self, node: ast.Outlier) -> ir.PlanExpr:
        value = self.visit(node.operand)
        stage = ir.AggregateStage(
            alias=f"{STATS_ALIAS}{len(self.aggregates)}",
            column=value.column,
            by_visit=node.by_visit,
        )
        key = f"{stage.column}:{stage.by_visit}"
        stage = self.aggregates.setdefault(key, stage)

        mean = ir.ColumnExpr(alias=stage.alias, column="mean")
        variance = ir.ColumnExpr(alias=stage.alias, column="variance")
        deviation = ir.BinaryExpr(op="-", left=value, right=mean)
        squared = ir.BinaryExpr(op="*", left=deviation, right=deviation)
        limit = ir.BinaryExpr(
            op="*", left=self.param(node.k * node.k, FieldType.NUMBER.value), right=variance
        )
        # (v - mean)^2 <= k^2 * variance  <=>  |v - mean| <= k * sd
        return ir.BinaryExpr(op="<=", left=squared, right=limit)


# =============================================================================
# Plan assembly
# =============================================================================


def _index_recommendations(plan: ir.QueryPlan) -> list[ir.IndexRecommendation]:
    recs: list[ir.IndexRecommendation] = []
    table = plan.table

    if plan.plan_kind == ir.PlanKind.MISSING_DATA and plan.population is not None:
        pop = plan.population
        recs.append(ir.IndexRecommendation(
            table=table,
            columns=[plan.subject_column, plan.value_column],
            reason="anti-join from population",
        ))
        pop_columns = [pop.subject_column] + ([pop.visit_column] if pop.visit_column else [])
        recs.append(ir.IndexRecommendation(table=pop.table, columns=pop_columns, reason="population scan"))
        return recs

    filter_columns = sorted(plan.columns)
    for column in filter_columns:
        if column in (plan.subject_column, plan.visit_column, plan.visit_order_column):
            continue
        recs.append(ir.IndexRecommendation(table=table, columns=[column], reason="filter predicate"))

    for join in plan.visit_joins:
        if join.visit == ast.PREVIOUS_VISIT:
            recs.append(ir.IndexRecommendation(
                table=table,
                columns=[plan.subject_column, plan.visit_order_column],
                reason="previous-visit self-join",
            ))
        else:
            recs.append(ir.IndexRecommendation(
                table=table,
                columns=[plan.subject_column, plan.visit_column],
                reason=f"self-join to visit {join.visit}",
            ))

    for stage in plan.aggregates:
        columns = [plan.visit_column, stage.column] if stage.by_visit else [stage.column]
        recs.append(ir.IndexRecommendation(table=table, columns=columns, reason="aggregate stage"))

    # Drop duplicates, keep first-seen order.
    seen = set()
    unique = []
    for rec in recs:
        key = (rec.table, tuple(rec.columns))
        if key not in seen:
            seen.add(key)
            unique.append(rec)
    return unique


def compile_batch(
    node: ast.Node,
    table_schema: TableSchema,
    rule_id: str,
    target_field: str,
    source_hash: str | None = None,
) -> ir.QueryPlan:
    """Lower a checked rule tree into a query plan.

    Args:
        node: Root of the rule tree (already semantically checked)
        table_schema: Field types plus physical table layout
        rule_id: Rule the plan belongs to
        target_field: Field the rule is attached to
        source_hash: Hash of the rule source, stored on the plan

    Returns:
        QueryPlan

    Raises:
        CompilationError: If a node has no batch lowering
    """
    node = ast.resolve_previous_refs(node, table_schema)
    generator = QueryGenerator(table_schema, target_field)
    value_column = table_schema.column_for(target_field)

    common = dict(
        rule_id=rule_id,
        target_field=target_field,
        source_hash=source_hash,
        schema_fingerprint=table_schema.fingerprint(),
        table=table_schema.table,
        base_alias=BASE_ALIAS,
        subject_column=table_schema.subject_column,
        visit_column=table_schema.visit_column,
        visit_order_column=table_schema.visit_order_column,
        value_column=value_column,
    )

    if node.kind == "required" and node.population is not None:
        spec = table_schema.populations.get(node.population)
        if spec is None:
            raise CompilationError(f"Unknown population '{node.population}'")
        generator.column(BASE_ALIAS, target_field)
        plan = ir.QueryPlan(
            plan_kind=ir.PlanKind.MISSING_DATA,
            columns=generator.columns,
            population=ir.PopulationStage(
                name=node.population,
                table=spec.table,
                subject_column=spec.subject_column,
                visit_column=spec.visit_column,
            ),
            **common,
        )
        plan.index_recommendations = _index_recommendations(plan)
        return plan

    predicate = ir.NotExpr(operand=generator.condition(node))
    generator.column(BASE_ALIAS, target_field)

    if generator.aggregates:
        plan_kind = ir.PlanKind.OUTLIER
    elif generator.visit_joins:
        plan_kind = ir.PlanKind.CROSS_VISIT
    else:
        plan_kind = ir.PlanKind.FILTER

    plan = ir.QueryPlan(
        plan_kind=plan_kind,
        columns=generator.columns,
        visit_joins=list(generator.visit_joins.values()),
        aggregates=list(generator.aggregates.values()),
        predicate=predicate,
        params=generator.params,
        **common,
    )
    plan.index_recommendations = _index_recommendations(plan)
    return plan
