"""
Real-time code generator.

Lowers a rule tree into a fixed tree of Python closures once, at compile time.
Evaluating a validator only walks that closure tree: there is no parsing, no
rule-text processing and no I/O on the hot path.

Evaluation uses three-valued (Kleene) logic. Boolean closures return ``True``,
``False`` or ``None`` (indeterminate). Value closures return a concrete value
or one of two sentinels:

* ``MISSING``: the key is absent from the record (not yet entered)
* ``BLANK``: the key is present but ``None`` or an empty string

``required`` fails on ``BLANK`` and is indeterminate on ``MISSING``; every
other check is indeterminate on either.
"""

from __future__ import annotations

import logging
import math
import operator
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, Mapping

from edc_qc.core.errors import CompilationError
from edc_qc.core.schema import FieldResolver, FieldType
from edc_qc.dsl import ast
from edc_qc.compiler.semantic import static_type
from edc_qc.dsl.printer import default_message
from edc_qc.rules.models import Severity
from edc_qc.runtime.results import (
    EMPTY_CONTEXT,
    ValidationContext,
    ValidationResult,
    ValidationStatus,
)

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name

    def __bool__(self) -> bool:
        return False


MISSING = _Sentinel("MISSING")
BLANK = _Sentinel("BLANK")


def _unknown(value: Any) -> bool:
    return value is MISSING or value is BLANK


def is_blank(value: Any) -> bool:
    """True for ``None`` and empty or whitespace-only strings."""
    return value is None or (isinstance(value, str) and not value.strip())


class Env:
    """Per-invocation evaluation state."""

    __slots__ = ("values", "context")

    def __init__(self, values: Mapping[str, Any], context: ValidationContext):
        self.values = values
        self.context = context


ValueFn = Callable[[Env], Any]
BoolFn = Callable[[Env], "bool | None"]


# =============================================================================
# Coercion
# =============================================================================

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "n", "0"})


def _to_number(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(str(value).strip())
    except ValueError:
        return value


def _to_integer(value: Any) -> Any:
    number = _to_number(value)
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _to_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return value


def _to_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return value


def _to_text(value: Any) -> Any:
    return value if isinstance(value, str) else str(value)


COERCERS: dict[FieldType, Callable[[Any], Any]] = {
    FieldType.NUMBER: _to_number,
    FieldType.INTEGER: _to_integer,
    FieldType.DATE: _to_date,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.TEXT: _to_text,
}


def coerce_value(value: Any, field_type: FieldType | None) -> Any:
    """Convert a raw form value to the declared field type.

    Values that cannot be converted are returned unchanged; comparing them
    later fails instead of raising.
    """
    if field_type is None or is_blank(value):
        return value
    return COERCERS[FieldType(field_type)](value)


def _parse_iso_date(value: Any) -> date | None:
    if not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


# =============================================================================
# Operator tables
# =============================================================================

COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _add(a: Any, b: Any) -> Any:
    return a + b


def _sub(a: Any, b: Any) -> Any:
    result = a - b
    # date - date is a whole number of days
    if isinstance(result, timedelta):
        return result.days if isinstance(a, date) and isinstance(b, date) else result
    return result


def _mul(a: Any, b: Any) -> Any:
    return a * b


def _div(a: Any, b: Any) -> Any:
    return a / b


ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": _sub,
    "*": _mul,
    "/": _div,
}


# =============================================================================
# Code generator
# =============================================================================


class RealtimeGenerator(ast.NodeVisitor):
    """Builds closures from a rule tree.

    ``visit`` returns a closure ``fn(env)``. Boolean-valued nodes return
    ``True``/``False``/``None``; value nodes return a value or a sentinel.
    """

    def __init__(self, target_field: str, schema: FieldResolver | None = None):
        self.target_field = target_field
        self.schema = schema

    def _field_type(self, name: str) -> FieldType | None:
        if self.schema is None:
            return None
        field_type = self.schema.resolve_field(name)
        return FieldType(field_type) if field_type is not None else None

    def _static_type(self, node: ast.Node) -> FieldType | None:
        return static_type(node, self.schema, self.target_field)

    def _operand(self, node: ast.Node, other: ast.Node | None = None) -> ValueFn:
        """Compile a value operand, turning ISO date strings into dates next to date operands."""
        if node.kind == "literal" and other is not None and self._static_type(other) == FieldType.DATE:
            parsed = _parse_iso_date(node.value)
            if parsed is not None:
                return lambda env: parsed
        return self.visit(node)

    def _lookup(self, name: str) -> ValueFn:
        coerce = COERCERS.get(self._field_type(name)) if self.schema is not None else None

        def lookup(env: Env) -> Any:
            values = env.values
            if name not in values:
                return MISSING
            raw = values[name]
            if is_blank(raw):
                return BLANK
            return coerce(raw) if coerce else raw

        return lookup

    # =========================================================================
    # Operands
    # =========================================================================

    def visit_literal(self, node: ast.Literal) -> ValueFn:
        value = node.value
        if node.unit == "days":
            value = timedelta(days=value)
        elif value is None:
            value = BLANK
        return lambda env: value

    def visit_field_ref(self, node: ast.FieldRef) -> ValueFn:
        return self._lookup(self.target_field)

    def visit_cross_field_ref(self, node: ast.CrossFieldRef) -> ValueFn:
        return self._lookup(node.name)

    def visit_cross_visit_ref(self, node: ast.CrossVisitRef) -> ValueFn:
        name = node.name
        visit = node.visit
        coerce = COERCERS.get(self._field_type(name)) if self.schema is not None else None

        def lookup(env: Env) -> Any:
            other = env.context.visit_values(visit)
            if other is None or name not in other:
                return MISSING
            raw = other[name]
            if is_blank(raw):
                return BLANK
            return coerce(raw) if coerce else raw

        return lookup

    def visit_function_call(self, node: ast.FunctionCall) -> ValueFn:
        name = node.name
        args = [self.visit(arg) for arg in node.args]

        if name == "today":
            return lambda env: env.context.resolve_today()

        if name == "is_blank":
            (arg,) = args

            def blank(env: Env) -> Any:
                value = arg(env)
                if value is MISSING:
                    return None
                return value is BLANK

            return blank

        func = {"length": len, "abs": abs, "year": lambda d: d.year}.get(name)
        if func is None or len(args) != 1:
            raise CompilationError(f"No real-time implementation for function '{name}'")
        (arg,) = args

        def call(env: Env) -> Any:
            value = arg(env)
            if _unknown(value):
                return MISSING
            try:
                return func(value)
            except (TypeError, AttributeError):
                return MISSING

        return call

    # =========================================================================
    # Operators
    # =========================================================================

    def visit_binary_op(self, node: ast.BinaryOp) -> Callable[[Env], Any]:
        op = node.op
        if op == "and":
            return self._and(self.condition(node.left), self.condition(node.right))
        if op == "or":
            return self._or(self.condition(node.left), self.condition(node.right))
        if op in COMPARISONS:
            return self._comparison(node)
        if op in ARITHMETIC:
            return self._arithmetic(ARITHMETIC[op], self.visit(node.left), self.visit(node.right))
        raise CompilationError(f"Unknown operator '{op}'")

    @staticmethod
    def _and(left: BoolFn, right: BoolFn) -> BoolFn:
        def both(env: Env) -> bool | None:
            a = left(env)
            if a is False:
                return False
            b = right(env)
            if b is False:
                return False
            if a is None or b is None:
                return None
            return True

        return both

    @staticmethod
    def _or(left: BoolFn, right: BoolFn) -> BoolFn:
        def either(env: Env) -> bool | None:
            a = left(env)
            if a is True:
                return True
            b = right(env)
            if b is True:
                return True
            if a is None or b is None:
                return None
            return False

        return either

    def _comparison(self, node: ast.BinaryOp) -> BoolFn:
        op = node.op
        # "x == null" / "x != null" test blankness
        for value_node, literal in ((node.left, node.right), (node.right, node.left)):
            if literal.kind == "literal" and literal.value is None and op in ("==", "!="):
                return self._null_test(self.visit(value_node), negate=op == "!=")

        compare = COMPARISONS[op]
        left = self._operand(node.left, node.right)
        right = self._operand(node.right, node.left)

        def comparison(env: Env) -> bool | None:
            a = left(env)
            b = right(env)
            if _unknown(a) or _unknown(b):
                return None
            try:
                return bool(compare(a, b))
            except TypeError:
                return False

        return comparison

    @staticmethod
    def _null_test(value_fn: ValueFn, negate: bool) -> BoolFn:
        def null_test(env: Env) -> bool | None:
            value = value_fn(env)
            if value is MISSING:
                return None
            return (value is not BLANK) if negate else (value is BLANK)

        return null_test

    @staticmethod
    def _arithmetic(func: Callable[[Any, Any], Any], left: ValueFn, right: ValueFn) -> ValueFn:
        def arithmetic(env: Env) -> Any:
            a = left(env)
            b = right(env)
            if _unknown(a) or _unknown(b):
                return MISSING
            try:
                return func(a, b)
            except (TypeError, ZeroDivisionError, OverflowError):
                return MISSING

        return arithmetic

    def visit_unary_op(self, node: ast.UnaryOp) -> Callable[[Env], Any]:
        if node.op == "not":
            operand = self.condition(node.operand)

            def negation(env: Env) -> bool | None:
                value = operand(env)
                if value is None:
                    return None
                return not value

            return negation

        operand = self.visit(node.operand)

        def minus(env: Env) -> Any:
            value = operand(env)
            if _unknown(value):
                return MISSING
            try:
                return -value
            except TypeError:
                return MISSING

        return minus

    def visit_conditional(self, node: ast.Conditional) -> BoolFn:
        condition = self.condition(node.condition)
        then_branch = self.condition(node.then_branch)
        else_branch = self.condition(node.else_branch) if node.else_branch is not None else None

        def conditional(env: Env) -> bool | None:
            taken = condition(env)
            if taken is None:
                return None
            if taken:
                return then_branch(env)
            if else_branch is None:
                return True
            return else_branch(env)

        return conditional

    def condition(self, node: ast.Node) -> BoolFn:
        """Compile a node used as a condition; bare boolean fields become truth tests."""
        fn = self.visit(node)
        if node.kind in ("field_ref", "cross_field_ref", "cross_visit_ref", "function_call"):
            def truth(env: Env) -> bool | None:
                value = fn(env)
                if value is None or _unknown(value):
                    return None
                return value is True
            return truth
        return fn

    # =========================================================================
    # Checks
    # =========================================================================

    def visit_list_membership(self, node: ast.ListMembership) -> BoolFn:
        operand = self.visit(node.operand)
        operand_type = self._static_type(node.operand)
        allowed = set()
        for literal in node.values:
            value = literal.value
            if operand_type == FieldType.DATE:
                value = _parse_iso_date(value) or value
            allowed.add(value)
        allowed = frozenset(allowed)
        negated = node.negated

        def membership(env: Env) -> bool | None:
            value = operand(env)
            if _unknown(value):
                return None
            try:
                found = value in allowed
            except TypeError:
                return False
            return not found if negated else found

        return membership

    def visit_range(self, node: ast.Range) -> BoolFn:
        operand = self.visit(node.operand)
        low = self._operand(node.low, node.operand)
        high = self._operand(node.high, node.operand)

        def in_range(env: Env) -> bool | None:
            value = operand(env)
            lo = low(env)
            hi = high(env)
            if _unknown(value) or _unknown(lo) or _unknown(hi):
                return None
            try:
                return bool(lo <= value <= hi)
            except TypeError:
                return False

        return in_range

    def visit_required(self, node: ast.Required) -> BoolFn:
        operand = self.visit(node.operand)

        def required(env: Env) -> bool | None:
            value = operand(env)
            if value is MISSING:
                return None
            return value is not BLANK

        return required

    def visit_pattern_match(self, node: ast.PatternMatch) -> BoolFn:
        operand = self.visit(node.operand)
        try:
            pattern = re.compile(node.pattern)
        except re.error as e:
            raise CompilationError(f"Invalid pattern {node.pattern!r}: {e}") from e

        def matches(env: Env) -> bool | None:
            value = operand(env)
            if _unknown(value):
                return None
            return pattern.search(_to_text(value)) is not None

        return matches

    def visit_tolerance(self, node: ast.Tolerance) -> BoolFn:
        current = self.visit(node.operand)
        baseline = self.visit(node.reference)

        if node.unit == "percent":
            ratio = node.amount / 100

            def within_percent(env: Env) -> bool | None:
                a = current(env)
                b = baseline(env)
                if _unknown(a) or _unknown(b):
                    return None
                try:
                    if b == 0:
                        return None
                    return abs(a - b) / b <= ratio
                except TypeError:
                    return False

            return within_percent

        days = node.amount

        def within_days(env: Env) -> bool | None:
            a = current(env)
            b = baseline(env)
            if _unknown(a) or _unknown(b):
                return None
            try:
                return abs((a - b).days) <= days
            except (TypeError, AttributeError):
                return False

        return within_days

    def visit_outlier(self, node: ast.Outlier) -> BoolFn:
        operand = self.visit(node.operand)
        field = self.target_field if node.operand.kind == "field_ref" else node.operand.name
        k = node.k
        by_visit = node.by_visit

        def within_sd(env: Env) -> bool | None:
            value = operand(env)
            if _unknown(value):
                return None
            stats = env.context.statistics_for(field, by_visit)
            if stats is None or stats.sd is None or math.isnan(stats.sd):
                return None
            try:
                return abs(value - stats.mean) <= k * stats.sd
            except TypeError:
                return False

        return within_sd


# =============================================================================
# Compiled validator
# =============================================================================


_STATUS = {True: ValidationStatus.PASS, False: ValidationStatus.FAIL, None: ValidationStatus.INDETERMINATE}


class CompiledValidator:
    """A rule lowered to closures: ``validator(values, context) -> ValidationResult``.

    Never raises. An unexpected error while evaluating is logged and reported
    as indeterminate.
    """

    __slots__ = ("rule_id", "field", "severity", "message", "_evaluate")

    def __init__(
        self,
        evaluate: BoolFn,
        field: str,
        rule_id: str | None = None,
        severity: Severity = Severity.ERROR,
        message: str | None = None,
    ):
        self._evaluate = evaluate
        self.field = field
        self.rule_id = rule_id
        self.severity = Severity(severity)
        self.message = message

    def evaluate(self, values: Mapping[str, Any], context: ValidationContext | None = None) -> bool | None:
        """Raw three-valued outcome. May raise; ``__call__`` is the safe entry point."""
        return self._evaluate(Env(values, context or EMPTY_CONTEXT))

    def __call__(self, values: Mapping[str, Any], context: ValidationContext | None = None) -> ValidationResult:
        try:
            outcome = self.evaluate(values, context)
            status = _STATUS[outcome if outcome is None else bool(outcome)]
        except Exception:
            logger.exception("Validator for rule %s raised; reporting indeterminate", self.rule_id)
            status = ValidationStatus.INDETERMINATE

        return ValidationResult(
            rule_id=self.rule_id,
            field=self.field,
            status=status,
            severity=self.severity,
            message=self.message if status == ValidationStatus.FAIL else None,
        )

    def __repr__(self) -> str:
        return f"CompiledValidator(rule_id={self.rule_id!r}, field={self.field!r})"


def compile_realtime(
    node: ast.Node,
    target_field: str,
    schema: FieldResolver | None = None,
    rule_id: str | None = None,
    severity: Severity = Severity.ERROR,
    message: str | None = None,
) -> CompiledValidator:
    """Lower a checked rule tree into an in-process validator.

    Args:
        node: Root of the rule tree (already semantically checked)
        target_field: Field the rule is attached to
        schema: Optional resolver used to coerce raw form values
        rule_id: Identifier reported in results
        severity: Severity reported in results
        message: Failure message; a default is derived from the rule shape

    Returns:
        CompiledValidator

    Raises:
        CompilationError: If a node has no real-time lowering
    """
    node = ast.resolve_previous_refs(node, schema)
    generator = RealtimeGenerator(target_field, schema)
    evaluate = generator.condition(node)
    return CompiledValidator(
        evaluate,
        field=target_field,
        rule_id=rule_id,
        severity=severity,
        message=message or default_message(node, target_field),
    )
