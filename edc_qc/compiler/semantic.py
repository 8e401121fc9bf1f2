"""
Semantic validation of rule trees against a data schema.

Runs after parsing and before either code generator. Every problem found is
collected so an author can fix a rule in one pass; a rule with any issue is
never cached or scheduled.
"""

from __future__ import annotations

import re
from datetime import date

from edc_qc.core.errors import SemanticError, SemanticIssue
from edc_qc.core.schema import FieldResolver, FieldType
from edc_qc.dsl import ast


# Internal type lattice: the schema types plus a few that only exist inside
# expressions.
NUMBER = FieldType.NUMBER.value
INTEGER = FieldType.INTEGER.value
TEXT = FieldType.TEXT.value
DATE = FieldType.DATE.value
BOOLEAN = FieldType.BOOLEAN.value
DURATION = "duration"
NULL = "null"
ANY = "any"

NUMERIC_TYPES = frozenset({NUMBER, INTEGER})
ORDERED_TYPES = frozenset({NUMBER, INTEGER, DATE})


class FunctionSignature:
    """Argument types and return type of a built-in function."""

    def __init__(self, args: tuple[str, ...], returns: str):
        self.args = args
        self.returns = returns

    @property
    def arity(self) -> int:
        return len(self.args)


FUNCTIONS: dict[str, FunctionSignature] = {
    "today": FunctionSignature((), DATE),
    "length": FunctionSignature((TEXT,), INTEGER),
    "abs": FunctionSignature((NUMBER,), NUMBER),
    "year": FunctionSignature((DATE,), INTEGER),
    "is_blank": FunctionSignature((ANY,), BOOLEAN),
}


def _is_iso_date(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _family(type_name: str) -> str:
    return NUMBER if type_name in NUMERIC_TYPES else type_name


class SemanticChecker(ast.NodeVisitor):
    """Infers a type for every node and records issues along the way.

    ``visit`` returns the inferred type name. Unknown parts infer ``any`` so a
    single bad field reference does not cascade into type errors.
    """

    def __init__(self, schema: FieldResolver, target_field: str | None = None):
        self.schema = schema
        self.target_field = target_field
        self.issues: list[SemanticIssue] = []

    def add(self, code: str, message: str, node: ast.Node) -> None:
        self.issues.append(SemanticIssue(code=code, message=message, offset=node.offset))

    def _resolve(self, name: str, node: ast.Node) -> str:
        field_type = self.schema.resolve_field(name)
        if field_type is None:
            self.add("unknown_field", f"Unknown field '{name}'", node)
            return ANY
        return FieldType(field_type).value

    # =========================================================================
    # Operands
    # =========================================================================

    def visit_literal(self, node: ast.Literal) -> str:
        value = node.value
        if node.unit == "days":
            return DURATION
        if value is None:
            return NULL
        if isinstance(value, bool):
            return BOOLEAN
        if isinstance(value, int):
            return INTEGER
        if isinstance(value, float):
            return NUMBER
        return TEXT

    def visit_field_ref(self, node: ast.FieldRef) -> str:
        if not self.target_field:
            self.add("no_target_field", "Rule has an implicit subject but no target field", node)
            return ANY
        return self._resolve(self.target_field, node)

    def visit_cross_field_ref(self, node: ast.CrossFieldRef) -> str:
        return self._resolve(node.name, node)

    def visit_cross_visit_ref(self, node: ast.CrossVisitRef) -> str:
        return self._resolve(node.name, node)

    def visit_function_call(self, node: ast.FunctionCall) -> str:
        arg_types = [self.visit(arg) for arg in node.args]
        signature = FUNCTIONS.get(node.name)
        if signature is None:
            self.add("unknown_function", f"Unknown function '{node.name}'", node)
            return ANY
        if len(arg_types) != signature.arity:
            self.add(
                "wrong_arity",
                f"Function '{node.name}' takes {signature.arity} argument(s), got {len(arg_types)}",
                node,
            )
            return signature.returns
        for expected, actual, arg in zip(signature.args, arg_types, node.args):
            if expected == ANY or actual in (ANY, NULL):
                continue
            if _family(expected) != _family(actual):
                self.add(
                    "type_mismatch",
                    f"Function '{node.name}' expects {expected}, got {actual}",
                    arg,
                )
        return signature.returns

    # =========================================================================
    # Operators
    # =========================================================================

    def visit_binary_op(self, node: ast.BinaryOp) -> str:
        left = self.visit(node.left)
        right = self.visit(node.right)

        if node.op in ast.LOGICAL_OPS:
            self._expect_boolean(left, node.left, f"Operand of '{node.op}'")
            self._expect_boolean(right, node.right, f"Operand of '{node.op}'")
            return BOOLEAN

        if node.op in ast.COMPARISON_OPS:
            if node.op in ("==", "!="):
                self._expect_comparable(left, right, node, node.left, node.right)
            else:
                self._expect_ordered(left, node.left, node.op)
                self._expect_ordered(right, node.right, node.op)
                self._expect_comparable(left, right, node, node.left, node.right)
            return BOOLEAN

        return self._arithmetic(node, left, right)

    def _arithmetic(self, node: ast.BinaryOp, left: str, right: str) -> str:
        if ANY in (left, right):
            return ANY
        if left == DATE and right == DURATION and node.op in ("+", "-"):
            return DATE
        if left == DURATION and right == DATE and node.op == "+":
            return DATE
        if left == DATE and right == DATE and node.op == "-":
            return INTEGER
        if left in NUMERIC_TYPES and right in NUMERIC_TYPES:
            if node.op != "/" and left == INTEGER and right == INTEGER:
                return INTEGER
            return NUMBER
        self.add(
            "type_mismatch",
            f"Operator '{node.op}' cannot combine {left} and {right}",
            node,
        )
        return ANY

    def visit_unary_op(self, node: ast.UnaryOp) -> str:
        operand = self.visit(node.operand)
        if node.op == "not":
            self._expect_boolean(operand, node.operand, "Operand of 'not'")
            return BOOLEAN
        if operand not in NUMERIC_TYPES and operand != ANY:
            self.add("type_mismatch", f"Unary minus needs a number, got {operand}", node)
            return ANY
        return operand

    def visit_conditional(self, node: ast.Conditional) -> str:
        condition = self.visit(node.condition)
        self._expect_boolean(condition, node.condition, "Condition of 'if'")
        then_type = self.visit(node.then_branch)
        self._expect_boolean(then_type, node.then_branch, "'then' branch")
        if node.else_branch is not None:
            else_type = self.visit(node.else_branch)
            self._expect_boolean(else_type, node.else_branch, "'else' branch")
        return BOOLEAN

    # =========================================================================
    # Checks
    # =========================================================================

    def visit_list_membership(self, node: ast.ListMembership) -> str:
        operand = self.visit(node.operand)
        value_types = {
            _family(self.visit(value)) for value in node.values if value.value is not None
        }
        if len(value_types) > 1:
            self.add(
                "mixed_list",
                "Value list mixes types: " + ", ".join(sorted(value_types)),
                node,
            )
        elif value_types:
            (value_type,) = value_types
            if not self._compatible(operand, value_type, node.values):
                self.add(
                    "type_mismatch",
                    f"Cannot test {operand} against a list of {value_type} values",
                    node,
                )
        return BOOLEAN

    def visit_range(self, node: ast.Range) -> str:
        operand = self.visit(node.operand)
        self._expect_ordered(operand, node.operand, "between")
        for bound in (node.low, node.high):
            bound_type = self.visit(bound)
            self._expect_comparable(operand, bound_type, node, node.operand, bound)
        return BOOLEAN

    def visit_required(self, node: ast.Required) -> str:
        self.visit(node.operand)
        if node.population is not None:
            populations = getattr(self.schema, "populations", None)
            if populations is not None and node.population not in populations:
                self.add("unknown_population", f"Unknown population '{node.population}'", node)
            if node.operand.kind != "field_ref":
                self.add(
                    "invalid_population_check",
                    "'required for all' can only apply to the rule's target field",
                    node,
                )
        return BOOLEAN

    def visit_pattern_match(self, node: ast.PatternMatch) -> str:
        operand = self.visit(node.operand)
        if operand not in (TEXT, ANY):
            self.add("type_mismatch", f"'matches' needs a text value, got {operand}", node)
        try:
            re.compile(node.pattern)
        except re.error as e:
            self.add("invalid_pattern", f"Invalid pattern {node.pattern!r}: {e}", node)
        return BOOLEAN

    def visit_tolerance(self, node: ast.Tolerance) -> str:
        operand = self.visit(node.operand)
        reference = self.visit(node.reference)
        if node.amount < 0:
            self.add("invalid_tolerance", "Tolerance must not be negative", node)
        expected = NUMERIC_TYPES if node.unit == "percent" else frozenset({DATE})
        label = "a number" if node.unit == "percent" else "a date"
        unit = "%" if node.unit == "percent" else "days"
        for value_type, part in ((operand, node.operand), (reference, node.reference)):
            if value_type not in expected and value_type != ANY:
                self.add(
                    "type_mismatch",
                    f"Tolerance in {unit} needs {label}, got {value_type}",
                    part,
                )
        return BOOLEAN

    def visit_outlier(self, node: ast.Outlier) -> str:
        operand = self.visit(node.operand)
        if operand not in NUMERIC_TYPES and operand != ANY:
            self.add("type_mismatch", f"'sd of mean' needs a number, got {operand}", node)
        if node.k <= 0:
            self.add("invalid_tolerance", "Number of standard deviations must be positive", node)
        if node.operand.kind not in ("field_ref", "cross_field_ref"):
            self.add("invalid_outlier", "'sd of mean' can only apply to a field", node)
        return BOOLEAN

    # =========================================================================
    # Type helpers
    # =========================================================================

    def _expect_boolean(self, type_name: str, node: ast.Node, what: str) -> None:
        if type_name not in (BOOLEAN, ANY):
            self.add("not_boolean", f"{what} must be boolean, got {type_name}", node)

    def _expect_ordered(self, type_name: str, node: ast.Node, op: str) -> None:
        if type_name in ORDERED_TYPES or type_name in (ANY, NULL):
            return
        if type_name == TEXT and node.kind == "literal" and _is_iso_date(node.value):
            return
        self.add("type_mismatch", f"'{op}' needs an ordered value (number or date), got {type_name}", node)

    def _expect_comparable(
        self, left: str, right: str, node: ast.Node, left_node: ast.Node, right_node: ast.Node
    ) -> None:
        if self._compatible(left, right, (right_node,)) or self._compatible(right, left, (left_node,)):
            return
        self.add("type_mismatch", f"Cannot compare {left} with {right}", node)

    def _compatible(self, left: str, right: str, right_nodes: tuple = ()) -> bool:
        if ANY in (left, right) or NULL in (left, right):
            return True
        if _family(left) == _family(right):
            return True
        # ISO date strings are accepted as date literals.
        if left == DATE and right == TEXT and right_nodes:
            return all(n.kind == "literal" and _is_iso_date(n.value) for n in right_nodes)
        return False


def check(node: ast.Node, schema: FieldResolver, target_field: str | None = None) -> list[SemanticIssue]:
    """Check a parsed rule against the schema.

    Args:
        node: Root of the rule tree
        schema: Field type resolver
        target_field: Field the rule is attached to (the implicit subject)

    Returns:
        Every issue found; an empty list means the rule is valid
    """
    node = ast.resolve_previous_refs(node, schema)
    checker = SemanticChecker(schema, target_field)
    result = checker.visit(node)
    if result not in (BOOLEAN, ANY):
        checker.add("not_boolean", f"Rule must evaluate to true or false, got {result}", node)
    for item in ast.walk(node):
        if item.kind == "required" and item.population is not None and item is not node:
            checker.add("invalid_population_check", "'required for all' must be the whole rule", item)
    return checker.issues


def validate(node: ast.Node, schema: FieldResolver, target_field: str | None = None) -> None:
    """Like ``check`` but raises SemanticError when any issue is found."""
    issues = check(node, schema, target_field)
    if issues:
        raise SemanticError(issues)


def static_type(node: ast.Node, schema: FieldResolver | None, target_field: str | None) -> FieldType | None:
    """Type of a value node when it is known without data, else None.

    Used by the code generators to bind ISO date strings as dates and to pick
    date arithmetic.
    """
    if node.kind == "literal":
        value = node.value
        if node.unit == "days" or value is None or isinstance(value, str):
            return None
        if isinstance(value, bool):
            return FieldType.BOOLEAN
        return FieldType.INTEGER if isinstance(value, int) else FieldType.NUMBER
    if node.kind in ("field_ref", "cross_field_ref", "cross_visit_ref"):
        if schema is None:
            return None
        name = target_field if node.kind == "field_ref" else node.name
        if name is None:
            return None
        field_type = schema.resolve_field(name)
        return FieldType(field_type) if field_type is not None else None
    if node.kind == "function_call":
        signature = FUNCTIONS.get(node.name)
        if signature is None or signature.returns in (ANY, BOOLEAN):
            return None
        return FieldType(signature.returns)
    if node.kind == "binary_op" and node.op in ("+", "-"):
        left = static_type(node.left, schema, target_field)
        right = static_type(node.right, schema, target_field)
        if left == FieldType.DATE and right == FieldType.DATE:
            return FieldType.INTEGER if node.op == "-" else None
        if FieldType.DATE in (left, right):
            return FieldType.DATE
        return None
    return None
