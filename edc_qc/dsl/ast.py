"""
Abstract syntax tree for validation rules.

Every node is a frozen Pydantic model tagged with a ``kind`` discriminator, so
the tree is immutable, structurally comparable and JSON-serialisable. Both
code generators walk the same tree through ``NodeVisitor``; adding a grammar
construct means adding a node here and a ``visit_<kind>`` method to each
backend.
"""

from __future__ import annotations

import typing
from typing import Annotated, Any, Iterator, Union

from pydantic import BaseModel, ConfigDict, Field

from edc_qc.core.errors import CompilationError
from edc_qc.core.schema import FieldResolver


COMPARISON_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})
LOGICAL_OPS = frozenset({"and", "or"})
ARITHMETIC_OPS = frozenset({"+", "-", "*", "/"})

PREVIOUS_VISIT = "previous"
"""Visit selector for ``previous_<field>`` references."""

PREVIOUS_PREFIX = "previous_"


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    offset: int = Field(0, description="Character offset of the node in the rule text")


# =============================================================================
# Operands
# =============================================================================


class Literal(_Node):
    """A constant. ``unit`` is set for duration literals such as ``30 days``."""

    kind: typing.Literal["literal"] = "literal"
    value: Union[bool, int, float, str, None] = None
    unit: typing.Literal["days"] | None = None


class FieldRef(_Node):
    """The rule's own target field (the implicit subject of a check)."""

    kind: typing.Literal["field_ref"] = "field_ref"


class CrossFieldRef(_Node):
    """Another field of the same record, referenced by name."""

    kind: typing.Literal["cross_field_ref"] = "cross_field_ref"
    name: str


class CrossVisitRef(_Node):
    """A field value taken from another visit of the same subject."""

    kind: typing.Literal["cross_visit_ref"] = "cross_visit_ref"
    name: str
    visit: str = PREVIOUS_VISIT


class FunctionCall(_Node):
    kind: typing.Literal["function_call"] = "function_call"
    name: str
    args: tuple[Node, ...] = ()


# =============================================================================
# Operators
# =============================================================================


class BinaryOp(_Node):
    """Comparison, boolean combinator or arithmetic operator."""

    kind: typing.Literal["binary_op"] = "binary_op"
    op: str
    left: Node
    right: Node


class UnaryOp(_Node):
    """``not`` or unary minus."""

    kind: typing.Literal["unary_op"] = "unary_op"
    op: typing.Literal["not", "-"]
    operand: Node


class Conditional(_Node):
    """``if <condition> then <rule> [else <rule>] endif``.

    A missing else branch passes.
    """

    kind: typing.Literal["conditional"] = "conditional"
    condition: Node
    then_branch: Node
    else_branch: Node | None = None


# =============================================================================
# Checks
# =============================================================================


class ListMembership(_Node):
    kind: typing.Literal["list_membership"] = "list_membership"
    operand: Node
    values: tuple[Literal, ...]
    negated: bool = False


class Range(_Node):
    """Inclusive on both bounds."""

    kind: typing.Literal["range"] = "range"
    operand: Node
    low: Node
    high: Node


class Required(_Node):
    """Value must be present and non-blank.

    With a population (``required for all subjects``) the batch backend checks
    that every member of the population has a non-blank value somewhere.
    """

    kind: typing.Literal["required"] = "required"
    operand: Node
    population: str | None = None


class PatternMatch(_Node):
    kind: typing.Literal["pattern_match"] = "pattern_match"
    operand: Node
    pattern: str


class Tolerance(_Node):
    """``X within N% of Y`` or ``X within N days of Y``.

    The percent form checks ``abs(X - Y) / Y <= N / 100`` in both backends.
    The deviation is divided by ``Y`` itself, not ``abs(Y)``:

    * ``Y == 0`` makes the check indeterminate (never a violation).
    * A negative ``Y`` makes the ratio negative, so the check always passes.

    Percent tolerances are meant for positive baselines such as weights or
    lab values.
    """

    kind: typing.Literal["tolerance"] = "tolerance"
    operand: Node
    reference: Node
    amount: float
    unit: typing.Literal["percent", "days"]


class Outlier(_Node):
    """``X within K sd of mean [by visit]``: a statistical outlier check."""

    kind: typing.Literal["outlier"] = "outlier"
    operand: Node
    k: float
    by_visit: bool = False


Node = Annotated[
    Union[
        Literal,
        FieldRef,
        CrossFieldRef,
        CrossVisitRef,
        FunctionCall,
        BinaryOp,
        UnaryOp,
        Conditional,
        ListMembership,
        Range,
        Required,
        PatternMatch,
        Tolerance,
        Outlier,
    ],
    Field(discriminator="kind"),
]

for _model in (
    FunctionCall,
    BinaryOp,
    UnaryOp,
    Conditional,
    ListMembership,
    Range,
    Required,
    PatternMatch,
    Tolerance,
    Outlier,
):
    _model.model_rebuild()


# =============================================================================
# Traversal
# =============================================================================


def children(node: _Node) -> tuple[_Node, ...]:
    """Direct child nodes in evaluation order."""
    kind = node.kind
    if kind == "binary_op":
        return (node.left, node.right)
    if kind == "unary_op":
        return (node.operand,)
    if kind == "function_call":
        return tuple(node.args)
    if kind == "conditional":
        if node.else_branch is None:
            return (node.condition, node.then_branch)
        return (node.condition, node.then_branch, node.else_branch)
    if kind == "list_membership":
        return (node.operand, *node.values)
    if kind == "range":
        return (node.operand, node.low, node.high)
    if kind in ("required", "pattern_match", "outlier"):
        return (node.operand,)
    if kind == "tolerance":
        return (node.operand, node.reference)
    return ()


def walk(node: _Node) -> Iterator[_Node]:
    """Yield every node of the tree, depth first, parents before children."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(children(current)))


def referenced_fields(node: _Node, target_field: str | None = None) -> set[str]:
    """Names of all same-record fields a rule reads.

    ``FieldRef`` resolves to ``target_field`` when given.
    """
    names: set[str] = set()
    for item in walk(node):
        if item.kind == "cross_field_ref":
            names.add(item.name)
        elif item.kind == "field_ref" and target_field:
            names.add(target_field)
    return names


def contains_kind(node: _Node, kind: str) -> bool:
    return any(item.kind == kind for item in walk(node))


def ast_to_dict(node: _Node) -> dict[str, Any]:
    """Serialize a tree for storage or API output."""
    return node.model_dump(mode="json")


class NodeVisitor:
    """Dispatches ``visit(node)`` to ``visit_<kind>(node, ...)``.

    Backends subclass this and implement one method per node kind. A kind with
    no handler is a grammar/codegen mismatch and raises CompilationError.
    """

    def visit(self, node: _Node, *args: Any) -> Any:
        method = getattr(self, "visit_" + node.kind, None)
        if method is None:
            return self.generic_visit(node, *args)
        return method(node, *args)

    def generic_visit(self, node: _Node, *args: Any) -> Any:
        raise CompilationError(
            f"{type(self).__name__} cannot lower node kind '{node.kind}'"
        )


# =============================================================================
# Name resolution
# =============================================================================


def previous_visit_field(name: str, schema: FieldResolver | None = None) -> str | None:
    """Field a ``previous_<field>`` name refers to, or None for a plain field.

    A declared field whose own name starts with ``previous_`` (for example
    ``previous_surgery``) is always a same-record reference. Without a schema
    every ``previous_`` name is read as a previous-visit reference.
    """
    if not name.lower().startswith(PREVIOUS_PREFIX) or len(name) == len(PREVIOUS_PREFIX):
        return None
    if schema is not None and schema.resolve_field(name) is not None:
        return None
    return name[len(PREVIOUS_PREFIX):]


def resolve_previous_refs(node: _Node, schema: FieldResolver | None = None) -> _Node:
    """Rewrite ``previous_<field>`` names into previous-visit references.

    The parser knows no schema, so it keeps every bare name as a
    ``CrossFieldRef``; this pass decides which of them mean the prior visit.
    Nodes that need no change are returned as-is.
    """
    if node.kind == "cross_field_ref":
        field = previous_visit_field(node.name, schema)
        if field is None:
            return node
        return CrossVisitRef(name=field, visit=PREVIOUS_VISIT, offset=node.offset)

    updates: dict[str, Any] = {}
    for name in type(node).model_fields:
        value = getattr(node, name)
        if isinstance(value, _Node):
            resolved = resolve_previous_refs(value, schema)
            if resolved is not value:
                updates[name] = resolved
        elif isinstance(value, tuple) and any(isinstance(item, _Node) for item in value):
            resolved_items = tuple(resolve_previous_refs(item, schema) for item in value)
            if any(new is not old for new, old in zip(resolved_items, value)):
                updates[name] = resolved_items
    return node.model_copy(update=updates) if updates else node
