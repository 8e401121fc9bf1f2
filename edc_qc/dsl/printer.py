"""Canonical text rendering of rule trees and default failure messages."""

from __future__ import annotations

from edc_qc.dsl import ast


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _format_literal(node: ast.Literal) -> str:
    value = node.value
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (int, float)):
        text = _format_number(value)
    else:
        escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
        text = f"'{escaped}'"
    if node.unit:
        text = f"{text} {node.unit}"
    return text


class RulePrinter(ast.NodeVisitor):
    """Renders a tree back to rule text, fully parenthesising compound parts."""

    def __init__(self, subject: str = "value"):
        self.subject = subject

    def visit_literal(self, node: ast.Literal) -> str:
        return _format_literal(node)

    def visit_field_ref(self, node: ast.FieldRef) -> str:
        return self.subject

    def visit_cross_field_ref(self, node: ast.CrossFieldRef) -> str:
        return node.name

    def visit_cross_visit_ref(self, node: ast.CrossVisitRef) -> str:
        if node.visit == ast.PREVIOUS_VISIT:
            return f"previous_{node.name}"
        return f"{node.name} at visit '{node.visit}'"

    def visit_function_call(self, node: ast.FunctionCall) -> str:
        args = ", ".join(self.visit(arg) for arg in node.args)
        return f"{node.name}({args})"

    def visit_binary_op(self, node: ast.BinaryOp) -> str:
        left = self._wrapped(node.left)
        right = self._wrapped(node.right)
        return f"{left} {node.op} {right}"

    def visit_unary_op(self, node: ast.UnaryOp) -> str:
        if node.op == "not":
            return f"not {self._wrapped(node.operand)}"
        return f"-{self._wrapped(node.operand)}"

    def visit_conditional(self, node: ast.Conditional) -> str:
        text = f"if {self.visit(node.condition)} then {self.visit(node.then_branch)}"
        if node.else_branch is not None:
            text += f" else {self.visit(node.else_branch)}"
        return text + " endif"

    def visit_list_membership(self, node: ast.ListMembership) -> str:
        values = ", ".join(_format_literal(value) for value in node.values)
        keyword = "not in" if node.negated else "in"
        return f"{self._wrapped(node.operand)} {keyword}({values})"

    def visit_range(self, node: ast.Range) -> str:
        return f"{self._wrapped(node.operand)} between {self._wrapped(node.low)} and {self._wrapped(node.high)}"

    def visit_required(self, node: ast.Required) -> str:
        text = f"{self._wrapped(node.operand)} required"
        if node.population:
            text += f" for all {node.population}"
        return text

    def visit_pattern_match(self, node: ast.PatternMatch) -> str:
        escaped = node.pattern.replace("\\", "\\\\").replace("'", "\\'")
        return f"{self._wrapped(node.operand)} matches '{escaped}'"

    def visit_tolerance(self, node: ast.Tolerance) -> str:
        amount = _format_number(node.amount)
        unit = "%" if node.unit == "percent" else " days"
        return f"{self._wrapped(node.operand)} within {amount}{unit} of {self._wrapped(node.reference)}"

    def visit_outlier(self, node: ast.Outlier) -> str:
        text = f"{self._wrapped(node.operand)} within {_format_number(node.k)} sd of mean"
        if node.by_visit:
            text += " by visit"
        return text

    def _wrapped(self, node: ast.Node) -> str:
        text = self.visit(node)
        if node.kind in ("binary_op", "range", "list_membership", "tolerance", "required",
                         "pattern_match", "outlier") or (node.kind == "unary_op" and node.op == "not"):
            return f"({text})"
        return text


def to_text(node: ast.Node, subject: str = "value") -> str:
    """Render a tree as rule text; the implicit subject is printed as ``subject``."""
    return RulePrinter(subject).visit(node)


def _is_subject(node: ast.Node, field: str) -> bool:
    if node.kind == "field_ref":
        return True
    return node.kind == "cross_field_ref" and node.name == field


def default_message(node: ast.Node, field: str) -> str:
    """Build a readable failure message from the shape of a rule.

    Args:
        node: Root of the rule tree
        field: Target field the rule is attached to

    Returns:
        Message such as ``"age must be between 18 and 65"``
    """
    if node.kind == "conditional":
        printer = RulePrinter(field)
        then_message = default_message(node.then_branch, field)
        return f"{then_message} when {printer.visit(node.condition)}"

    if node.kind == "range" and _is_subject(node.operand, field):
        printer = RulePrinter(field)
        return f"{field} must be between {printer.visit(node.low)} and {printer.visit(node.high)}"

    if node.kind == "required":
        return f"{field} is required"

    if node.kind == "list_membership":
        if node.negated:
            return f"{field} must not be one of the excluded values"
        return f"{field} must be one of the allowed values"

    if node.kind == "pattern_match":
        return f"{field} does not match the expected format"

    if node.kind == "tolerance":
        unit = "%" if node.unit == "percent" else " days"
        reference = to_text(node.reference, field)
        return f"{field} must be within {_format_number(node.amount)}{unit} of {reference}"

    if node.kind == "outlier":
        return f"{field} is a statistical outlier (more than {_format_number(node.k)} sd from the mean)"

    return f"{field} does not meet the validation criteria"
