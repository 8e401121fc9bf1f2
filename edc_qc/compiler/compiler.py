"""
Rule compiler: one parse, one semantic check, both backends.

A rule is parsed once. The same tree is checked against the schema and then
handed to the real-time generator, the query generator, or both, so the two
artifacts can never drift apart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from edc_qc.compiler import semantic
from edc_qc.compiler.ir import QueryPlan
from edc_qc.compiler.query import compile_batch
from edc_qc.compiler.realtime import CompiledValidator, compile_realtime
from edc_qc.core.errors import CompilationError, RuleSyntaxError
from edc_qc.core.schema import FieldResolver, TableSchema
from edc_qc.dsl import ast
from edc_qc.dsl.parser import parse
from edc_qc.rules.models import Rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledRule:
    """Artifacts produced for one rule version."""

    rule: Rule
    tree: ast.Node
    source_hash: str
    validator: CompiledValidator | None = None
    plan: QueryPlan | None = None

    @property
    def rule_id(self) -> str:
        return self.rule.rule_id

    @property
    def target_field(self) -> str:
        return self.rule.target_field


class RuleCompiler:
    """Compiles rules against a schema.

    Real-time rules only need field types. Batch rules also need the table
    layout, so a ``TableSchema`` must be supplied to compile them.
    """

    def __init__(self, schema: FieldResolver):
        self.schema = schema

    def parse_and_check(self, raw_text: str, target_field: str) -> ast.Node:
        """Parse rule text and run the semantic check.

        Raises:
            RuleSyntaxError: Malformed text
            SemanticError: Every semantic issue found
        """
        tree = ast.resolve_previous_refs(parse(raw_text), self.schema)
        semantic.validate(tree, self.schema, target_field)
        return tree

    def check(self, raw_text: str, target_field: str) -> list[dict]:
        """Report every problem with a rule text without compiling it.

        Returns:
            Problems as dicts; an empty list means the rule is valid
        """
        try:
            tree = parse(raw_text)
        except RuleSyntaxError as e:
            return [e.to_dict()]
        return [issue.to_dict() for issue in semantic.check(tree, self.schema, target_field)]

    def compile(self, rule: Rule) -> CompiledRule:
        """Compile a rule into the artifacts its context needs.

        Args:
            rule: The rule to compile

        Returns:
            CompiledRule carrying the tree plus a validator (real-time) or a
            query plan (batch)

        Raises:
            RuleSyntaxError: Malformed text
            SemanticError: The rule does not type-check against the schema
            CompilationError: A backend could not lower the tree
        """
        tree = self.parse_and_check(rule.raw_text, rule.target_field)
        source_hash = rule.source_hash

        validator = None
        plan = None
        try:
            if rule.is_realtime:
                validator = compile_realtime(
                    tree,
                    rule.target_field,
                    schema=self.schema,
                    rule_id=rule.rule_id,
                    severity=rule.severity,
                    message=rule.message,
                )
            if rule.is_batch:
                plan = self.compile_plan(rule, tree)
        except CompilationError:
            logger.exception("Backend failed to lower rule %s", rule.rule_id)
            raise
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.exception("Backend failed to lower rule %s", rule.rule_id)
            raise CompilationError(f"Rule {rule.rule_id} could not be compiled: {e}") from e

        return CompiledRule(
            rule=rule,
            tree=tree,
            source_hash=source_hash,
            validator=validator,
            plan=plan,
        )

    def compile_plan(self, rule: Rule, tree: ast.Node | None = None) -> QueryPlan:
        """Compile only the batch query plan of a rule."""
        if not isinstance(self.schema, TableSchema):
            raise CompilationError("Batch rules need a table schema")
        if tree is None:
            tree = self.parse_and_check(rule.raw_text, rule.target_field)
        return compile_batch(
            tree,
            self.schema,
            rule_id=rule.rule_id,
            target_field=rule.target_field,
            source_hash=rule.source_hash,
        )


def compile_rule(rule: Rule, schema: FieldResolver) -> CompiledRule:
    """Compile a single rule (convenience wrapper around RuleCompiler)."""
    return RuleCompiler(schema).compile(rule)
