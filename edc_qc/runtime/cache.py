"""
Validator cache for the interactive path.

Holds the compiled validators of every active real-time rule, keyed by target
field. The cache content is an immutable snapshot: every change builds a new
snapshot and swaps a single reference. Writers serialise on a lock; readers
take ``snapshot()`` (or ``get``) without locking and keep a consistent view
for the whole call even if a reload happens meanwhile.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field

from edc_qc.compiler.compiler import CompiledRule, RuleCompiler
from edc_qc.compiler.realtime import CompiledValidator
from edc_qc.core.errors import RuleError, RuleSyntaxError, SemanticError
from edc_qc.core.schema import FieldResolver
from edc_qc.rules.models import Rule
from edc_qc.runtime.results import ValidationContext, ValidationResult

logger = logging.getLogger(__name__)


class FieldValidator:
    """Every cached rule on one field, evaluated together."""

    __slots__ = ("field", "validators")

    def __init__(self, field: str, validators: Iterable[CompiledValidator]):
        self.field = field
        self.validators = tuple(validators)

    @property
    def rule_ids(self) -> list[str]:
        return [v.rule_id for v in self.validators]

    def __call__(self, values: Mapping[str, Any], context: ValidationContext | None = None) -> list[ValidationResult]:
        return [validator(values, context) for validator in self.validators]

    def __len__(self) -> int:
        return len(self.validators)

    def __repr__(self) -> str:
        return f"FieldValidator(field={self.field!r}, rules={self.rule_ids!r})"


@dataclass(frozen=True)
class CacheSnapshot:
    """Read-only view of the cache at one version."""

    version: int
    rules: Mapping[str, CompiledRule]
    fields: Mapping[str, FieldValidator]
    loaded_at: datetime

    @classmethod
    def build(cls, rules: dict[str, CompiledRule], version: int) -> "CacheSnapshot":
        by_field: dict[str, list[CompiledValidator]] = {}
        for rule_id in sorted(rules):
            compiled = rules[rule_id]
            by_field.setdefault(compiled.target_field, []).append(compiled.validator)

        return cls(
            version=version,
            rules=MappingProxyType(dict(rules)),
            fields=MappingProxyType({
                name: FieldValidator(name, validators) for name, validators in by_field.items()
            }),
            loaded_at=datetime.now(timezone.utc),
        )

    @classmethod
    def empty(cls) -> "CacheSnapshot":
        return cls.build({}, version=0)

    def get(self, field_name: str) -> FieldValidator | None:
        return self.fields.get(field_name)


@dataclass
class LoadReport:
    """What a (re)load installed and what it left out."""

    version: int = 0
    loaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, list[dict]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "loaded": self.loaded,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class CacheStats(BaseModel):
    """Current cache content for diagnostics."""

    version: int
    rule_count: int
    field_count: int
    fields: dict[str, list[str]] = Field(default_factory=dict, description="field -> rule ids")
    failed: dict[str, list[dict]] = Field(default_factory=dict, description="rule id -> problems")
    loaded_at: datetime


def describe_failure(error: RuleError) -> list[dict]:
    """Turn a compile error into the problem list reported to authors."""
    if isinstance(error, (RuleSyntaxError, SemanticError)):
        payload = error.to_dict()
        return payload.get("issues", [payload])
    return [{"type": "compilation", "message": str(error)}]


class ValidatorCache:
    """Snapshot-swapping cache of compiled real-time validators."""

    def __init__(self):
        self._snapshot = CacheSnapshot.empty()
        self._lock = threading.Lock()
        self._schema: FieldResolver | None = None
        self._failed: dict[str, list[dict]] = {}

    # =========================================================================
    # Readers (lock-free)
    # =========================================================================

    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def get(self, field_name: str) -> FieldValidator | None:
        """Get the composed validator of a field.

        Args:
            field_name: Target field

        Returns:
            FieldValidator if any active real-time rule targets the field
        """
        return self._snapshot.get(field_name)

    @property
    def version(self) -> int:
        return self._snapshot.version

    def stats(self) -> CacheStats:
        snapshot = self._snapshot
        return CacheStats(
            version=snapshot.version,
            rule_count=len(snapshot.rules),
            field_count=len(snapshot.fields),
            fields={name: fv.rule_ids for name, fv in snapshot.fields.items()},
            failed=dict(self._failed),
            loaded_at=snapshot.loaded_at,
        )

    # =========================================================================
    # Writers
    # =========================================================================

    def load(self, rules: Iterable[Rule], schema: FieldResolver) -> LoadReport:
        """Compile a full rule set and replace the cache content.

        Rules that fail to compile are reported and left out; the rest are
        installed. Inactive and batch rules are skipped.

        Args:
            rules: Complete set of rules
            schema: Field resolver the rules are checked against

        Returns:
            LoadReport
        """
        compiler = RuleCompiler(schema)
        report = LoadReport()
        compiled: list[CompiledRule] = []

        for rule in rules:
            if not (rule.active and rule.is_realtime):
                report.skipped.append(rule.rule_id)
                continue
            try:
                compiled.append(compiler.compile(rule))
            except RuleError as e:
                logger.warning("Rule %s not cached: %s", rule.rule_id, e)
                report.failed[rule.rule_id] = describe_failure(e)
                continue
            report.loaded.append(rule.rule_id)

        with self._lock:
            self._schema = schema
            self._failed = dict(report.failed)
            self._swap({c.rule_id: c for c in compiled})
            report.version = self._snapshot.version

        logger.info(
            "Validator cache v%d: %d rules loaded, %d failed",
            report.version, len(report.loaded), len(report.failed),
        )
        return report

    def update_rule(self, rule: Rule) -> CompiledRule | None:
        """Recompile one rule and swap it in.

        An inactive or batch rule is removed from the cache. If compilation
        fails the error propagates and the current snapshot stays in place.

        Returns:
            The compiled rule, or None when the rule was removed
        """
        if self._schema is None:
            raise RuntimeError("Validator cache has no schema; call load() first")

        compiled = None
        if rule.active and rule.is_realtime:
            compiled = RuleCompiler(self._schema).compile(rule)

        with self._lock:
            rules = dict(self._snapshot.rules)
            if compiled is None:
                rules.pop(rule.rule_id, None)
            else:
                rules[rule.rule_id] = compiled
            self._failed.pop(rule.rule_id, None)
            self._swap(rules)
        return compiled

    def invalidate(self, field_name: str | None = None) -> int:
        """Drop the validators of one field, or of every field.

        Returns:
            Number of rules removed
        """
        with self._lock:
            rules = dict(self._snapshot.rules)
            if field_name is None:
                removed = len(rules)
                rules = {}
            else:
                drop = [rid for rid, c in rules.items() if c.target_field == field_name]
                for rule_id in drop:
                    del rules[rule_id]
                removed = len(drop)
            if removed:
                self._swap(rules)
            return removed

    def _swap(self, rules: dict[str, CompiledRule]) -> None:
        self._snapshot = CacheSnapshot.build(rules, version=self._snapshot.version + 1)


# Global cache instance
_global_cache: ValidatorCache | None = None


def get_validator_cache() -> ValidatorCache:
    """Get or create the global validator cache."""
    global _global_cache
    if _global_cache is None:
        _global_cache = ValidatorCache()
    return _global_cache


def reset_validator_cache() -> None:
    """Reset the global validator cache."""
    global _global_cache
    _global_cache = None
