"""
Rule catalog: the single place where rule configuration becomes live.

Applying a configuration validates and compiles every rule against the
current schema, persists the rules (bumping versions of changed text),
deactivates rules that disappeared, stores the batch query plans and reloads
the real-time validator cache.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from edc_qc.compiler.compiler import RuleCompiler
from edc_qc.compiler.ir import QueryPlan
from edc_qc.core.config import get_settings
from edc_qc.core.errors import RuleError
from edc_qc.core.schema import TableSchema, load_schema
from edc_qc.rules.loader import RuleConfigLoader
from edc_qc.rules.models import Rule
from edc_qc.runtime.cache import ValidatorCache, describe_failure, get_validator_cache
from edc_qc.storage.repositories.rule_repo import RuleRepository

logger = logging.getLogger(__name__)


@dataclass
class CatalogReport:
    """Outcome of applying a rule configuration."""

    rules_total: int = 0
    compiled: list[str] = field(default_factory=list)
    failed: dict[str, list[dict]] = field(default_factory=dict)
    versions_bumped: list[str] = field(default_factory=list)
    deactivated: list[str] = field(default_factory=list)
    cache_version: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "rules_total": self.rules_total,
            "compiled": self.compiled,
            "failed": self.failed,
            "versions_bumped": self.versions_bumped,
            "deactivated": self.deactivated,
            "cache_version": self.cache_version,
            "ok": self.ok,
        }


class RuleCatalog:
    """Owns the schema, the persisted rule set and the validator cache.

    Args:
        schema: Table schema rules are checked and compiled against
        cache: Validator cache to reload (defaults to the global one)
        repo: Rule persistence
    """

    def __init__(
        self,
        schema: TableSchema | None = None,
        cache: ValidatorCache | None = None,
        repo: RuleRepository | None = None,
    ):
        self.schema = schema or TableSchema()
        self.cache = cache or get_validator_cache()
        self.repo = repo or RuleRepository()

    def apply_config(self, rules: Iterable[Rule], schema: TableSchema | None = None) -> CatalogReport:
        """Make a complete rule configuration live.

        Rules absent from ``rules`` but present in the store are deactivated,
        never deleted. A rule that fails to compile is persisted with its
        errors so the batch engine reports it, and is left out of the cache.

        Args:
            rules: The complete configured rule set
            schema: New schema, if it changed as well

        Returns:
            CatalogReport
        """
        if schema is not None:
            self.schema = schema

        report = CatalogReport()
        configured: list[Rule] = []
        for rule in rules:
            previous = self.repo.get_rule(rule.rule_id)
            record = self.repo.save_rule(rule)
            if previous is not None and previous.version != record.version:
                report.versions_bumped.append(rule.rule_id)
            configured.append(record.to_rule())
        report.rules_total = len(configured)

        configured_ids = {rule.rule_id for rule in configured}
        for record in self.repo.get_all_rules(active_only=True):
            if record.rule_id not in configured_ids and self.repo.deactivate_rule(record.rule_id):
                self.repo.delete_plan(record.rule_id)
                report.deactivated.append(record.rule_id)

        cache_report = self.cache.load(configured, self.schema)
        report.cache_version = cache_report.version

        compiler = RuleCompiler(self.schema)
        for rule in configured:
            if not rule.active:
                continue
            if rule.is_realtime:
                problems = cache_report.failed.get(rule.rule_id)
            else:
                problems = self._store_plan(compiler, rule)
            if problems:
                report.failed[rule.rule_id] = problems
                self.repo.set_compile_status(rule.rule_id, "failed", _summary(problems))
            else:
                report.compiled.append(rule.rule_id)
                self.repo.set_compile_status(rule.rule_id, "compiled")

        logger.info(
            "Applied rule configuration: %d rules, %d compiled, %d failed, %d deactivated",
            report.rules_total, len(report.compiled), len(report.failed), len(report.deactivated),
        )
        return report

    def _store_plan(self, compiler: RuleCompiler, rule: Rule) -> list[dict] | None:
        try:
            plan = compiler.compile_plan(rule)
        except RuleError as e:
            logger.warning("Batch rule %s did not compile: %s", rule.rule_id, e)
            self.repo.delete_plan(rule.rule_id)
            return describe_failure(e)
        self.repo.save_plan(plan, rule.version)
        return None

    def load_files(self, rules_path: str | Path, schema_path: str | Path | None = None) -> CatalogReport:
        """Load schema and rules from YAML and apply them.

        ``rules_path`` may be a single file or a directory of rule files.
        """
        schema = load_schema(schema_path) if schema_path else None
        loader = RuleConfigLoader()
        rules_path = Path(rules_path)
        if rules_path.is_dir():
            rules = loader.load_directory(rules_path)
        else:
            rules = loader.load_file(rules_path)
        return self.apply_config(rules, schema)

    def reload(self) -> CatalogReport:
        """Re-read the configured rule and schema files."""
        settings = get_settings()
        schema_path = Path(settings.schema_file)
        return self.load_files(settings.rules_file, schema_path if schema_path.exists() else None)

    def check(self, raw_text: str, target_field: str) -> list[dict]:
        """Problems with a candidate rule text; empty when it would compile."""
        return RuleCompiler(self.schema).check(raw_text, target_field)

    def get_rule(self, rule_id: str) -> Rule | None:
        record = self.repo.get_rule(rule_id)
        return record.to_rule() if record else None

    def get_rules(self, active_only: bool = True) -> list[Rule]:
        return [record.to_rule() for record in self.repo.get_all_rules(active_only=active_only)]

    def get_plan(self, rule_id: str) -> QueryPlan | None:
        record = self.repo.get_plan(rule_id)
        return record.to_plan() if record else None


def _summary(problems: list[dict]) -> str:
    return "; ".join(str(p.get("message", p)) for p in problems)


# Global catalog instance
_catalog: RuleCatalog | None = None


def get_rule_catalog() -> RuleCatalog:
    """Get or create the global catalog, loading the schema file when present."""
    global _catalog
    if _catalog is None:
        schema_path = Path(get_settings().schema_file)
        schema = load_schema(schema_path) if schema_path.exists() else None
        _catalog = RuleCatalog(schema)
    return _catalog


def reset_rule_catalog() -> None:
    global _catalog
    _catalog = None
