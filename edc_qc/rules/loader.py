"""YAML rule configuration loader.

The configuration is a mapping of rule id to rule definition::

    rules:
      AGE_RANGE:
        field: age
        rule: between 18 and 65
        context: real-time
        severity: error
        message: Age must be between 18 and 65

``field`` and ``rule`` are required; everything else has a default.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from edc_qc.rules.models import Rule

logger = logging.getLogger(__name__)


class RuleConfigError(ValueError):
    """The rule configuration file itself is malformed."""


class RuleConfigLoader:
    """Loads rule definitions from YAML files, directories or plain dicts."""

    def __init__(self, rules_dir: str | Path | None = None):
        self.rules_dir = Path(rules_dir) if rules_dir else None
        self._rules: dict[str, Rule] = {}

    def load_file(self, path: str | Path) -> list[Rule]:
        """Load rules from a single YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Rule file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f) or {}

        return self.load_mapping(content, source=str(path))

    def load_directory(self, path: str | Path | None = None) -> list[Rule]:
        """Load every ``*.yaml`` rule file in a directory (schema.yaml excluded)."""
        path = Path(path) if path else self.rules_dir
        if not path:
            raise ValueError("No rules directory specified")
        if not path.exists():
            raise FileNotFoundError(f"Rules directory not found: {path}")

        rules = []
        for yaml_file in sorted(path.glob("*.yaml")):
            if yaml_file.name == "schema.yaml":
                continue
            rules.extend(self.load_file(yaml_file))
        return rules

    def load_mapping(self, content: dict[str, Any], source: str = "<dict>") -> list[Rule]:
        """Build rules from the mapping form of the configuration.

        Accepts either ``{"rules": {...}}`` or the bare ``{rule_id: {...}}``
        mapping.

        Raises:
            RuleConfigError: If an entry is missing required keys or has
                invalid values
        """
        if not isinstance(content, dict):
            raise RuleConfigError(f"{source}: rule configuration must be a mapping")
        entries = content.get("rules", content)
        if not isinstance(entries, dict):
            raise RuleConfigError(f"{source}: 'rules' must be a mapping of rule id to definition")

        rules = []
        for rule_id, entry in entries.items():
            rule = self._parse_rule(str(rule_id), entry, source)
            rules.append(rule)
            self._rules[rule.rule_id] = rule

        logger.info("Loaded %d rule definitions from %s", len(rules), source)
        return rules

    def _parse_rule(self, rule_id: str, entry: Any, source: str) -> Rule:
        if not isinstance(entry, dict):
            raise RuleConfigError(f"{source}: rule {rule_id} must be a mapping")

        data = dict(entry)
        if "field" not in data or "rule" not in data:
            raise RuleConfigError(f"{source}: rule {rule_id} needs both 'field' and 'rule'")

        try:
            return Rule(
                rule_id=rule_id,
                target_field=data.pop("field"),
                raw_text=str(data.pop("rule")),
                **data,
            )
        except ValidationError as e:
            raise RuleConfigError(f"{source}: rule {rule_id} is invalid: {e}") from e

    def get_rule(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def get_all_rules(self) -> list[Rule]:
        return list(self._rules.values())
