"""Tests for rule configuration loading and the rule catalog."""

from pathlib import Path

import pytest
import yaml

from conftest import RULES, SCHEMA, make_rules
from edc_qc.core.schema import load_schema
from edc_qc.rules import RuleConfigError, RuleConfigLoader, RuleContext, Severity
from edc_qc.rules.catalog import RuleCatalog, get_rule_catalog, reset_rule_catalog
from edc_qc.runtime.cache import ValidatorCache

CONFIG_DIR = Path(__file__).parent.parent / "config"


def write_yaml(path, content):
    path.write_text(yaml.safe_dump(content), encoding="utf-8")
    return path


class TestRuleConfigLoader:
    """Test YAML rule configuration parsing."""

    def test_load_mapping(self):
        """Test the nested form with defaults applied."""
        rules = RuleConfigLoader().load_mapping({"rules": {
            "AGE_RANGE": {"field": "age", "rule": "between 18 and 65"},
            "WEIGHT_CHANGE": {"field": "weight", "rule": "within 10% of baseline_weight",
                              "context": "batch", "severity": "warning", "category": "safety"},
        }})

        age, weight = rules
        assert age.context == RuleContext.REALTIME
        assert age.severity == Severity.ERROR
        assert age.version == 1
        assert weight.is_batch
        assert weight.severity == Severity.WARNING

    def test_bare_mapping(self):
        """Test the form without a top-level 'rules' key."""
        loader = RuleConfigLoader()
        loader.load_mapping({"A": {"field": "age", "rule": "> 1"}})
        assert loader.get_rule("A").raw_text == "> 1"
        assert [r.rule_id for r in loader.get_all_rules()] == ["A"]

    def test_numeric_rule_text(self):
        """Test that YAML scalars are kept as rule text."""
        (rule,) = RuleConfigLoader().load_mapping({"A": {"field": "age", "rule": 18}})
        assert rule.raw_text == "18"

    @pytest.mark.parametrize("content", [
        {"A": {"rule": "> 1"}},
        {"A": {"field": "age"}},
        {"A": "between 1 and 2"},
        {"A": {"field": "age", "rule": "> 1", "severity": "fatal"}},
        {"A": {"field": "age", "rule": "> 1", "context": "nightly"}},
        {"rules": ["A"]},
    ])
    def test_malformed_entries(self, content):
        """Test that structural problems raise RuleConfigError."""
        with pytest.raises(RuleConfigError):
            RuleConfigLoader().load_mapping(content)

    def test_load_file_and_directory(self, tmp_path):
        """Test loading from a file and from a directory, skipping schema.yaml."""
        write_yaml(tmp_path / "a.yaml", {"rules": {"A": {"field": "age", "rule": "> 1"}}})
        write_yaml(tmp_path / "b.yaml", {"rules": {"B": {"field": "sex", "rule": "required"}}})
        write_yaml(tmp_path / "schema.yaml", SCHEMA)

        assert [r.rule_id for r in RuleConfigLoader().load_file(tmp_path / "a.yaml")] == ["A"]
        assert [r.rule_id for r in RuleConfigLoader(tmp_path).load_directory()] == ["A", "B"]

    def test_missing_files(self, tmp_path):
        """Test that absent paths raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            RuleConfigLoader().load_file(tmp_path / "missing.yaml")
        with pytest.raises(FileNotFoundError):
            RuleConfigLoader().load_directory(tmp_path / "missing")

    def test_shipped_configuration_loads(self):
        """Test that the sample configuration parses."""
        rules = RuleConfigLoader().load_file(CONFIG_DIR / "rules.yaml")
        schema = load_schema(CONFIG_DIR / "schema.yaml")
        assert len(rules) == 12
        assert schema.populations["enrolled"].table == "subjects"


class TestRuleCatalog:
    """Test applying configurations."""

    @pytest.fixture
    def catalog(self, temp_database, schema):
        return RuleCatalog(schema, cache=ValidatorCache())

    def test_apply_config(self, catalog):
        """Test that real-time rules reach the cache and batch rules get plans."""
        rules = make_rules("real-time", {k: RULES[k] for k in ("AGE_RANGE", "SEX_VALUES")})
        rules += make_rules("batch", {k: RULES[k] for k in ("VISIT_ORDER", "CONSENT_PRESENT")})
        report = catalog.apply_config(rules)

        assert report.ok
        assert report.rules_total == 4
        assert sorted(report.compiled) == ["AGE_RANGE", "CONSENT_PRESENT", "SEX_VALUES", "VISIT_ORDER"]
        assert report.cache_version == 1
        assert catalog.cache.get("age").rule_ids == ["AGE_RANGE"]
        assert catalog.cache.get("visit_date") is None
        assert catalog.get_plan("VISIT_ORDER").plan_kind == "cross_visit"
        assert catalog.get_plan("AGE_RANGE") is None
        assert catalog.repo.get_rule("CONSENT_PRESENT").compile_status == "compiled"

    def test_failed_rules_are_reported(self, catalog):
        """Test that broken rules are persisted as failed and kept out of cache and plans."""
        rules = make_rules("real-time", {
            "AGE_RANGE": {"field": "age", "rule": "between 18 and"},
            "SEX_VALUES": RULES["SEX_VALUES"],
        })
        rules += make_rules("batch", {"BAD_BATCH": {"field": "weight", "rule": "within 10% of height"}})
        report = catalog.apply_config(rules)

        assert not report.ok
        assert set(report.failed) == {"AGE_RANGE", "BAD_BATCH"}
        assert report.failed["AGE_RANGE"][0]["offset"] == 11
        assert report.compiled == ["SEX_VALUES"]
        assert catalog.cache.get("age") is None
        assert catalog.get_plan("BAD_BATCH") is None

        stored = catalog.repo.get_rule("BAD_BATCH")
        assert stored.compile_status == "failed"
        assert "height" in stored.compile_error
        assert report.to_dict()["ok"] is False

    def test_reapply_bumps_changed_rules(self, catalog):
        """Test version bumps for edited text only."""
        catalog.apply_config(make_rules("real-time", {k: RULES[k] for k in ("AGE_RANGE", "SEX_VALUES")}))
        report = catalog.apply_config(make_rules("real-time", {
            "AGE_RANGE": {"field": "age", "rule": "between 21 and 65"},
            "SEX_VALUES": RULES["SEX_VALUES"],
        }))

        assert report.versions_bumped == ["AGE_RANGE"]
        assert catalog.get_rule("AGE_RANGE").version == 2
        assert catalog.get_rule("SEX_VALUES").version == 1
        assert catalog.cache.get("age")({"age": 19})[0].failed
        assert report.cache_version == 2

    def test_removed_rules_are_deactivated(self, catalog):
        """Test that rules missing from a new configuration are deactivated, not deleted."""
        catalog.apply_config(make_rules("batch"))
        report = catalog.apply_config(make_rules("batch", {"AGE_RANGE": RULES["AGE_RANGE"]}))

        assert sorted(report.deactivated) == sorted(set(RULES) - {"AGE_RANGE"})
        assert [r.rule_id for r in catalog.get_rules()] == ["AGE_RANGE"]
        assert len(catalog.get_rules(active_only=False)) == len(RULES)
        assert catalog.get_plan("VISIT_ORDER") is None

    def test_check(self, catalog):
        """Test checking candidate rule text."""
        assert catalog.check("between 18 and 65", "age") == []
        assert catalog.check("between 18 and", "age")[0]["type"] == "syntax"
        assert catalog.check("heigth > 1", "age")[0]["code"] == "unknown_field"

    def test_load_files(self, catalog, tmp_path):
        """Test loading schema and rules from YAML."""
        rules_file = write_yaml(tmp_path / "rules.yaml", {"rules": {
            "HR": {"field": "heart_rate", "rule": "between 30 and 200"},
        }})
        schema_file = write_yaml(tmp_path / "schema.yaml", {"fields": {"heart_rate": {"type": "number"}}})

        report = catalog.load_files(rules_file, schema_file)
        assert report.compiled == ["HR"]
        assert set(catalog.schema.fields) == {"heart_rate"}

    def test_reload_reads_settings(self, catalog, tmp_path, monkeypatch):
        """Test reload from the configured files."""
        from edc_qc.core.config import get_settings

        rules_file = write_yaml(tmp_path / "rules.yaml", {"rules": {"AGE_RANGE": RULES["AGE_RANGE"]}})
        monkeypatch.setenv("EDC_QC_RULES_FILE", str(rules_file))
        monkeypatch.setenv("EDC_QC_SCHEMA_FILE", str(tmp_path / "absent.yaml"))
        get_settings.cache_clear()

        report = catalog.reload()
        assert report.compiled == ["AGE_RANGE"]


class TestGlobalCatalog:
    """Test the module-level instance."""

    def test_singleton_loads_schema_file(self, tmp_path, monkeypatch):
        """Test that the global catalog reads the configured schema."""
        from edc_qc.core.config import get_settings

        write_yaml(tmp_path / "schema.yaml", SCHEMA)
        monkeypatch.setenv("EDC_QC_SCHEMA_FILE", str(tmp_path / "schema.yaml"))
        get_settings.cache_clear()

        catalog = get_rule_catalog()
        assert get_rule_catalog() is catalog
        assert "lab_value" in catalog.schema.fields
        reset_rule_catalog()
        assert get_rule_catalog() is not catalog
