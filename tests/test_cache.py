"""Tests for the validator cache and the real-time validation service."""

import threading

import pytest

from conftest import make_rules
from edc_qc.core.errors import RuleSyntaxError, SemanticError
from edc_qc.rules.models import Rule
from edc_qc.runtime.cache import ValidatorCache, get_validator_cache, reset_validator_cache
from edc_qc.runtime.results import ValidationStatus
from edc_qc.runtime.service import RealtimeValidationService

REALTIME_RULES = {
    "AGE_RANGE": {"field": "age", "rule": "between 18 and 65"},
    "AGE_PLAUSIBLE": {"field": "age", "rule": "< 120", "severity": "warning"},
    "SEX_VALUES": {"field": "sex", "rule": "in ('Male', 'Female')"},
    "PREGNANCY_REQUIRED": {"field": "pregnant", "rule": "if sex == 'Female' then required endif"},
    "WEIGHT_CHANGE": {"field": "weight", "rule": "within 10% of baseline_weight", "severity": "warning"},
    "VISIT_ORDER": {"field": "visit_date", "rule": "visit_date >= previous_visit_date", "context": "batch"},
}


@pytest.fixture
def cache(schema):
    """Cache loaded with the real-time sample rules."""
    cache = ValidatorCache()
    cache.load(make_rules("real-time", REALTIME_RULES), schema)
    return cache


class TestLoad:
    """Test full loads."""

    def test_load_groups_rules_by_field(self, cache):
        """Test that rules targeting one field are composed together."""
        assert cache.version == 1
        assert cache.get("age").rule_ids == ["AGE_PLAUSIBLE", "AGE_RANGE"]
        assert cache.get("sex").rule_ids == ["SEX_VALUES"]
        assert cache.get("heart_rate") is None

    def test_batch_and_inactive_rules_are_skipped(self, schema):
        """Test that only active real-time rules are cached."""
        rules = make_rules("real-time", REALTIME_RULES)
        rules.append(Rule(rule_id="OFF", target_field="age", raw_text="> 1", active=False))
        report = ValidatorCache().load(rules, schema)

        assert set(report.skipped) == {"VISIT_ORDER", "OFF"}
        assert "AGE_RANGE" in report.loaded
        assert report.ok

    def test_failed_rule_is_left_out(self, schema):
        """Test that a broken rule is reported while the rest load."""
        rules = make_rules("real-time", {
            "AGE_RANGE": {"field": "age", "rule": "between 18 and"},
            "SEX_VALUES": {"field": "sex", "rule": "in ('Male', 'Female')"},
            "HEIGHT": {"field": "height", "rule": "> 100"},
        })
        cache = ValidatorCache()
        report = cache.load(rules, schema)

        assert report.loaded == ["SEX_VALUES"]
        assert not report.ok
        assert report.failed["AGE_RANGE"][0]["type"] == "syntax"
        assert report.failed["AGE_RANGE"][0]["fragment"] == "and"
        assert report.failed["HEIGHT"][0]["code"] == "unknown_field"
        assert cache.get("age") is None
        assert cache.stats().failed.keys() == {"AGE_RANGE", "HEIGHT"}

    def test_reload_replaces_content(self, cache, schema):
        """Test that a second load swaps in a new snapshot."""
        old = cache.snapshot()
        cache.load(make_rules("real-time", {"SEX_VALUES": REALTIME_RULES["SEX_VALUES"]}), schema)

        assert cache.version == 2
        assert cache.get("age") is None
        # a reader holding the old snapshot keeps a consistent view
        assert old.get("age").rule_ids == ["AGE_PLAUSIBLE", "AGE_RANGE"]

    def test_snapshot_is_read_only(self, cache):
        """Test that snapshot mappings cannot be mutated."""
        with pytest.raises(TypeError):
            cache.snapshot().fields["age"] = None

    def test_stats(self, cache):
        """Test diagnostic counts."""
        stats = cache.stats()
        assert stats.version == 1
        assert stats.rule_count == 5
        assert stats.field_count == 4
        assert stats.fields["pregnant"] == ["PREGNANCY_REQUIRED"]


class TestIncrementalUpdates:
    """Test single-rule updates and invalidation."""

    def test_update_rule_swaps_in_new_version(self, cache):
        """Test that an edited rule replaces the old validator."""
        compiled = cache.update_rule(Rule(rule_id="AGE_RANGE", target_field="age", raw_text="between 21 and 65", version=2))

        assert compiled.rule.version == 2
        assert cache.version == 2
        results = cache.get("age")({"age": 19})
        assert [r.status for r in results] == [ValidationStatus.PASS, ValidationStatus.FAIL]

    def test_failed_update_keeps_snapshot(self, cache):
        """Test that a rule that no longer compiles leaves the cache unchanged."""
        before = cache.snapshot()
        with pytest.raises(RuleSyntaxError):
            cache.update_rule(Rule(rule_id="AGE_RANGE", target_field="age", raw_text="between 18 and"))
        with pytest.raises(SemanticError):
            cache.update_rule(Rule(rule_id="AGE_RANGE", target_field="age", raw_text="sex > 1"))

        assert cache.snapshot() is before
        assert cache.get("age")({"age": 17})[1].failed

    def test_deactivating_removes_rule(self, cache):
        """Test that an inactive or batch rule is dropped."""
        assert cache.update_rule(Rule(rule_id="SEX_VALUES", target_field="sex", raw_text="in ('M')", active=False)) is None
        assert cache.get("sex") is None

        cache.update_rule(Rule(rule_id="AGE_PLAUSIBLE", target_field="age", raw_text="< 120", context="batch"))
        assert cache.get("age").rule_ids == ["AGE_RANGE"]

    def test_update_needs_loaded_schema(self):
        """Test that a cache never loaded cannot compile rules."""
        with pytest.raises(RuntimeError):
            ValidatorCache().update_rule(Rule(rule_id="A", target_field="age", raw_text="> 1"))

    def test_invalidate_field(self, cache):
        """Test dropping one field."""
        assert cache.invalidate("age") == 2
        assert cache.get("age") is None
        assert cache.get("sex") is not None
        assert cache.version == 2

    def test_invalidate_all(self, cache):
        """Test dropping everything, and that a no-op keeps the version."""
        assert cache.invalidate() == 5
        assert cache.invalidate() == 0
        assert cache.version == 2
        assert cache.stats().rule_count == 0

    def test_concurrent_readers_during_reloads(self, cache, schema):
        """Test that readers always see a complete snapshot while writers swap."""
        rules = make_rules("real-time", REALTIME_RULES)
        errors = []

        def read():
            for _ in range(200):
                snapshot = cache.snapshot()
                validator = snapshot.get("age")
                if validator is None or len(validator) != 2:
                    errors.append(snapshot.version)

        def write():
            for _ in range(20):
                cache.load(rules, schema)

        threads = [threading.Thread(target=read) for _ in range(4)] + [threading.Thread(target=write)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert cache.version == 21


class TestGlobalCache:
    """Test the module-level instance."""

    def test_singleton(self):
        """Test get/reset."""
        first = get_validator_cache()
        assert get_validator_cache() is first
        reset_validator_cache()
        assert get_validator_cache() is not first


class TestRealtimeValidationService:
    """Test field and form validation."""

    def test_validate_field(self, cache):
        """Test one field with sibling values."""
        service = RealtimeValidationService(cache)
        result = service.validate_field("pregnant", None, {"sex": "Female"})

        assert not result.valid
        assert result.errors[0].rule_id == "PREGNANCY_REQUIRED"
        assert result.cache_version == 1
        assert result.to_dict()["status"] == "fail"

    def test_field_without_rules_passes(self, cache):
        """Test a field nothing targets."""
        result = RealtimeValidationService(cache).validate_field("heart_rate", 300)
        assert result.valid
        assert result.results == []

    def test_warning_does_not_invalidate(self, cache):
        """Test that a warning-severity failure keeps the field valid."""
        result = RealtimeValidationService(cache).validate_field("weight", 130, {"baseline_weight": 100})
        assert result.valid
        assert [w.rule_id for w in result.warnings] == ["WEIGHT_CHANGE"]

    def test_validate_form(self, cache):
        """Test aggregation over a whole form."""
        form = {"age": 17, "sex": "Female", "pregnant": "", "weight": 80, "heart_rate": 70}
        result = RealtimeValidationService(cache).validate_form(form)

        assert not result.valid
        assert sorted(e.rule_id for e in result.errors) == ["AGE_RANGE", "PREGNANCY_REQUIRED"]
        assert [i.rule_id for i in result.indeterminate] == ["WEIGHT_CHANGE"]
        assert result.fields_checked == ["age", "pregnant", "sex", "weight"]
        assert result.rules_evaluated == 5

    def test_valid_form(self, cache):
        """Test a form that passes every rule."""
        form = {"age": 40, "sex": "Male", "weight": 80, "baseline_weight": 78}
        result = RealtimeValidationService(cache).validate_form(form)
        assert result.valid
        assert result.errors == [] and result.warnings == []
