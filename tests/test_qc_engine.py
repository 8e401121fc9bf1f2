"""Tests for the batch QC engine."""

import pytest
from sqlalchemy import create_engine, text

from conftest import REFERENCE_DATE, RULES, create_data_database, make_rules
from edc_qc.core.errors import RunInProgressError
from edc_qc.qc.engine import CancellationToken, QCEngine, get_qc_engine, new_run_id, run_qc, set_data_store
from edc_qc.qc.models import RunStatus, RunTrigger
from edc_qc.qc.repository import ViolationRepository
from edc_qc.qc.resolution import ResolutionService
from edc_qc.qc.schemas import ViolationFilter
from edc_qc.qc.store import SqlDataStore
from edc_qc.rules.models import Rule, RuleContext
from edc_qc.storage.repositories.rule_repo import RuleRepository

EXPECTED_FOUND = {
    "AGE_RANGE": 2,
    "CONSENT_PRESENT": 2,
    "PREGNANCY_REQUIRED": 1,
    "SEX_VALUES": 1,
    "SUBJECT_CODE_FORMAT": 1,
    "VISIT_NOT_FUTURE": 2,
    "VISIT_ORDER": 1,
    "WEIGHT_CHANGE": 1,
}


@pytest.fixture
def engine(temp_database, schema):
    """QC engine with every sample rule stored as a batch rule."""
    repo = RuleRepository()
    for rule in make_rules("batch"):
        repo.save_rule(rule)
    return QCEngine(schema)


def open_violations(**criteria):
    return ViolationRepository().list_violations(ViolationFilter(state="open", **criteria))


class CancellingStore:
    """Cancels the run after the first plan it executes."""

    def __init__(self, store, token):
        self.store = store
        self.token = token

    def execute(self, plan):
        rows = self.store.execute(plan)
        self.token.cancel()
        return rows


class ExplodingStore:
    """Raises a driver-level error for one rule and delegates the rest."""

    def __init__(self, store, rule_id):
        self.store = store
        self.rule_id = rule_id

    def execute(self, plan):
        if plan.rule_id == self.rule_id:
            raise RuntimeError("driver exploded")
        return self.store.execute(plan)


class ReentrantStore:
    """Tries to start a second run from inside the active one."""

    def __init__(self, engine, store):
        self.engine = engine
        self.store = store
        self.errors = []
        self.active_ids = []

    def execute(self, plan):
        self.active_ids.append(self.engine.active_run_id)
        try:
            self.engine.run_all(self.store)
        except RunInProgressError as e:
            self.errors.append(e)
        return self.store.execute(plan)


class TestRun:
    """Test a complete run over the sample data."""

    def test_first_run(self, engine, data_store):
        """Test per-rule counts and run totals."""
        summary = engine.run_all(data_store)

        assert summary.status == RunStatus.COMPLETED.value
        assert summary.trigger == RunTrigger.MANUAL.value
        assert summary.rules_executed == len(RULES)
        assert summary.rules_failed == 0
        assert {o.rule_id: o.violations_found for o in summary.outcomes} == EXPECTED_FOUND
        assert summary.violations_found == sum(EXPECTED_FOUND.values())
        assert summary.new_violations == summary.violations_found
        assert summary.outcome_for("VISIT_ORDER").plan_kind == "cross_visit"
        assert summary.outcome_for("CONSENT_PRESENT").plan_kind == "missing_data"

    def test_violation_details(self, engine, data_store):
        """Test that violations carry the latest visit and observed value."""
        engine.run_all(data_store)

        (weight,) = open_violations(rule_id="WEIGHT_CHANGE")
        assert weight.subject_id == "S002"
        assert weight.visit_id == "WEEK4"
        assert weight.observed_value == "115.0"
        assert weight.severity == "warning"

        ages = open_violations(rule_id="AGE_RANGE")
        assert [(v.subject_id, v.visit_id) for v in ages] == [("S002", "WEEK4"), ("S003", "WEEK4")]

        consent = open_violations(rule_id="CONSENT_PRESENT")
        assert [(v.subject_id, v.visit_id, v.observed_value) for v in consent] == [
            ("S003", None, None), ("S005", None, None),
        ]

    def test_rerun_is_idempotent(self, engine, data_store):
        """Test that running twice on unchanged data creates nothing new."""
        first = engine.run_all(data_store)
        second = engine.run_all(data_store, trigger=RunTrigger.SCHEDULED)

        assert second.violations_found == first.violations_found
        assert second.new_violations == 0
        assert second.trigger == "scheduled"

        violations = open_violations()
        assert len(violations) == first.violations_found
        assert all(v.run_id == second.run_id for v in violations)
        assert all(v.first_run_id == first.run_id for v in violations)

        history = ViolationRepository().history(violations[0].id)
        assert [e.event_type for e in history] == ["detected", "redetected"]

    def test_redetection_updates_observed_value(self, engine, data_store, data_url):
        """Test that a still-open violation follows the data."""
        engine.run_all(data_store)
        (before,) = open_violations(rule_id="SEX_VALUES")

        data = create_engine(data_url)
        with data.begin() as conn:
            conn.execute(text("UPDATE records SET sex = 'X' WHERE subject_id = 'S004' AND visit_id = 'WEEK4'"))
        data.dispose()

        engine.run_all(data_store)
        (after,) = open_violations(rule_id="SEX_VALUES")
        assert after.id == before.id
        assert after.observed_value == "X"

    def test_closed_violation_is_not_reopened(self, engine, data_store):
        """Test that a resolved violation stays closed and a new one is opened."""
        engine.run_all(data_store)
        (weight,) = open_violations(rule_id="WEIGHT_CHANGE")
        ResolutionService().resolve(weight.id, "dm", "Confirmed with site")

        summary = engine.run_all(data_store)

        assert summary.new_violations == 1
        assert ViolationRepository().get(weight.id).resolution_state == "resolved"
        (reopened,) = open_violations(rule_id="WEIGHT_CHANGE")
        assert reopened.id != weight.id
        assert reopened.first_run_id == summary.run_id

    def test_latest_visit_follows_visit_order(self, temp_database, schema, tmp_path):
        """Test that the reported visit is the last by visit order, not by visit id text."""
        url = f"sqlite:///{tmp_path / 'visits.db'}"
        create_data_database(url, records=[
            ("S001", "V2", 2, "ABC-0001", 70, "Female", False, 60.0, 60.0, 70.0, "2024-01-10", "2024-01-02"),
            ("S001", "V10", 10, "ABC-0001", 90, "Female", False, 60.0, 60.0, 70.0, "2024-01-20", "2024-01-02"),
        ], subjects=["S001"]).dispose()
        RuleRepository().save_rule(make_rules("batch", {"AGE_RANGE": RULES["AGE_RANGE"]})[0])

        store = SqlDataStore.from_url(url, today=lambda: REFERENCE_DATE)
        summary = QCEngine(schema).run_all(store)

        assert summary.outcome_for("AGE_RANGE").violations_found == 1
        (violation,) = open_violations(rule_id="AGE_RANGE")
        assert (violation.subject_id, violation.visit_id, violation.observed_value) == ("S001", "V10", "90")

    def test_no_batch_rules(self, temp_database, schema, data_store):
        """Test a run with nothing to execute."""
        summary = QCEngine(schema).run_all(data_store)
        assert summary.status == RunStatus.COMPLETED.value
        assert summary.outcomes == []

    def test_inactive_and_realtime_rules_are_ignored(self, engine, data_store):
        """Test that only active batch rules run."""
        repo = RuleRepository()
        repo.deactivate_rule("AGE_RANGE")
        repo.save_rule(Rule(rule_id="RT_ONLY", target_field="age", raw_text="> 0", context=RuleContext.REALTIME))

        summary = engine.run_all(data_store)
        assert summary.outcome_for("AGE_RANGE") is None
        assert summary.outcome_for("RT_ONLY") is None
        assert summary.rules_executed == len(RULES) - 1


class TestFailureIsolation:
    """A failing rule never stops the run."""

    def test_compile_and_execution_failures(self, engine, data_store):
        """Test that broken rules are recorded as failed and the others still run."""
        repo = RuleRepository()
        repo.save_rule(Rule(rule_id="BROKEN", target_field="age", raw_text="between 18 and", context=RuleContext.BATCH))
        repo.save_rule(Rule(rule_id="LAB_CHECK", target_field="lab_value", raw_text="> 0", context=RuleContext.BATCH))

        summary = engine.run_all(data_store)

        assert summary.status == RunStatus.COMPLETED_WITH_ERRORS.value
        assert summary.rules_failed == 2
        assert summary.rules_executed == len(RULES)
        assert "offset" in summary.outcome_for("BROKEN").error_message
        assert "LAB_CHECK" in summary.outcome_for("LAB_CHECK").error_message
        assert repo.get_rule("BROKEN").compile_status == "failed"
        assert repo.get_rule("LAB_CHECK").compile_status == "compiled"
        assert summary.outcome_for("WEIGHT_CHANGE").violations_found == 1

    def test_unexpected_store_error(self, engine, data_store):
        """Test that a non-database error from the store fails only that rule."""
        summary = engine.run_all(ExplodingStore(data_store, "AGE_RANGE"))

        assert summary.status == RunStatus.COMPLETED_WITH_ERRORS.value
        assert summary.rules_failed == 1
        assert summary.rules_executed == len(RULES) - 1
        assert summary.outcome_for("AGE_RANGE").status == "failed"
        assert "RuntimeError: driver exploded" in summary.outcome_for("AGE_RANGE").error_message
        assert summary.outcome_for("WEIGHT_CHANGE").violations_found == 1
        assert open_violations(rule_id="AGE_RANGE") == []
        assert engine.get_run(summary.run_id).status == RunStatus.COMPLETED_WITH_ERRORS.value
        assert engine.active_run_id is None

    def test_aborted_run_is_finished_as_failed(self, engine, data_store, monkeypatch):
        """Test that an error escaping the rule loop does not leave the run running."""
        def broken_rule(run_id, rule, store):
            raise RuntimeError("outcome bookkeeping failed")

        monkeypatch.setattr(engine, "_run_rule", broken_rule)
        with pytest.raises(RuntimeError):
            engine.run_all(data_store)

        (run,) = engine.get_run_history()
        assert run.status == RunStatus.FAILED.value
        assert run.finished_at is not None
        assert engine.active_run_id is None


class TestConcurrency:
    """Test cancellation and run serialisation."""

    def test_cancellation(self, engine, data_store):
        """Test that a cancelled run stops before the next rule and keeps partial results."""
        token = CancellationToken()
        summary = engine.run_all(CancellingStore(data_store, token), cancel_token=token)

        assert summary.status == RunStatus.CANCELLED.value
        assert summary.rules_executed == 1
        assert summary.rules_skipped == len(RULES) - 1
        assert summary.outcomes[0].rule_id == "AGE_RANGE"
        assert all(o.error_message == "run cancelled" for o in summary.outcomes[1:])
        assert len(open_violations()) == EXPECTED_FOUND["AGE_RANGE"]
        assert engine.get_run(summary.run_id).status == "cancelled"

    def test_cancel_without_active_run(self, engine):
        """Test that cancel reports no run when idle."""
        assert engine.cancel() is None
        assert engine.active_run_id is None

    def test_second_run_is_rejected(self, engine, data_store):
        """Test that a run cannot start while another is active."""
        store = ReentrantStore(engine, data_store)
        summary = engine.run_all(store)

        assert len(store.errors) == len(RULES)
        assert all(e.active_run_id == summary.run_id for e in store.errors)
        assert "run in progress" in str(store.errors[0])
        assert set(store.active_ids) == {summary.run_id}
        assert engine.active_run_id is None
        assert len(engine.get_run_history()) == 1


class TestPlans:
    """Test compiled plan reuse."""

    def test_plan_is_reused(self, engine, data_store):
        """Test that an unchanged rule keeps its stored plan across runs."""
        engine.run_all(data_store)
        repo = RuleRepository()
        stored = repo.get_plan("AGE_RANGE").compiled_at

        engine.run_all(data_store)
        assert repo.get_plan("AGE_RANGE").compiled_at == stored
        assert repo.get_rule("AGE_RANGE").compile_status == "compiled"

    def test_changed_rule_is_recompiled(self, engine, data_store):
        """Test that a new rule version gets a new plan."""
        engine.run_all(data_store)
        repo = RuleRepository()
        repo.save_rule(Rule(rule_id="AGE_RANGE", target_field="age", raw_text="between 17 and 65", context=RuleContext.BATCH))

        summary = engine.run_all(data_store)
        assert summary.outcome_for("AGE_RANGE").violations_found == 1
        assert summary.outcome_for("AGE_RANGE").rule_version == 2
        assert repo.get_plan("AGE_RANGE").rule_version == 2

    def test_schema_change_recompiles(self, engine, schema):
        """Test that a plan compiled for another schema is stale."""
        rule = make_rules("batch", {"AGE_RANGE": RULES["AGE_RANGE"]})[0]
        old_plan = engine.plan_for(rule)

        engine.schema = schema.model_copy(update={"table": "records_v2"})
        new_plan = engine.plan_for(rule)

        assert new_plan.table == "records_v2"
        assert new_plan.schema_fingerprint != old_plan.schema_fingerprint
        assert RuleRepository().get_plan("AGE_RANGE").schema_fingerprint == new_plan.schema_fingerprint


class TestRunHistory:
    """Test run lookups."""

    def test_get_run(self, engine, data_store):
        """Test fetching a run with its outcomes."""
        summary = engine.run_all(data_store)
        stored = engine.get_run(summary.run_id)

        assert stored.run_id == summary.run_id
        assert [o.rule_id for o in stored.outcomes] == sorted(RULES)
        assert engine.get_run("qc_missing") is None

    def test_history_is_newest_first(self, engine, data_store):
        """Test ordering and limit."""
        first = engine.run_all(data_store)
        second = engine.run_all(data_store)

        history = engine.get_run_history()
        assert [run.run_id for run in history] == [second.run_id, first.run_id]
        assert history[0].outcomes == []
        assert len(engine.get_run_history(limit=1)) == 1

    def test_run_ids_are_unique(self):
        """Test run id format."""
        first, second = new_run_id(), new_run_id()
        assert first.startswith("qc_")
        assert first != second


class TestGlobalEngine:
    """Test the module-level engine and data store."""

    def test_run_qc(self, engine, data_store):
        """Test a scheduled run through the global engine."""
        set_data_store(data_store)
        get_qc_engine().schema = engine.schema

        summary = run_qc()
        assert summary.trigger == "scheduled"
        assert summary.violations_found == sum(EXPECTED_FOUND.values())
        assert get_qc_engine().get_run_history()[0].run_id == summary.run_id
