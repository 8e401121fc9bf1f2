"""
Batch QC engine.

Executes the query plan of every active batch rule against the clinical data
store and reconciles the violating rows with the violation table. Each rule
is isolated: a rule that fails to compile or execute is recorded as failed
and the run moves on.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from edc_qc.compiler.compiler import RuleCompiler
from edc_qc.compiler.ir import QueryPlan
from edc_qc.core.config import get_settings
from edc_qc.core.errors import RuleError, RunInProgressError
from edc_qc.core.schema import TableSchema
from edc_qc.qc.models import QCRun, QCRunRuleOutcome, RuleOutcomeStatus, RunStatus, RunTrigger
from edc_qc.qc.repository import RunRepository, ViolationRepository
from edc_qc.qc.schemas import RunSummary
from edc_qc.qc.store import DataStore, SqlDataStore
from edc_qc.rules.models import Rule, RuleContext
from edc_qc.storage.database import get_database_url
from edc_qc.storage.repositories.rule_repo import RuleRepository

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked before each rule."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"qc_{stamp}_{uuid.uuid4().hex[:8]}"


class QCEngine:
    """Runs every active batch rule and records violations.

    Runs are serialised: while one is active, ``run_all`` raises
    ``RunInProgressError``. Rule reloads may happen during a run; the run
    works on the rule set it read when it started.

    Args:
        schema: Table schema the batch rules compile against
        rule_repo: Rule and plan persistence
        violation_repo: Violation persistence
        run_repo: Run persistence
    """

    def __init__(
        self,
        schema: TableSchema,
        rule_repo: RuleRepository | None = None,
        violation_repo: ViolationRepository | None = None,
        run_repo: RunRepository | None = None,
    ):
        self.schema = schema
        self.rule_repo = rule_repo or RuleRepository()
        self.violation_repo = violation_repo or ViolationRepository()
        self.run_repo = run_repo or RunRepository()

        self._run_lock = threading.Lock()
        self._active_run_id: str | None = None
        self._active_token: CancellationToken | None = None

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    def cancel(self) -> str | None:
        """Request cancellation of the active run.

        Returns:
            The id of the run asked to stop, or None if none is active
        """
        token = self._active_token
        if token is None:
            return None
        token.cancel()
        logger.info("Cancellation requested for QC run %s", self._active_run_id)
        return self._active_run_id

    def get_run(self, run_id: str) -> RunSummary | None:
        """A past run with its per-rule outcomes."""
        found = self.run_repo.get(run_id)
        if found is None:
            return None
        run, outcomes = found
        return RunSummary.from_models(run, outcomes)

    def get_run_history(self, limit: int = 20) -> list[RunSummary]:
        """Most recent runs first, without per-rule outcomes."""
        return [RunSummary.from_models(run) for run in self.run_repo.list_runs(limit)]

    # =========================================================================
    # Plans
    # =========================================================================

    def plan_for(self, rule: Rule) -> QueryPlan:
        """Get the plan of a rule, reusing the stored one when still current.

        A stored plan is current when it was compiled from the same rule
        source and the same schema. Otherwise the rule is recompiled and the
        new plan persisted.

        Raises:
            RuleSyntaxError, SemanticError, CompilationError: The rule no
                longer compiles
        """
        fingerprint = self.schema.fingerprint()
        record = self.rule_repo.get_plan(rule.rule_id)
        if record is not None:
            plan = record.to_plan()
            if plan.is_current(rule.source_hash, fingerprint):
                return plan
            logger.info("Stored plan for rule %s is stale; recompiling", rule.rule_id)

        try:
            plan = RuleCompiler(self.schema).compile_plan(rule)
        except RuleError as e:
            self.rule_repo.set_compile_status(rule.rule_id, "failed", str(e))
            raise
        self.rule_repo.save_plan(plan, rule.version)
        self.rule_repo.set_compile_status(rule.rule_id, "compiled")
        return plan

    # =========================================================================
    # Runs
    # =========================================================================

    def run_all(
        self,
        store: DataStore,
        trigger: RunTrigger | str = RunTrigger.MANUAL,
        cancel_token: CancellationToken | None = None,
    ) -> RunSummary:
        """Execute every active batch rule.

        Args:
            store: Data store the plans run against
            trigger: ``scheduled`` or ``manual``
            cancel_token: Checked before each rule

        Returns:
            RunSummary with per-rule outcomes

        Raises:
            RunInProgressError: Another run is active
        """
        if not self._run_lock.acquire(blocking=False):
            raise RunInProgressError(self._active_run_id)

        token = cancel_token or CancellationToken()
        run = QCRun(run_id=new_run_id(), trigger=RunTrigger(trigger).value)
        self._active_run_id = run.run_id
        self._active_token = token
        try:
            return self._execute(run, store, token)
        finally:
            self._active_run_id = None
            self._active_token = None
            self._run_lock.release()

    def _execute(self, run: QCRun, store: DataStore, token: CancellationToken) -> RunSummary:
        records = self.rule_repo.get_all_rules(active_only=True, context=RuleContext.BATCH.value)
        rules = [record.to_rule() for record in records]

        run = self.run_repo.create(run)
        started = time.perf_counter()
        logger.info("QC run %s started (%s): %d batch rules", run.run_id, run.trigger, len(rules))

        outcomes: list[QCRunRuleOutcome] = []
        cancelled = False
        try:
            for rule in rules:
                if cancelled or token.cancelled:
                    cancelled = True
                    outcomes.append(QCRunRuleOutcome(
                        run_id=run.run_id,
                        rule_id=rule.rule_id,
                        rule_version=rule.version,
                        status=RuleOutcomeStatus.SKIPPED.value,
                        error_message="run cancelled",
                    ))
                    continue
                outcomes.append(self._run_rule(run.run_id, rule, store))
        except Exception:
            logger.exception("QC run %s aborted after %d of %d rules", run.run_id, len(outcomes), len(rules))
            run.status = RunStatus.FAILED.value
            run.finished_at = datetime.now(timezone.utc)
            run.duration_seconds = time.perf_counter() - started
            self.run_repo.finish(run, outcomes)
            raise

        executed = [o for o in outcomes if o.status == RuleOutcomeStatus.EXECUTED.value]
        failed = [o for o in outcomes if o.status == RuleOutcomeStatus.FAILED.value]
        skipped = [o for o in outcomes if o.status == RuleOutcomeStatus.SKIPPED.value]

        if cancelled:
            run.status = RunStatus.CANCELLED.value
        elif failed:
            run.status = RunStatus.COMPLETED_WITH_ERRORS.value
        else:
            run.status = RunStatus.COMPLETED.value
        run.finished_at = datetime.now(timezone.utc)
        run.duration_seconds = time.perf_counter() - started
        run.rules_executed = len(executed)
        run.rules_failed = len(failed)
        run.rules_skipped = len(skipped)
        run.violations_found = sum(o.violations_found for o in executed)
        run.new_violations = sum(o.new_violations for o in executed)

        run = self.run_repo.finish(run, outcomes)
        logger.info(
            "QC run %s %s: %d executed, %d failed, %d skipped, %d violations (%d new)",
            run.run_id, run.status, run.rules_executed, run.rules_failed,
            run.rules_skipped, run.violations_found, run.new_violations,
        )
        return RunSummary.from_models(run, outcomes)

    def _run_rule(self, run_id: str, rule: Rule, store: DataStore) -> QCRunRuleOutcome:
        outcome = QCRunRuleOutcome(run_id=run_id, rule_id=rule.rule_id, rule_version=rule.version, status="")
        started = time.perf_counter()
        try:
            plan = self.plan_for(rule)
            outcome.plan_kind = plan.plan_kind.value
            rows = store.execute(plan)
            found, new = self.violation_repo.record_detections(
                rule_id=rule.rule_id,
                rule_version=rule.version,
                field=rule.target_field,
                severity=rule.severity.value,
                rows=rows,
                run_id=run_id,
            )
        except RuleError as e:
            logger.warning("Rule %s failed in run %s: %s", rule.rule_id, run_id, e)
            outcome.status = RuleOutcomeStatus.FAILED.value
            outcome.error_message = str(e)
        except SQLAlchemyError as e:
            logger.exception("Recording violations of rule %s failed in run %s", rule.rule_id, run_id)
            outcome.status = RuleOutcomeStatus.FAILED.value
            outcome.error_message = f"violation store error: {e}"
        except Exception as e:
            logger.exception("Rule %s raised unexpectedly in run %s", rule.rule_id, run_id)
            outcome.status = RuleOutcomeStatus.FAILED.value
            outcome.error_message = f"{type(e).__name__}: {e}"
        else:
            outcome.status = RuleOutcomeStatus.EXECUTED.value
            outcome.violations_found = found
            outcome.new_violations = new
        outcome.duration_seconds = time.perf_counter() - started
        return outcome


# Global engine and data store
_engine: QCEngine | None = None
_data_store: DataStore | None = None


def get_qc_engine() -> QCEngine:
    """Get or create the global QC engine on the rule catalog's schema."""
    global _engine
    if _engine is None:
        from edc_qc.rules.catalog import get_rule_catalog

        _engine = QCEngine(get_rule_catalog().schema)
    return _engine


def get_data_store() -> DataStore:
    """Get the clinical data store (``data_database_url``, else the main database)."""
    global _data_store
    if _data_store is None:
        url = get_settings().data_database_url or get_database_url()
        _data_store = SqlDataStore.from_url(url)
    return _data_store


def set_data_store(store: DataStore | None) -> None:
    global _data_store
    _data_store = store


def reset_qc_engine() -> None:
    global _engine, _data_store
    _engine = None
    _data_store = None


def run_qc(
    trigger: RunTrigger | str = RunTrigger.SCHEDULED,
    cancel_token: CancellationToken | None = None,
) -> RunSummary:
    """Run batch QC with the global engine and data store."""
    return get_qc_engine().run_all(get_data_store(), trigger=trigger, cancel_token=cancel_token)
