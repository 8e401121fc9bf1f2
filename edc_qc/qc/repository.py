"""
Repositories for violations and QC runs (SQLModel).
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from sqlmodel import func, select

from edc_qc.qc.models import (
    QCRun,
    QCRunRuleOutcome,
    ResolutionState,
    Violation,
    ViolationEvent,
    ViolationEventType,
    utcnow,
)
from edc_qc.qc.schemas import ViolationFilter, ViolationStatistics
from edc_qc.qc.store import ViolationRow
from edc_qc.storage.database import get_session


def _visit_order(row: ViolationRow) -> tuple[bool, int]:
    """Sort key for the visit a row belongs to; rows without an order sort first."""
    return (row.visit_seq is not None, row.visit_seq or 0)


class ViolationRepository:
    """Persistence for violations and their append-only history."""

    # =========================================================================
    # Detection
    # =========================================================================

    def record_detections(
        self,
        rule_id: str,
        rule_version: int,
        field: str,
        severity: str,
        rows: list[ViolationRow],
        run_id: str,
        detected_at: datetime | None = None,
    ) -> tuple[int, int]:
        """Upsert the violations one rule produced in one run.

        The key ``(rule_id, subject_id, field)`` is matched against open
        violations only. A match is updated in place; anything else creates a
        new violation. Closed violations are never reopened.

        Args:
            rule_id: Rule that produced the rows
            rule_version: Version of the rule at detection time
            field: Target field of the rule
            severity: Rule severity
            rows: Violating rows from the data store
            run_id: Current QC run
            detected_at: Detection timestamp (defaults to now)

        Returns:
            (distinct violation keys found, violations newly created)
        """
        detected_at = detected_at or utcnow()

        # One violation per subject; the highest visit order wins, later rows break ties.
        latest: dict[str, ViolationRow] = {}
        for row in rows:
            current = latest.get(row.subject_id)
            if current is None or _visit_order(row) >= _visit_order(current):
                latest[row.subject_id] = row

        new_count = 0
        with get_session() as session:
            open_rows = session.exec(
                select(Violation).where(
                    Violation.rule_id == rule_id,
                    Violation.field == field,
                    Violation.resolution_state == ResolutionState.OPEN.value,
                )
            ).all()
            open_by_subject = {v.subject_id: v for v in open_rows}

            for subject_id, row in latest.items():
                violation = open_by_subject.get(subject_id)
                if violation is not None:
                    violation.observed_value = row.observed_value
                    violation.visit_id = row.visit_id
                    violation.detected_at = detected_at
                    violation.run_id = run_id
                    violation.rule_version = rule_version
                    violation.severity = severity
                    session.add(violation)
                    event_type = ViolationEventType.REDETECTED
                else:
                    violation = Violation(
                        rule_id=rule_id,
                        rule_version=rule_version,
                        subject_id=subject_id,
                        visit_id=row.visit_id,
                        field=field,
                        observed_value=row.observed_value,
                        severity=severity,
                        detected_at=detected_at,
                        first_detected_at=detected_at,
                        run_id=run_id,
                        first_run_id=run_id,
                    )
                    session.add(violation)
                    session.flush()
                    new_count += 1
                    event_type = ViolationEventType.DETECTED

                session.add(ViolationEvent(
                    violation_id=violation.id,
                    event_type=event_type.value,
                    run_id=run_id,
                    observed_value=row.observed_value,
                    created_at=detected_at,
                ))

            session.commit()

        return len(latest), new_count

    # =========================================================================
    # Resolution
    # =========================================================================

    def get(self, violation_id: int) -> Violation | None:
        with get_session() as session:
            return session.get(Violation, violation_id)

    def transition(
        self,
        violation_id: int,
        state: ResolutionState,
        actor: str,
        notes: str,
        event_type: ViolationEventType,
    ) -> Violation | None:
        """Move an open violation to a closed state and append the event.

        Returns:
            The updated violation, or None when it does not exist or is
            no longer open
        """
        with get_session() as session:
            violation = session.get(Violation, violation_id)
            if violation is None or not violation.is_open:
                return None

            now = utcnow()
            violation.resolution_state = state.value
            violation.resolved_by = actor
            violation.resolved_at = now
            violation.resolution_notes = notes
            session.add(violation)
            session.add(ViolationEvent(
                violation_id=violation_id,
                event_type=event_type.value,
                actor=actor,
                notes=notes,
                observed_value=violation.observed_value,
                created_at=now,
            ))
            session.commit()
            session.refresh(violation)
            return violation

    # =========================================================================
    # Queries
    # =========================================================================

    def list_violations(self, criteria: ViolationFilter | None = None) -> list[Violation]:
        criteria = criteria or ViolationFilter()
        statement = select(Violation)
        if criteria.rule_id:
            statement = statement.where(Violation.rule_id == criteria.rule_id)
        if criteria.subject_id:
            statement = statement.where(Violation.subject_id == criteria.subject_id)
        if criteria.field:
            statement = statement.where(Violation.field == criteria.field)
        if criteria.state:
            statement = statement.where(Violation.resolution_state == criteria.state)
        if criteria.severity:
            statement = statement.where(Violation.severity == criteria.severity)
        if criteria.run_id:
            statement = statement.where(Violation.run_id == criteria.run_id)
        statement = statement.order_by(Violation.id).offset(criteria.offset).limit(criteria.limit)

        with get_session() as session:
            return list(session.exec(statement).all())

    def history(self, violation_id: int) -> list[ViolationEvent]:
        with get_session() as session:
            return list(session.exec(
                select(ViolationEvent)
                .where(ViolationEvent.violation_id == violation_id)
                .order_by(ViolationEvent.id)
            ).all())

    def statistics(self) -> ViolationStatistics:
        with get_session() as session:
            rows = session.exec(
                select(Violation.resolution_state, Violation.severity, Violation.rule_id, func.count())
                .group_by(Violation.resolution_state, Violation.severity, Violation.rule_id)
            ).all()

        by_state: Counter = Counter()
        by_severity: Counter = Counter()
        open_by_rule: Counter = Counter()
        total = 0
        for state, severity, rule_id, count in rows:
            total += count
            by_state[state] += count
            by_severity[severity] += count
            if state == ResolutionState.OPEN.value:
                open_by_rule[rule_id] += count

        return ViolationStatistics(
            total=total,
            by_state=dict(by_state),
            by_severity=dict(by_severity),
            open_by_rule=dict(open_by_rule),
        )


class RunRepository:
    """Persistence for QC runs and their per-rule outcomes."""

    def create(self, run: QCRun) -> QCRun:
        with get_session() as session:
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def finish(self, run: QCRun, outcomes: list[QCRunRuleOutcome]) -> QCRun:
        """Write the final run record together with every per-rule outcome."""
        with get_session() as session:
            session.add(run)
            for outcome in outcomes:
                session.add(outcome)
            session.commit()
            session.refresh(run)
            return run

    def get(self, run_id: str) -> tuple[QCRun, list[QCRunRuleOutcome]] | None:
        with get_session() as session:
            run = session.get(QCRun, run_id)
            if run is None:
                return None
            outcomes = session.exec(
                select(QCRunRuleOutcome)
                .where(QCRunRuleOutcome.run_id == run_id)
                .order_by(QCRunRuleOutcome.id)
            ).all()
            return run, list(outcomes)

    def list_runs(self, limit: int = 20) -> list[QCRun]:
        with get_session() as session:
            return list(session.exec(
                select(QCRun).order_by(QCRun.started_at.desc()).limit(limit)
            ).all())
