"""
Violation resolution workflow.

Violations move forward only: ``open`` -> ``resolved`` or
``open`` -> ``false_positive``. Every transition names who made it and why,
and is appended to the violation's history.
"""

from __future__ import annotations

import logging
from typing import Iterable

from edc_qc.core.errors import InvalidTransitionError, ViolationNotFoundError
from edc_qc.qc.models import ResolutionState, Violation, ViolationEvent, ViolationEventType
from edc_qc.qc.repository import ViolationRepository
from edc_qc.qc.schemas import BulkResolveResult, SkippedViolation, ViolationFilter, ViolationStatistics

logger = logging.getLogger(__name__)


class ResolutionService:
    """Resolves violations and answers read queries about them."""

    def __init__(self, repo: ViolationRepository | None = None):
        self.repo = repo or ViolationRepository()

    # =========================================================================
    # Transitions
    # =========================================================================

    def resolve(self, violation_id: int, actor: str, notes: str) -> Violation:
        """Mark an open violation as resolved.

        Raises:
            ValueError: Actor or notes missing
            ViolationNotFoundError: No such violation
            InvalidTransitionError: The violation is not open
        """
        return self._transition(violation_id, actor, notes, ResolutionState.RESOLVED, ViolationEventType.RESOLVED)

    def mark_false_positive(self, violation_id: int, actor: str, notes: str) -> Violation:
        """Mark an open violation as a false positive (same errors as ``resolve``)."""
        return self._transition(
            violation_id, actor, notes, ResolutionState.FALSE_POSITIVE, ViolationEventType.FALSE_POSITIVE,
        )

    def bulk_resolve(self, violation_ids: Iterable[int], actor: str, notes: str) -> BulkResolveResult:
        """Resolve many violations at once.

        Ids that do not exist or are already closed are reported as skipped
        instead of failing the whole batch.
        """
        _require(actor, notes)
        result = BulkResolveResult()
        for violation_id in dict.fromkeys(violation_ids):
            try:
                self.resolve(violation_id, actor, notes)
            except ViolationNotFoundError:
                result.skipped.append(SkippedViolation(violation_id=violation_id, reason="not found"))
            except InvalidTransitionError as e:
                result.skipped.append(SkippedViolation(violation_id=violation_id, reason=str(e)))
            else:
                result.resolved.append(violation_id)

        logger.info(
            "%s bulk-resolved %d violations (%d skipped)", actor, len(result.resolved), len(result.skipped),
        )
        return result

    def _transition(
        self,
        violation_id: int,
        actor: str,
        notes: str,
        state: ResolutionState,
        event_type: ViolationEventType,
    ) -> Violation:
        _require(actor, notes)
        current = self.repo.get(violation_id)
        if current is None:
            raise ViolationNotFoundError(f"Violation {violation_id} not found")
        if not current.is_open:
            raise InvalidTransitionError(
                f"Violation {violation_id} is already {current.resolution_state}"
            )

        updated = self.repo.transition(violation_id, state, actor.strip(), notes.strip(), event_type)
        if updated is None:
            # Closed concurrently between the read and the update.
            raise InvalidTransitionError(f"Violation {violation_id} is no longer open")

        logger.info("Violation %d -> %s by %s", violation_id, state.value, actor)
        return updated

    # =========================================================================
    # Reads
    # =========================================================================

    def get_violations(self, criteria: ViolationFilter | None = None) -> list[Violation]:
        return self.repo.list_violations(criteria)

    def get_violation_history(self, violation_id: int) -> list[ViolationEvent]:
        if self.repo.get(violation_id) is None:
            raise ViolationNotFoundError(f"Violation {violation_id} not found")
        return self.repo.history(violation_id)

    def violation_statistics(self) -> ViolationStatistics:
        return self.repo.statistics()


def _require(actor: str, notes: str) -> None:
    if not actor or not actor.strip():
        raise ValueError("actor is required")
    if not notes or not notes.strip():
        raise ValueError("notes are required")
