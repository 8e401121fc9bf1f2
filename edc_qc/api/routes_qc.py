"""Batch QC endpoints: runs, violations and the resolution workflow."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from edc_qc.core.errors import InvalidTransitionError, RunInProgressError, ViolationNotFoundError
from edc_qc.qc.engine import get_data_store, get_qc_engine
from edc_qc.qc.models import RunTrigger
from edc_qc.qc.resolution import ResolutionService
from edc_qc.qc.schemas import BulkResolveResult, RunSummary, ViolationFilter, ViolationStatistics


router = APIRouter(prefix="/qc", tags=["qc"])


# =============================================================================
# Request Models
# =============================================================================

class RunRequest(BaseModel):
    """Request to start a QC run."""
    trigger: RunTrigger = RunTrigger.MANUAL


class ResolveRequest(BaseModel):
    """Who resolves a violation and why."""
    actor: str = Field(..., min_length=1)
    notes: str = Field(..., min_length=1)


class BulkResolveRequest(ResolveRequest):
    """Resolve several violations with one reason."""
    violation_ids: list[int] = Field(..., min_length=1)


# =============================================================================
# Runs
# =============================================================================

@router.post("/runs", response_model=RunSummary)
def start_run(request: RunRequest | None = None) -> RunSummary:
    """Run every active batch rule now. Returns when the run has finished."""
    trigger = request.trigger if request else RunTrigger.MANUAL
    try:
        return get_qc_engine().run_all(get_data_store(), trigger=trigger)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/runs/cancel")
def cancel_run() -> dict[str, Any]:
    """Ask the active run to stop before its next rule."""
    run_id = get_qc_engine().cancel()
    if run_id is None:
        raise HTTPException(status_code=404, detail="No QC run in progress")
    return {"run_id": run_id, "status": "cancelling"}


@router.get("/runs", response_model=list[RunSummary])
def list_runs(limit: int = Query(default=20, ge=1, le=500)) -> list[RunSummary]:
    """Most recent runs first."""
    return get_qc_engine().get_run_history(limit)


@router.get("/runs/{run_id}", response_model=RunSummary)
def get_run(run_id: str) -> RunSummary:
    """One run with its per-rule outcomes."""
    summary = get_qc_engine().get_run(run_id)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return summary


# =============================================================================
# Violations
# =============================================================================

@router.get("/violations")
def list_violations(
    rule_id: str | None = None,
    subject_id: str | None = None,
    field: str | None = None,
    state: str | None = None,
    severity: str | None = None,
    run_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[dict[str, Any]]:
    """Violations matching every given criterion."""
    criteria = ViolationFilter(
        rule_id=rule_id,
        subject_id=subject_id,
        field=field,
        state=state,
        severity=severity,
        run_id=run_id,
        limit=limit,
        offset=offset,
    )
    return [v.to_dict() for v in ResolutionService().get_violations(criteria)]


@router.get("/violations/stats", response_model=ViolationStatistics)
def violation_stats() -> ViolationStatistics:
    """Violation counts by state, severity and rule."""
    return ResolutionService().violation_statistics()


@router.get("/violations/{violation_id}/history")
def violation_history(violation_id: int) -> list[dict[str, Any]]:
    """Every detection and transition of a violation, oldest first."""
    try:
        events = ResolutionService().get_violation_history(violation_id)
    except ViolationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [event.model_dump(mode="json") for event in events]


@router.post("/violations/{violation_id}/resolve")
def resolve_violation(violation_id: int, request: ResolveRequest) -> dict[str, Any]:
    """Close an open violation as resolved."""
    try:
        violation = ResolutionService().resolve(violation_id, request.actor, request.notes)
    except ViolationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return violation.to_dict()


@router.post("/violations/{violation_id}/false-positive")
def mark_false_positive(violation_id: int, request: ResolveRequest) -> dict[str, Any]:
    """Close an open violation as a false positive."""
    try:
        violation = ResolutionService().mark_false_positive(violation_id, request.actor, request.notes)
    except ViolationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return violation.to_dict()


@router.post("/violations/bulk-resolve", response_model=BulkResolveResult)
def bulk_resolve(request: BulkResolveRequest) -> BulkResolveResult:
    """Resolve many violations; closed or unknown ids are reported as skipped."""
    try:
        return ResolutionService().bulk_resolve(request.violation_ids, request.actor, request.notes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
