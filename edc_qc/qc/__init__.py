"""Batch QC: query execution, violation tracking and resolution."""

from edc_qc.qc.engine import CancellationToken, QCEngine, get_qc_engine, run_qc
from edc_qc.qc.resolution import ResolutionService
from edc_qc.qc.schemas import RunSummary, ViolationFilter
from edc_qc.qc.store import SqlDataStore, ViolationRow

__all__ = [
    "CancellationToken",
    "QCEngine",
    "ResolutionService",
    "RunSummary",
    "SqlDataStore",
    "ViolationFilter",
    "ViolationRow",
    "get_qc_engine",
    "run_qc",
]
