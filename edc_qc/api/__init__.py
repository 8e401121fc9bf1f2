"""HTTP routers."""

from edc_qc.api.routes_qc import router as qc_router
from edc_qc.api.routes_rules import router as rules_router
from edc_qc.api.routes_validation import router as validation_router

__all__ = ["qc_router", "rules_router", "validation_router"]
