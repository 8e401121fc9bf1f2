"""Rule authoring and catalog endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from edc_qc.core.errors import RuleError, RuleSyntaxError
from edc_qc.dsl import default_message, parse, to_text
from edc_qc.qc.engine import get_data_store, get_qc_engine
from edc_qc.qc.store import SqlDataStore
from edc_qc.rules.catalog import get_rule_catalog
from edc_qc.rules.loader import RuleConfigError
from edc_qc.runtime.cache import get_validator_cache


router = APIRouter(prefix="/rules", tags=["rules"])


# =============================================================================
# Request/Response Models
# =============================================================================

class RuleCheckRequest(BaseModel):
    """A candidate rule text typed by an author."""
    rule: str
    field: str = Field(..., min_length=1, description="Target field of the rule")


class RuleCheckResponse(BaseModel):
    """Every problem with a candidate rule; empty when it would compile."""
    valid: bool
    problems: list[dict]
    normalized: str | None = None
    default_message: str | None = None


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/check", response_model=RuleCheckResponse)
def check_rule(request: RuleCheckRequest) -> RuleCheckResponse:
    """Parse and type-check a rule without installing it."""
    problems = get_rule_catalog().check(request.rule, request.field)
    if problems:
        return RuleCheckResponse(valid=False, problems=problems)

    tree = parse(request.rule)
    return RuleCheckResponse(
        valid=True,
        problems=[],
        normalized=to_text(tree, request.field),
        default_message=default_message(tree, request.field),
    )


@router.post("/reload")
def reload_rules() -> dict[str, Any]:
    """Re-read rule and schema files, recompile everything and swap the cache."""
    catalog = get_rule_catalog()
    try:
        report = catalog.reload()
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuleConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    get_qc_engine().schema = catalog.schema
    return report.to_dict()


@router.get("/cache")
def get_cache_stats() -> dict[str, Any]:
    """What the validator cache currently holds."""
    return get_validator_cache().stats().model_dump(mode="json")


@router.get("")
def list_rules(active_only: bool = True) -> list[dict[str, Any]]:
    """Persisted rules with their versions and compile status."""
    return [record.to_dict() for record in get_rule_catalog().repo.get_all_rules(active_only=active_only)]


@router.get("/{rule_id}/plan")
def get_rule_plan(rule_id: str) -> dict[str, Any]:
    """Stored query plan of a batch rule, its SQL and index recommendations."""
    catalog = get_rule_catalog()
    rule = catalog.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")

    plan = catalog.get_plan(rule_id)
    if plan is None:
        if not rule.is_batch:
            raise HTTPException(status_code=404, detail=f"Rule {rule_id} is not a batch rule")
        try:
            plan = get_qc_engine().plan_for(rule)
        except RuleSyntaxError as e:
            raise HTTPException(status_code=400, detail=e.to_dict())
        except RuleError as e:
            raise HTTPException(status_code=400, detail=str(e))

    response: dict[str, Any] = {
        "rule_id": rule_id,
        "rule_version": rule.version,
        "plan": plan.model_dump(mode="json"),
        "index_ddl": [rec.ddl() for rec in plan.index_recommendations],
    }
    store = get_data_store()
    if isinstance(store, SqlDataStore):
        response["sql"] = store.explain(plan)
    return response


@router.get("/{rule_id}/versions")
def get_rule_versions(rule_id: str) -> list[dict[str, Any]]:
    """Version history of a rule."""
    catalog = get_rule_catalog()
    if catalog.get_rule(rule_id) is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return catalog.repo.get_versions(rule_id)
