"""Tests for the HTTP API."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from conftest import RULES, SCHEMA
from edc_qc.core.config import get_settings
from edc_qc.qc.engine import set_data_store

ENTRY_RULES = {
    "AGE_ENTRY": {"field": "age", "rule": "between 18 and 65"},
    "SEX_ENTRY": {"field": "sex", "rule": "in ('Male', 'Female')"},
    "PREGNANCY_ENTRY": {"field": "pregnant", "rule": "if sex == 'Female' then required endif"},
}


def write_config(path: Path, entry_rules: dict = ENTRY_RULES) -> None:
    rules = {rule_id: {**entry, "context": "batch"} for rule_id, entry in RULES.items()}
    rules.update(entry_rules)
    path.write_text(yaml.safe_dump({"rules": rules}), encoding="utf-8")


# =============================================================================
# Test Client Setup
# =============================================================================

@pytest.fixture
def rules_file(tmp_path: Path) -> Path:
    path = tmp_path / "rules.yaml"
    write_config(path)
    return path


@pytest.fixture
def client(tmp_path: Path, rules_file: Path, temp_database, data_store, monkeypatch):
    """Test client started on the sample schema, rules and data."""
    from edc_qc.main import create_app

    schema_file = tmp_path / "schema.yaml"
    schema_file.write_text(yaml.safe_dump(SCHEMA), encoding="utf-8")
    monkeypatch.setenv("EDC_QC_RULES_FILE", str(rules_file))
    monkeypatch.setenv("EDC_QC_SCHEMA_FILE", str(schema_file))
    get_settings.cache_clear()
    set_data_store(data_store)

    with TestClient(create_app()) as client:
        yield client


@pytest.fixture
def run(client):
    """A completed QC run over the sample data."""
    response = client.post("/qc/runs")
    assert response.status_code == 200
    return response.json()


def violation_ids(client, **params) -> list[int]:
    return [v["id"] for v in client.get("/qc/violations", params=params).json()]


# =============================================================================
# Application
# =============================================================================

class TestApplication:
    """Test root and health endpoints."""

    def test_root(self, client):
        """Test the endpoint index."""
        data = client.get("/").json()
        assert data["version"] == "0.1.0"
        assert set(data["endpoints"]) == {"validate", "rules", "qc"}

    def test_health_after_startup(self, client):
        """Test that startup loaded the configured rules."""
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["cache_version"] == 1
        assert data["active_run"] is None
        assert data["tables"]["rules"] == len(RULES) + len(ENTRY_RULES)


# =============================================================================
# Real-time validation
# =============================================================================

class TestValidation:
    """Test /validate endpoints."""

    def test_field_failure(self, client):
        """Test an out-of-range value."""
        data = client.post("/validate/field", json={"field": "age", "value": 17}).json()
        assert data["valid"] is False
        assert data["status"] == "fail"
        assert [e["rule_id"] for e in data["errors"]] == ["AGE_ENTRY"]
        assert data["errors"][0]["message"] == "age must be between 18 and 65"

    def test_field_uses_sibling_values(self, client):
        """Test a conditional rule that depends on another field."""
        response = client.post("/validate/field", json={"field": "pregnant", "value": "", "values": {"sex": "Female"}})
        assert response.json()["valid"] is False

        response = client.post("/validate/field", json={"field": "pregnant", "value": "", "values": {"sex": "Male"}})
        assert response.json()["valid"] is True

    def test_field_without_rules(self, client):
        """Test a field no cached rule targets."""
        data = client.post("/validate/field", json={"field": "heart_rate", "value": 300}).json()
        assert data["valid"] is True
        assert data["status"] == "pass"

    def test_form(self, client):
        """Test a whole-form submission."""
        data = client.post("/validate/form", json={"values": {"age": 40, "sex": "U", "heart_rate": 70}}).json()
        assert data["valid"] is False
        assert [e["rule_id"] for e in data["errors"]] == ["SEX_ENTRY"]
        assert data["fields_checked"] == ["age", "sex"]
        assert data["cache_version"] == 1

    def test_missing_field_name(self, client):
        """Test request validation."""
        assert client.post("/validate/field", json={"value": 1}).status_code == 422


# =============================================================================
# Rules
# =============================================================================

class TestRules:
    """Test /rules endpoints."""

    def test_check_valid(self, client):
        """Test that a valid rule returns its normalized form and message."""
        data = client.post("/rules/check", json={"rule": "BETWEEN 18 AND 65", "field": "age"}).json()
        assert data["valid"] is True
        assert data["problems"] == []
        assert data["default_message"] == "age must be between 18 and 65"
        assert data["normalized"]

    def test_check_syntax_error(self, client):
        """Test that syntax problems carry offset and fragment."""
        data = client.post("/rules/check", json={"rule": "between 18 and", "field": "age"}).json()
        assert data["valid"] is False
        assert data["problems"] == [{
            "type": "syntax",
            "message": data["problems"][0]["message"],
            "offset": 11,
            "fragment": "and",
        }]

    def test_check_semantic_error(self, client):
        """Test that every semantic issue is reported."""
        data = client.post("/rules/check", json={"rule": "heigth > 1 and sex > 1", "field": "age"}).json()
        codes = {p["code"] for p in data["problems"]}
        assert "unknown_field" in codes
        assert "type_mismatch" in codes

    def test_list_rules(self, client):
        """Test listing persisted rules."""
        rules = client.get("/rules").json()
        assert len(rules) == len(RULES) + len(ENTRY_RULES)
        assert all(r["compile_status"] == "compiled" for r in rules)

    def test_cache_stats(self, client):
        """Test cache diagnostics."""
        data = client.get("/rules/cache").json()
        assert data["version"] == 1
        assert data["rule_count"] == len(ENTRY_RULES)
        assert data["fields"]["age"] == ["AGE_ENTRY"]

    def test_plan(self, client):
        """Test the stored plan of a batch rule with SQL and index advice."""
        data = client.get("/rules/AGE_RANGE/plan").json()
        assert data["rule_version"] == 1
        assert data["plan"]["plan_kind"] == "filter"
        assert "records" in data["sql"]
        assert data["index_ddl"]

    def test_plan_not_found(self, client):
        """Test unknown and real-time rules."""
        assert client.get("/rules/NOPE/plan").status_code == 404
        assert client.get("/rules/AGE_ENTRY/plan").status_code == 404

    def test_reload_bumps_changed_rules(self, client, rules_file):
        """Test that reload picks up edited rule text."""
        write_config(rules_file, {**ENTRY_RULES, "AGE_ENTRY": {"field": "age", "rule": "between 21 and 65"}})

        data = client.post("/rules/reload").json()
        assert data["ok"] is True
        assert data["versions_bumped"] == ["AGE_ENTRY"]
        assert data["cache_version"] == 2

        versions = client.get("/rules/AGE_ENTRY/versions").json()
        assert [v["version"] for v in versions] == [1, 2]
        assert client.post("/validate/field", json={"field": "age", "value": 19}).json()["valid"] is False

    def test_reload_malformed_config(self, client, rules_file):
        """Test that a malformed file is rejected and the cache kept."""
        rules_file.write_text(yaml.safe_dump({"rules": {"A": {"field": "age"}}}), encoding="utf-8")

        assert client.post("/rules/reload").status_code == 400
        assert client.get("/rules/cache").json()["version"] == 1

    def test_versions_not_found(self, client):
        """Test versions of an unknown rule."""
        assert client.get("/rules/NOPE/versions").status_code == 404


# =============================================================================
# Batch QC
# =============================================================================

class TestQCRuns:
    """Test /qc/runs endpoints."""

    def test_start_run(self, run):
        """Test a run over the sample data."""
        assert run["status"] == "completed"
        assert run["rules_executed"] == len(RULES)
        assert run["violations_found"] == 11
        assert len(run["outcomes"]) == len(RULES)

    def test_run_history(self, client, run):
        """Test listing and fetching runs."""
        assert [r["run_id"] for r in client.get("/qc/runs").json()] == [run["run_id"]]
        stored = client.get(f"/qc/runs/{run['run_id']}").json()
        assert [o["rule_id"] for o in stored["outcomes"]] == sorted(RULES)
        assert client.get("/qc/runs/qc_missing").status_code == 404

    def test_scheduled_trigger(self, client):
        """Test starting a run with an explicit trigger."""
        data = client.post("/qc/runs", json={"trigger": "scheduled"}).json()
        assert data["trigger"] == "scheduled"

    def test_cancel_when_idle(self, client):
        """Test that cancelling without an active run is a 404."""
        assert client.post("/qc/runs/cancel").status_code == 404


class TestViolations:
    """Test violation queries and the resolution workflow."""

    def test_filters(self, client, run):
        """Test listing with criteria."""
        assert len(violation_ids(client)) == 11
        assert len(violation_ids(client, rule_id="AGE_RANGE")) == 2
        assert len(violation_ids(client, severity="warning")) == 1
        assert len(violation_ids(client, subject_id="S005")) == 1
        assert len(violation_ids(client, limit=3)) == 3

    def test_resolve(self, client, run):
        """Test resolving a violation and its history."""
        (violation_id,) = violation_ids(client, rule_id="WEIGHT_CHANGE")
        response = client.post(f"/qc/violations/{violation_id}/resolve", json={"actor": "dm", "notes": "Confirmed"})

        assert response.status_code == 200
        assert response.json()["resolution_state"] == "resolved"
        assert response.json()["is_open"] is False

        history = client.get(f"/qc/violations/{violation_id}/history").json()
        assert [e["event_type"] for e in history] == ["detected", "resolved"]

    def test_resolve_errors(self, client, run):
        """Test unknown ids, closed violations and missing actor."""
        (violation_id,) = violation_ids(client, rule_id="SEX_VALUES")
        body = {"actor": "dm", "notes": "ok"}

        assert client.post("/qc/violations/9999/resolve", json=body).status_code == 404
        assert client.post(f"/qc/violations/{violation_id}/false-positive", json=body).status_code == 200
        assert client.post(f"/qc/violations/{violation_id}/resolve", json=body).status_code == 409
        assert client.post(f"/qc/violations/{violation_id}/resolve", json={"actor": "", "notes": "x"}).status_code == 422
        assert client.get("/qc/violations/9999/history").status_code == 404

    def test_blank_actor(self, client, run):
        """Test that a whitespace-only actor is rejected."""
        (violation_id,) = violation_ids(client, rule_id="SEX_VALUES")
        response = client.post(f"/qc/violations/{violation_id}/resolve", json={"actor": "  ", "notes": "ok"})
        assert response.status_code == 400

    def test_bulk_resolve(self, client, run):
        """Test resolving several violations at once."""
        ids = violation_ids(client, rule_id="AGE_RANGE")
        data = client.post(
            "/qc/violations/bulk-resolve",
            json={"violation_ids": ids + [9999], "actor": "dm", "notes": "Source data verified"},
        ).json()

        assert data["resolved"] == ids
        assert data["skipped"] == [{"violation_id": 9999, "reason": "not found"}]
        assert violation_ids(client, rule_id="AGE_RANGE", state="open") == []

    def test_stats(self, client, run):
        """Test violation statistics."""
        (violation_id,) = violation_ids(client, rule_id="WEIGHT_CHANGE")
        client.post(f"/qc/violations/{violation_id}/resolve", json={"actor": "dm", "notes": "ok"})

        stats = client.get("/qc/violations/stats").json()
        assert stats["total"] == 11
        assert stats["by_state"] == {"open": 10, "resolved": 1}
        assert "WEIGHT_CHANGE" not in stats["open_by_rule"]
