"""Pytest fixtures for test suite."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from edc_qc.core.config import get_settings
from edc_qc.core.schema import TableSchema, schema_from_dict
from edc_qc.qc.engine import reset_qc_engine
from edc_qc.qc.store import SqlDataStore
from edc_qc.rules.catalog import reset_rule_catalog
from edc_qc.rules.models import Rule
from edc_qc.runtime.cache import reset_validator_cache
from edc_qc.storage.database import init_db, reset_engine, set_db_path


# =============================================================================
# Sample study
# =============================================================================

SCHEMA = {
    "table": "records",
    "fields": {
        "subject_code": {"type": "text"},
        "age": {"type": "integer"},
        "sex": {"type": "text", "choices": ["Male", "Female"]},
        "pregnant": {"type": "boolean"},
        "weight": {"type": "number"},
        "baseline_weight": {"type": "number"},
        "heart_rate": {"type": "number"},
        "visit_date": {"type": "date"},
        "consent_date": {"type": "date"},
        "lab_value": {"type": "number"},  # declared but not present in the data table
    },
    "populations": {
        "enrolled": {"table": "subjects"},
    },
}

RULES = {
    "AGE_RANGE": {"field": "age", "rule": "between 18 and 65"},
    "SEX_VALUES": {"field": "sex", "rule": "in ('Male', 'Female')"},
    "PREGNANCY_REQUIRED": {"field": "pregnant", "rule": "if sex == 'Female' then required endif"},
    "SUBJECT_CODE_FORMAT": {"field": "subject_code", "rule": "matches '^[A-Z]{3}-[0-9]{4}$'"},
    "WEIGHT_CHANGE": {"field": "weight", "rule": "within 10% of baseline_weight", "severity": "warning"},
    "VISIT_ORDER": {"field": "visit_date", "rule": "visit_date >= previous_visit_date"},
    "VISIT_NOT_FUTURE": {"field": "visit_date", "rule": "<= today"},
    "CONSENT_PRESENT": {"field": "consent_date", "rule": "required for all enrolled"},
}

COLUMNS = (
    "subject_id", "visit_id", "visit_seq", "subject_code", "age", "sex", "pregnant",
    "weight", "baseline_weight", "heart_rate", "visit_date", "consent_date",
)

RECORDS = [
    ("S001", "SCREENING", 1, "ABC-0001", 30, "Female", False, 100.0, 100.0, 70.0, "2024-01-01", "2023-12-20"),
    ("S001", "WEEK4", 2, "ABC-0001", 30, "Female", False, 105.0, 100.0, 72.0, "2024-01-29", "2023-12-20"),
    ("S002", "SCREENING", 1, "ABC-0002", 17, "Male", None, 100.0, 100.0, 68.0, "2024-01-05", "2024-01-01"),
    ("S002", "WEEK4", 2, "ABC-0002", 17, "Male", None, 115.0, 100.0, 70.0, "2024-01-03", "2024-01-01"),
    ("S003", "SCREENING", 1, "abc-3", 66, "Female", None, 80.0, 80.0, 71.0, "2024-01-10", None),
    ("S003", "WEEK4", 2, "abc-3", 66, "", None, 84.0, 80.0, 69.0, "2024-02-07", None),
    ("S004", "SCREENING", 1, "ABC-0004", 65, "Female", True, 60.0, 0.0, 73.0, "2024-01-12", "2024-01-02"),
    ("S004", "WEEK4", 2, "ABC-0004", None, "U", True, 61.0, 0.0, 70.0, "2024-02-09", "2024-01-02"),
]

SUBJECTS = ["S001", "S002", "S003", "S004", "S005"]

REFERENCE_DATE = date(2024, 2, 1)


def record_dicts() -> list[dict]:
    return [dict(zip(COLUMNS, row)) for row in RECORDS]


def make_rules(context: str = "batch", rules: dict | None = None) -> list[Rule]:
    """Build Rule objects from the compact mapping form."""
    return [
        Rule(
            rule_id=rule_id,
            target_field=entry["field"],
            raw_text=entry["rule"],
            context=entry.get("context", context),
            severity=entry.get("severity", "error"),
        )
        for rule_id, entry in (rules or RULES).items()
    ]


def create_data_database(url: str, records: list[tuple] | None = None, subjects: list[str] | None = None):
    """Create the clinical data tables and fill them."""
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE TABLE records (
                subject_id TEXT NOT NULL,
                visit_id TEXT NOT NULL,
                visit_seq INTEGER NOT NULL,
                subject_code TEXT,
                age INTEGER,
                sex TEXT,
                pregnant BOOLEAN,
                weight REAL,
                baseline_weight REAL,
                heart_rate REAL,
                visit_date DATE,
                consent_date DATE
            )
        """))
        conn.execute(text("CREATE TABLE subjects (subject_id TEXT PRIMARY KEY)"))

        placeholders = ", ".join(f":{name}" for name in COLUMNS)
        conn.execute(
            text(f"INSERT INTO records ({', '.join(COLUMNS)}) VALUES ({placeholders})"),
            [dict(zip(COLUMNS, row)) for row in (records if records is not None else RECORDS)],
        )
        conn.execute(
            text("INSERT INTO subjects (subject_id) VALUES (:subject_id)"),
            [{"subject_id": s} for s in (subjects if subjects is not None else SUBJECTS)],
        )
    return engine


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_globals():
    """Every test starts without cached settings, catalog, cache or engine."""
    get_settings.cache_clear()
    reset_validator_cache()
    reset_rule_catalog()
    reset_qc_engine()
    yield
    reset_validator_cache()
    reset_rule_catalog()
    reset_qc_engine()
    reset_engine()
    get_settings.cache_clear()


@pytest.fixture
def schema() -> TableSchema:
    """Sample study schema."""
    return schema_from_dict(SCHEMA)


@pytest.fixture
def temp_database(tmp_path: Path) -> Path:
    """Use a temporary rule/QC database for the test."""
    db_path = tmp_path / "edc_qc.db"
    set_db_path(db_path)
    init_db()
    return db_path


@pytest.fixture
def data_url(tmp_path: Path) -> str:
    """URL of a temporary clinical data database filled with the sample records."""
    url = f"sqlite:///{tmp_path / 'study.db'}"
    create_data_database(url).dispose()
    return url


@pytest.fixture
def data_store(data_url: str) -> SqlDataStore:
    """Data store over the sample records with a fixed reference date."""
    return SqlDataStore.from_url(data_url, today=lambda: REFERENCE_DATE)
