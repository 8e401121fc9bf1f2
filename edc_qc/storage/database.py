"""
Database connection management and initialization.

Supports both SQLite (local dev, tests) and PostgreSQL (production) via
``EDC_QC_DATABASE_URL``. Rules and compiled plans live in raw-SQL tables
defined below; violations, their history and QC runs are SQLModel tables
created on the same engine.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlmodel import Session, SQLModel

from edc_qc.core.config import get_settings


# Global engine instance
_engine: Engine | None = None
_DB_PATH: Path | None = None


def _is_postgres() -> bool:
    """Check if using PostgreSQL database."""
    return get_database_url().startswith("postgresql")


def get_database_url() -> str:
    """Get database URL from settings or default to SQLite.

    Handles the ``postgres://`` URL form by converting to ``postgresql://``.
    An explicit ``set_db_path`` always wins (tests rely on it).
    """
    if _DB_PATH is not None:
        return f"sqlite:///{_DB_PATH}"

    database_url = get_settings().database_url
    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    return f"sqlite:///{get_db_path()}"


def get_db_path() -> Path:
    """Get the SQLite database file path (used when no database URL is set)."""
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path.cwd() / "data"
        data_dir.mkdir(exist_ok=True)
        return data_dir / "edc_qc.db"
    return _DB_PATH


def set_db_path(path: Path | str) -> None:
    """Set a custom database path (useful for testing)."""
    global _DB_PATH, _engine
    _DB_PATH = Path(path)
    _engine = None  # Reset engine when path changes


def get_engine() -> Engine:
    """Get SQLAlchemy engine for database operations."""
    global _engine
    if _engine is None:
        database_url = get_database_url()

        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False

        _engine = create_engine(database_url, echo=False, connect_args=connect_args)
    return _engine


def reset_engine() -> None:
    """Reset the engine (useful for testing or reconfiguration)."""
    global _engine, _DB_PATH
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _DB_PATH = None


@contextmanager
def get_db() -> Generator[Connection, None, None]:
    """Connection for the raw-SQL repositories (foreign keys enforced on SQLite).

    Usage:
        with get_db() as conn:
            row = conn.execute(text("SELECT version FROM rules WHERE rule_id = :id"), {"id": rule_id}).fetchone()
    """
    engine = get_engine()
    with engine.connect() as conn:
        if not _is_postgres():
            conn.execute(text("PRAGMA foreign_keys = ON"))
        yield conn


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get a SQLModel session on the shared engine.

    Objects stay readable after commit; callers use them once the session
    has closed.
    """
    with Session(get_engine(), expire_on_commit=False) as session:
        yield session


def init_db() -> None:
    """Initialize database schema.

    Creates all tables if they don't exist. Safe to call multiple times.
    """
    engine = get_engine()

    if not _is_postgres():
        raw_conn = engine.raw_connection()
        try:
            raw_conn.executescript(_SCHEMA)
            raw_conn.commit()
        finally:
            raw_conn.close()
    else:
        with engine.connect() as conn:
            for statement in _split_statements(_SCHEMA):
                conn.execute(text(statement))
            conn.commit()

    # Register SQLModel tables before create_all
    from edc_qc.qc import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def _split_statements(script: str) -> list[str]:
    """Split a DDL script into single statements, dropping comment lines."""
    statements = []
    current: list[str] = []
    for line in script.split("\n"):
        stripped = line.strip()
        if stripped.startswith("--"):
            continue
        current.append(line)
        if stripped.endswith(";"):
            statement = "\n".join(current).strip().rstrip(";").strip()
            if statement:
                statements.append(statement)
            current = []
    return statements


def get_table_stats() -> dict[str, int]:
    """Row count of every table in the rule and QC store."""
    table_names = inspect(get_engine()).get_table_names()
    with get_db() as conn:
        return {
            name: conn.execute(text(f"SELECT COUNT(*) FROM {name}")).scalar_one()
            for name in sorted(table_names)
        }


# =============================================================================
# Database Schema (SQLite, PostgreSQL-compatible design)
# =============================================================================

_SCHEMA = """
-- =============================================================================
-- RULE DEFINITIONS
-- =============================================================================
-- Current definition of every rule; one row per rule_id

CREATE TABLE IF NOT EXISTS rules (
    rule_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL DEFAULT 1,
    raw_text TEXT NOT NULL,
    target_field TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT 'real-time',     -- real-time, batch
    severity TEXT NOT NULL DEFAULT 'error',        -- error, warning
    category TEXT NOT NULL DEFAULT 'field',
    form TEXT,
    message TEXT,
    source_hash TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,

    -- Last compile outcome
    compile_status TEXT NOT NULL DEFAULT 'pending',  -- pending, compiled, failed
    compile_error TEXT,

    created_at TEXT NOT NULL DEFAULT (CURRENT_TIMESTAMP),
    updated_at TEXT NOT NULL DEFAULT (CURRENT_TIMESTAMP)
);

CREATE INDEX IF NOT EXISTS idx_rules_target_field ON rules(target_field);
CREATE INDEX IF NOT EXISTS idx_rules_context ON rules(context, is_active);

-- =============================================================================
-- RULE VERSION HISTORY
-- =============================================================================
-- Append-only: one row per (rule_id, version)

CREATE TABLE IF NOT EXISTS rule_versions (
    rule_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    raw_text TEXT NOT NULL,
    target_field TEXT NOT NULL,
    source_hash TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (CURRENT_TIMESTAMP),

    PRIMARY KEY (rule_id, version),
    FOREIGN KEY (rule_id) REFERENCES rules(rule_id) ON DELETE CASCADE
);

-- =============================================================================
-- COMPILED QUERY PLANS
-- =============================================================================
-- Batch plans, stored with the rule version and source hash they came from

CREATE TABLE IF NOT EXISTS query_plans (
    rule_id TEXT PRIMARY KEY,
    rule_version INTEGER NOT NULL,
    source_hash TEXT NOT NULL,
    schema_fingerprint TEXT,
    plan_kind TEXT NOT NULL,           -- filter, cross_visit, outlier, missing_data
    plan_json TEXT NOT NULL,
    compiled_at TEXT NOT NULL,

    FOREIGN KEY (rule_id) REFERENCES rules(rule_id) ON DELETE CASCADE
);
"""
