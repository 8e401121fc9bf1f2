"""Persistence for rules, compiled plans, violations and QC runs."""

from edc_qc.storage.database import (
    get_db,
    get_engine,
    get_session,
    get_table_stats,
    init_db,
    reset_engine,
    set_db_path,
)

__all__ = [
    "get_db",
    "get_engine",
    "get_session",
    "get_table_stats",
    "init_db",
    "reset_engine",
    "set_db_path",
]
