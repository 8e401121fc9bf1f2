"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from edc_qc.api import qc_router, rules_router, validation_router
from edc_qc.core.config import get_settings
from edc_qc.core.logs import configure_logging
from edc_qc.qc.engine import get_qc_engine
from edc_qc.rules.catalog import get_rule_catalog
from edc_qc.runtime.cache import get_validator_cache
from edc_qc.storage import get_table_stats, init_db

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting %s...", settings.app_name)

    init_db()

    catalog = get_rule_catalog()
    if Path(settings.rules_file).exists():
        report = catalog.reload()
        get_qc_engine().schema = catalog.schema
        logger.info("Rules loaded from %s: %s", settings.rules_file, report.to_dict())
    else:
        logger.warning("Rules file %s not found; starting with an empty rule set", settings.rules_file)

    yield

    # Shutdown
    logger.info("Shutting down...")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Validation rule compiler and batch QC engine for electronic data capture",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware - configurable via CORS_ORIGINS env var
    cors_origins_str = os.getenv("CORS_ORIGINS", "*")
    cors_origins = cors_origins_str.split(",") if cors_origins_str != "*" else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(validation_router)  # /validate
    app.include_router(rules_router)       # /rules
    app.include_router(qc_router)          # /qc

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": VERSION,
            "endpoints": {
                "validate": "/validate/* - Real-time field and form validation",
                "rules": "/rules/* - Rule checking, reload, cache and query plans",
                "qc": "/qc/* - Batch QC runs, violations and resolution",
            },
        }

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "cache_version": get_validator_cache().version,
            "active_run": get_qc_engine().active_run_id,
            "tables": get_table_stats(),
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("edc_qc.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
