"""Application configuration and feature flags."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API
    app_name: str = "EDC Validation Rule Compiler"
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    database_url: str | None = None
    """Rule, plan, violation and run store. Defaults to a SQLite file under data/."""

    data_database_url: str | None = None
    """Clinical data store the QC plans run against. Defaults to database_url."""

    # Rule configuration
    rules_file: str = "config/rules.yaml"
    schema_file: str = "config/schema.yaml"

    # Batch QC
    qc_default_trigger: str = "scheduled"

    model_config = {
        "env_prefix": "EDC_QC_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
