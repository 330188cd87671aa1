"""Delegation engine — application configuration via environment variables."""

from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings


class DelegationSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (permission store) ──────────────────────────
    postgres_user: str = "delegation"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "delegation"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: str = ""  # overrides the postgres_* fields, e.g. sqlite:///delegation.db

    @property
    def database_url_sync(self) -> str:
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or self.database_url_sync

    # ── Market Data ────────────────────────────────────────────
    market_snapshot_url: str = ""
    market_snapshot_api_key: str = ""
    snapshot_timeout_seconds: float = 10.0

    # ── Auto-Revoke ────────────────────────────────────────────
    scan_interval_seconds: float = 300.0
    evaluation_workers: int = 4
    restrict_factor: Decimal = Decimal("0.5")
    escalation_threshold: float = 0.6
    rules_file: str = ""  # JSON rule set; empty installs the default rules

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = DelegationSettings()
