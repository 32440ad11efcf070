"""
SafetyNet — Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable governance parameter lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    # Identity of the caller, set by the upstream auth proxy
    member_id_header: str = "X-Member-Id"


class PostgresConfig(BaseModel):
    host: str = "postgres"
    port: int = 5432
    database: str = "safetynet"
    username: str = "safetynet"
    password: str = "safetynet_dev"
    pool_size: int = 10
    ssl: bool = False

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class GovernanceConfig(BaseModel):
    default_quorum_fraction: float = 0.6
    default_voting_period_days: int = 7
    max_voting_period_days: int = 30
    # Members allowed to open voting on a draft
    admin_member_ids: list[str] = Field(default_factory=list)
    # Deadline sweep: finalizes proposals nobody voted on after their window
    sweep_enabled: bool = True
    sweep_interval_s: float = 60.0
    store: Literal["memory", "postgres"] = "postgres"
    membership: Literal["memory", "postgres"] = "postgres"
    audit: Literal["log", "postgres"] = "postgres"

    @model_validator(mode="after")
    def _check_defaults(self) -> GovernanceConfig:
        if not 0.0 < self.default_quorum_fraction <= 1.0:
            raise ValueError("default_quorum_fraction must be in (0, 1]")
        if not 1 <= self.default_voting_period_days <= self.max_voting_period_days:
            raise ValueError("default_voting_period_days must be in [1, max_voting_period_days]")
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class SafetyNetConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="SAFETYNET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "safetynet-default"

    server: ServerConfig = Field(default_factory=ServerConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    governance: GovernanceConfig = Field(default_factory=GovernanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path | None = None) -> SafetyNetConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets from environment
    if pg_host := os.environ.get("SAFETYNET_POSTGRES__HOST"):
        raw.setdefault("postgres", {})["host"] = pg_host
    if pg_port := os.environ.get("SAFETYNET_POSTGRES__PORT"):
        raw.setdefault("postgres", {})["port"] = int(pg_port)
    if pg_db := os.environ.get("SAFETYNET_POSTGRES__DATABASE"):
        raw.setdefault("postgres", {})["database"] = pg_db
    if pg_user := os.environ.get("SAFETYNET_POSTGRES__USERNAME"):
        raw.setdefault("postgres", {})["username"] = pg_user
    if pg_pw := os.environ.get("SAFETYNET_POSTGRES_PASSWORD"):
        raw.setdefault("postgres", {})["password"] = pg_pw
    if pg_ssl := os.environ.get("SAFETYNET_POSTGRES__SSL"):
        raw.setdefault("postgres", {})["ssl"] = pg_ssl.lower() in ("true", "1", "yes")
    if log_level := os.environ.get("SAFETYNET_LOGGING__LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
    if instance_id := os.environ.get("SAFETYNET_INSTANCE_ID"):
        raw["instance_id"] = instance_id

    return SafetyNetConfig(**raw)
