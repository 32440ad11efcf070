"""
SafetyNet — Application Entry Point

FastAPI application serving the governance engine.

`uvicorn safetynet.main:app`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env file before any configuration is loaded
load_dotenv()

from safetynet import __version__
from safetynet.api.routers.governance import install_error_handlers
from safetynet.api.routers.governance import router as governance_router
from safetynet.clients.postgres import PostgresClient
from safetynet.config import load_config
from safetynet.primitives.common import HealthStatus
from safetynet.systems.governance.service import GovernanceService
from safetynet.telemetry.logging import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown sequence."""
    # ── 1. Load configuration ─────────────────────────────────
    config_path = os.environ.get("SAFETYNET_CONFIG_PATH", "config/default.yaml")
    config = load_config(config_path)
    app.state.config = config

    # ── 2. Set up logging ─────────────────────────────────────
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info("safetynet_starting", instance_id=config.instance_id, config_path=config_path)

    # ── 3. Connect storage ────────────────────────────────────
    governance_config = config.governance
    postgres: PostgresClient | None = None
    if "postgres" in (governance_config.store, governance_config.membership, governance_config.audit):
        postgres = PostgresClient(config.postgres)
        await postgres.connect()
    app.state.postgres = postgres

    # ── 4. Governance ─────────────────────────────────────────
    governance = GovernanceService.from_config(governance_config, postgres=postgres)
    await governance.initialize()
    app.state.governance = governance
    logger.info("safetynet_ready")

    yield

    # ── Shutdown ──────────────────────────────────────────────
    logger.info("safetynet_shutting_down")
    await governance.shutdown()
    if postgres is not None:
        await postgres.close()
    logger.info("safetynet_shutdown_complete")


# ─── FastAPI Application ─────────────────────────────────────────

app = FastAPI(
    title="SafetyNet",
    description="Member governance: proposals and weighted voting",
    version=__version__,
    lifespan=lifespan,
)

# CORS for frontend
_cors_origins = ["http://localhost:3000"]
# Allow additional origins via env var (comma-separated)
_extra_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "")
if _extra_origins:
    _cors_origins.extend(o.strip() for o in _extra_origins.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(governance_router)
install_error_handlers(app)


# ─── Health ───────────────────────────────────────────────────────


@app.get("/health")
async def health() -> dict[str, Any]:
    """System health check."""
    governance_health = await app.state.governance.health()
    postgres = app.state.postgres
    postgres_health = await postgres.health_check() if postgres is not None else {"status": "disabled"}

    overall = HealthStatus.HEALTHY
    if governance_health.get("status") != HealthStatus.HEALTHY.value:
        overall = HealthStatus.DEGRADED
    if postgres is not None and postgres_health.get("status") != "connected":
        overall = HealthStatus.DEGRADED

    return {
        "status": overall.value,
        "instance_id": app.state.config.instance_id,
        "systems": {
            "governance": governance_health,
            "postgres": postgres_health,
        },
    }
