"""
SafetyNet — Common Primitives

Shared enums, base classes, and utilities used across all systems.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


# ─── Enums ────────────────────────────────────────────────────────


class SystemID(str, enum.Enum):
    GOVERNANCE = "governance"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ─── Base Models ──────────────────────────────────────────────────


class SNBaseModel(BaseModel):
    """Base model for all SafetyNet primitives. Uses ULID IDs and UTC timestamps."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class Identified(SNBaseModel):
    """Mixin for models with ULID IDs."""

    id: str = Field(default_factory=new_id)
