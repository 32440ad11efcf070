"""
SafetyNet — Governance Audit Sink

Append-only record of every proposal state change and every vote.
Recording is fire-and-forget: ``record_safely`` logs and swallows sink
failures so an already-committed vote or finalization is never reported
as failed.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from safetynet.clients.postgres import PostgresClient
    from safetynet.primitives.governance import AuditEvent

logger = structlog.get_logger()


class BaseAuditSink(ABC):
    """Consumes audit events. Never mutates governance state."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        ...


class LogAuditSink(BaseAuditSink):
    """Writes audit events to the structured log only."""

    async def record(self, event: AuditEvent) -> None:
        logger.info(
            "governance_audit",
            audit_id=event.id,
            event_type=event.type.value,
            proposal_id=event.proposal_id,
            voter_id=event.voter_id,
            payload=event.payload,
        )


class InMemoryAuditSink(BaseAuditSink):
    """Keeps events in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)


class PostgresAuditSink(BaseAuditSink):
    """Appends to the ``governance_audit`` table."""

    def __init__(self, postgres: PostgresClient) -> None:
        self._pg = postgres

    async def record(self, event: AuditEvent) -> None:
        async with self._pg.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO governance_audit
                    (id, recorded_at, event_type, proposal_id, voter_id, payload)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                event.id,
                event.recorded_at,
                event.type.value,
                event.proposal_id,
                event.voter_id,
                json.dumps(event.payload, default=str),
            )


async def record_safely(sink: BaseAuditSink, event: AuditEvent) -> None:
    """Record ``event``; a failing sink is logged, never raised."""
    try:
        await sink.record(event)
    except Exception as e:
        logger.warning(
            "governance_audit_failed",
            event_type=event.type.value,
            proposal_id=event.proposal_id,
            error=str(e),
        )
