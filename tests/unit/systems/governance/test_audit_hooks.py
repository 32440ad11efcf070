"""
Unit tests for the audit sinks and the default implementation hook.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from safetynet.primitives.governance import AuditEvent, AuditEventType, Proposal, ProposalType
from safetynet.systems.governance.audit import (
    InMemoryAuditSink,
    LogAuditSink,
    PostgresAuditSink,
    record_safely,
)
from safetynet.systems.governance.hooks import LogImplementationHook


class _AsyncContext:
    def __init__(self, value=None) -> None:
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *exc):
        return False


def make_event(**kwargs) -> AuditEvent:
    defaults = {
        "type": AuditEventType.VOTE_CAST,
        "proposal_id": "prop-1",
        "voter_id": "bob",
        "payload": {"choice": "for", "weight": 2.0},
    }
    return AuditEvent(**{**defaults, **kwargs})


class TestRecordSafely:
    @pytest.mark.asyncio
    async def test_records(self):
        sink = InMemoryAuditSink()
        event = make_event()
        await record_safely(sink, event)
        assert sink.events == [event]

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self):
        sink = MagicMock()
        sink.record = AsyncMock(side_effect=ConnectionError("audit unreachable"))

        with capture_logs() as logs:
            await record_safely(sink, make_event())

        failures = [e for e in logs if e["event"] == "governance_audit_failed"]
        assert len(failures) == 1
        assert failures[0]["log_level"] == "warning"
        assert failures[0]["error"] == "audit unreachable"


class TestLogAuditSink:
    @pytest.mark.asyncio
    async def test_logs_event(self):
        with capture_logs() as logs:
            await LogAuditSink().record(make_event())
        assert logs[0]["event"] == "governance_audit"
        assert logs[0]["event_type"] == "vote_cast"
        assert logs[0]["payload"] == {"choice": "for", "weight": 2.0}


class TestPostgresAuditSink:
    @pytest.mark.asyncio
    async def test_appends_row(self):
        conn = MagicMock()
        conn.execute = AsyncMock()
        postgres = MagicMock()
        postgres.pool.acquire = MagicMock(return_value=_AsyncContext(conn))
        event = make_event()

        await PostgresAuditSink(postgres).record(event)

        conn.execute.assert_awaited_once()
        args = conn.execute.await_args.args
        assert "INSERT INTO governance_audit" in args[0]
        assert args[1] == event.id
        assert args[3] == "vote_cast"
        assert args[6] == '{"choice": "for", "weight": 2.0}'


class TestLogImplementationHook:
    @pytest.mark.asyncio
    async def test_logs_changes(self):
        proposal = Proposal(
            title="Raise fees",
            description="x" * 60,
            proposal_type=ProposalType.PARAMETER_UPDATE,
            proposed_changes={"fee": 3},
        )
        with capture_logs() as logs:
            await LogImplementationHook().apply(proposal)
        assert logs[0]["event"] == "proposal_changes_pending_implementation"
        assert logs[0]["proposal_id"] == proposal.id
        assert logs[0]["changes"] == {"fee": 3}
