"""
SafetyNet — Postgres Governance Store

asyncpg implementation of the governance store, safe across many service
instances:

  - vote insert: ``SELECT ... FOR SHARE`` on the proposal row, re-check
    ACTIVE and the deadline, then INSERT; the primary key decides races
    between two votes from the same member.
  - finalize: ``SELECT ... FOR UPDATE`` on the proposal row, aggregate the
    votes, then ``UPDATE ... WHERE status = 'active'``. FOR UPDATE conflicts
    with the FOR SHARE taken by vote inserts, so no vote can land between
    the aggregation and the terminal write.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog

from safetynet.primitives.governance import (
    Proposal,
    ProposalStatus,
    ProposalType,
    Vote,
    VoteChoice,
    VoteTally,
)
from safetynet.systems.governance.errors import (
    AlreadyVotedError,
    NotFoundError,
    NotVotableError,
    StoreUnavailableError,
    VotingClosedError,
)
from safetynet.systems.governance.schema import ensure_governance_schema
from safetynet.systems.governance.store import DRAFT_FIELDS, BaseGovernanceStore, Decide

if TYPE_CHECKING:
    from datetime import datetime

    from safetynet.clients.postgres import PostgresClient

logger = structlog.get_logger()

_PROPOSAL_COLUMNS = """
    id, title, description, proposal_type, category, proposer_id, status,
    quorum_fraction, voting_period_days, proposed_changes, created_at,
    activated_at, voting_ends_at, for_power, against_power, abstain_power,
    eligible_power, quorum_reached, finalized_at
"""


@contextmanager
def storage_errors(operation: str, event: str = "governance_store_failed") -> Iterator[None]:
    """Translate driver and network failures into a retryable store error."""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        logger.error(event, operation=operation, error=str(e))
        raise StoreUnavailableError(operation) from e


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _encode_json(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _row_to_proposal(row: asyncpg.Record) -> Proposal:
    data = dict(row)
    data["proposed_changes"] = _decode_json(data["proposed_changes"])
    return Proposal(**data)


def _row_to_vote(row: asyncpg.Record) -> Vote:
    return Vote(**dict(row))


class PostgresGovernanceStore(BaseGovernanceStore):
    """Governance store backed by the ``governance_*`` tables."""

    def __init__(self, postgres: PostgresClient) -> None:
        self._pg = postgres

    async def initialize(self) -> None:
        with storage_errors("initialize"):
            await ensure_governance_schema(self._pg)

    # ─── Proposals ────────────────────────────────────────────────

    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        with storage_errors("insert_proposal"):
            async with self._pg.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO governance_proposals
                        (id, title, description, proposal_type, category, proposer_id,
                         status, quorum_fraction, voting_period_days, proposed_changes,
                         created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11)
                    RETURNING {_PROPOSAL_COLUMNS}
                    """,
                    proposal.id,
                    proposal.title,
                    proposal.description,
                    proposal.proposal_type.value,
                    proposal.category,
                    proposal.proposer_id,
                    proposal.status.value,
                    proposal.quorum_fraction,
                    proposal.voting_period_days,
                    _encode_json(proposal.proposed_changes),
                    proposal.created_at,
                )
        return _row_to_proposal(row)

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        with storage_errors("get_proposal"):
            async with self._pg.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_PROPOSAL_COLUMNS} FROM governance_proposals WHERE id = $1",
                    proposal_id,
                )
        return _row_to_proposal(row) if row else None

    async def update_draft(self, proposal_id: str, fields: dict[str, Any]) -> Proposal | None:
        assignments: list[str] = []
        args: list[Any] = [proposal_id]
        for name, value in fields.items():
            if name not in DRAFT_FIELDS:
                continue
            if name == "proposed_changes":
                args.append(_encode_json(value))
                assignments.append(f"{name} = ${len(args)}::jsonb")
            else:
                args.append(value.value if isinstance(value, ProposalType) else value)
                assignments.append(f"{name} = ${len(args)}")
        if not assignments:
            proposal = await self.get_proposal(proposal_id)
            return proposal if proposal and proposal.status == ProposalStatus.DRAFT else None

        with storage_errors("update_draft"):
            async with self._pg.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE governance_proposals SET {", ".join(assignments)}
                    WHERE id = $1 AND status = 'draft'
                    RETURNING {_PROPOSAL_COLUMNS}
                    """,
                    *args,
                )
        return _row_to_proposal(row) if row else None

    async def delete_draft(self, proposal_id: str) -> bool:
        with storage_errors("delete_draft"):
            async with self._pg.pool.acquire() as conn:
                deleted = await conn.fetchval(
                    """
                    DELETE FROM governance_proposals
                    WHERE id = $1 AND status = 'draft'
                    RETURNING id
                    """,
                    proposal_id,
                )
        return deleted is not None

    async def activate(
        self,
        proposal_id: str,
        quorum_fraction: float,
        voting_period_days: int,
        activated_at: datetime,
        voting_ends_at: datetime,
    ) -> Proposal | None:
        with storage_errors("activate"):
            async with self._pg.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE governance_proposals
                    SET status = 'active',
                        quorum_fraction = $2,
                        voting_period_days = $3,
                        activated_at = $4,
                        voting_ends_at = $5
                    WHERE id = $1 AND status = 'draft'
                    RETURNING {_PROPOSAL_COLUMNS}
                    """,
                    proposal_id,
                    quorum_fraction,
                    voting_period_days,
                    activated_at,
                    voting_ends_at,
                )
        return _row_to_proposal(row) if row else None

    async def list_proposals(
        self,
        status: ProposalStatus | None = None,
        proposal_type: ProposalType | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Proposal], int]:
        where = """
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::text IS NULL OR proposal_type = $2)
              AND ($3::text IS NULL OR category = $3)
        """
        filters = (
            status.value if status else None,
            proposal_type.value if proposal_type else None,
            category,
        )
        with storage_errors("list_proposals"):
            async with self._pg.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_PROPOSAL_COLUMNS} FROM governance_proposals {where}
                    ORDER BY created_at DESC, id DESC
                    OFFSET $4 LIMIT $5
                    """,
                    *filters,
                    offset,
                    limit,
                )
                total = await conn.fetchval(
                    f"SELECT COUNT(*) FROM governance_proposals {where}", *filters
                )
        return [_row_to_proposal(r) for r in rows], int(total or 0)

    async def list_expired_active(self, now: datetime) -> list[str]:
        with storage_errors("list_expired_active"):
            async with self._pg.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id FROM governance_proposals
                    WHERE status = 'active' AND voting_ends_at <= $1
                    ORDER BY voting_ends_at
                    """,
                    now,
                )
        return [r["id"] for r in rows]

    async def finalize(
        self,
        proposal_id: str,
        decide: Decide,
        finalized_at: datetime,
    ) -> tuple[Proposal, bool]:
        with storage_errors("finalize"):
            async with self._pg.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        SELECT {_PROPOSAL_COLUMNS} FROM governance_proposals
                        WHERE id = $1 FOR UPDATE
                        """,
                        proposal_id,
                    )
                    if row is None:
                        raise NotFoundError()
                    proposal = _row_to_proposal(row)
                    if proposal.status != ProposalStatus.ACTIVE:
                        return proposal, False

                    evaluation = decide(proposal, await self._tally(conn, proposal_id))
                    if evaluation.outcome is None:
                        return proposal, False

                    updated = await conn.fetchrow(
                        f"""
                        UPDATE governance_proposals
                        SET status = $2,
                            for_power = $3,
                            against_power = $4,
                            abstain_power = $5,
                            eligible_power = $6,
                            quorum_reached = $7,
                            finalized_at = $8
                        WHERE id = $1 AND status = 'active'
                        RETURNING {_PROPOSAL_COLUMNS}
                        """,
                        proposal_id,
                        evaluation.outcome.value,
                        evaluation.for_power,
                        evaluation.against_power,
                        evaluation.abstain_power,
                        evaluation.eligible_power,
                        evaluation.quorum_reached,
                        finalized_at,
                    )
        if updated is None:
            # Lost the conditional update; report what the winner stored
            current = await self.get_proposal(proposal_id)
            if current is None:
                raise NotFoundError()
            return current, False
        return _row_to_proposal(updated), True

    # ─── Votes ────────────────────────────────────────────────────

    async def insert_vote(self, vote: Vote, now: datetime) -> Vote:
        with storage_errors("insert_vote"):
            async with self._pg.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        SELECT status, voting_ends_at FROM governance_proposals
                        WHERE id = $1 FOR SHARE
                        """,
                        vote.proposal_id,
                    )
                    if row is None:
                        raise NotFoundError()
                    if row["status"] != ProposalStatus.ACTIVE.value:
                        raise NotVotableError()
                    if row["voting_ends_at"] is not None and now >= row["voting_ends_at"]:
                        raise VotingClosedError()
                    try:
                        await conn.execute(
                            """
                            INSERT INTO governance_votes
                                (proposal_id, voter_id, choice, weight, rationale, cast_at)
                            VALUES ($1, $2, $3, $4, $5, $6)
                            """,
                            vote.proposal_id,
                            vote.voter_id,
                            vote.choice.value,
                            vote.weight,
                            vote.rationale,
                            vote.cast_at,
                        )
                    except asyncpg.UniqueViolationError:
                        raise AlreadyVotedError() from None
        return vote

    async def get_vote(self, proposal_id: str, voter_id: str) -> Vote | None:
        with storage_errors("get_vote"):
            async with self._pg.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT proposal_id, voter_id, choice, weight, rationale, cast_at
                    FROM governance_votes WHERE proposal_id = $1 AND voter_id = $2
                    """,
                    proposal_id,
                    voter_id,
                )
        return _row_to_vote(row) if row else None

    async def list_votes_by_voter(
        self, voter_id: str, offset: int = 0, limit: int = 10
    ) -> tuple[list[Vote], int]:
        with storage_errors("list_votes_by_voter"):
            async with self._pg.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT proposal_id, voter_id, choice, weight, rationale, cast_at
                    FROM governance_votes WHERE voter_id = $1
                    ORDER BY cast_at DESC
                    OFFSET $2 LIMIT $3
                    """,
                    voter_id,
                    offset,
                    limit,
                )
                total = await conn.fetchval(
                    "SELECT COUNT(*) FROM governance_votes WHERE voter_id = $1", voter_id
                )
        return [_row_to_vote(r) for r in rows], int(total or 0)

    async def tally_votes(self, proposal_id: str) -> VoteTally:
        with storage_errors("tally_votes"):
            async with self._pg.pool.acquire() as conn:
                return await self._tally(conn, proposal_id)

    async def _tally(self, conn: asyncpg.Connection, proposal_id: str) -> VoteTally:
        rows = await conn.fetch(
            """
            SELECT choice, COALESCE(SUM(weight), 0) AS power, COUNT(*) AS n
            FROM governance_votes WHERE proposal_id = $1
            GROUP BY choice
            """,
            proposal_id,
        )
        tally = VoteTally()
        for row in rows:
            choice = VoteChoice(row["choice"])
            if choice == VoteChoice.FOR:
                tally.for_power = float(row["power"])
            elif choice == VoteChoice.AGAINST:
                tally.against_power = float(row["power"])
            else:
                tally.abstain_power = float(row["power"])
            tally.vote_count += int(row["n"])
        return tally
