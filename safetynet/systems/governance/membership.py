"""
SafetyNet — Membership Directory

Read-only view of who may vote and what they hold. The directory is owned
by the membership system; governance only reads it, and re-reads it at
every evaluation so a status change is picked up immediately.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from safetynet.primitives.governance import EligibleVoter, TokenHolding
from safetynet.systems.governance.postgres_store import storage_errors

if TYPE_CHECKING:
    from safetynet.clients.postgres import PostgresClient

ACTIVE_STATUS = "active"


class BaseMembershipDirectory(ABC):
    """Resolves members to membership status and governance-token holdings."""

    @abstractmethod
    async def list_eligible_voters(self) -> list[EligibleVoter]:
        """Every currently active member with their holdings."""
        ...

    @abstractmethod
    async def is_active_member(self, member_id: str) -> bool:
        ...

    @abstractmethod
    async def get_token_holdings(self, member_id: str) -> list[TokenHolding]:
        """Holdings used to snapshot a vote's weight."""
        ...


class InMemoryMembershipDirectory(BaseMembershipDirectory):
    """Process-local directory. Used in tests and single-node dev setups."""

    def __init__(self) -> None:
        self._status: dict[str, str] = {}
        self._holdings: dict[str, list[TokenHolding]] = {}

    def add_member(
        self,
        member_id: str,
        holdings: list[TokenHolding] | None = None,
        status: str = ACTIVE_STATUS,
    ) -> None:
        self._status[member_id] = status
        self._holdings[member_id] = list(holdings or [])

    def set_status(self, member_id: str, status: str) -> None:
        self._status[member_id] = status

    def set_holdings(self, member_id: str, holdings: list[TokenHolding]) -> None:
        self._holdings[member_id] = list(holdings)

    async def list_eligible_voters(self) -> list[EligibleVoter]:
        return [
            EligibleVoter(member_id=member_id, token_holdings=list(self._holdings.get(member_id, [])))
            for member_id, status in self._status.items()
            if status == ACTIVE_STATUS
        ]

    async def is_active_member(self, member_id: str) -> bool:
        return self._status.get(member_id) == ACTIVE_STATUS

    async def get_token_holdings(self, member_id: str) -> list[TokenHolding]:
        return list(self._holdings.get(member_id, []))


class PostgresMembershipDirectory(BaseMembershipDirectory):
    """
    Reads the membership tables written by the membership system.

    Governance tokens live in ``member_tokens`` with untyped registry
    metadata; each row is normalised through ``TokenHolding.from_metadata``.
    """

    def __init__(self, postgres: PostgresClient) -> None:
        self._pg = postgres

    async def list_eligible_voters(self) -> list[EligibleVoter]:
        with storage_errors("list_eligible_voters", event="membership_read_failed"):
            async with self._pg.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT m.id AS member_id, t.token_id, t.metadata
                    FROM members m
                    LEFT JOIN member_tokens t
                        ON t.member_id = m.id AND t.token_type = 'governance'
                    WHERE m.membership_status = $1
                    ORDER BY m.id
                    """,
                    ACTIVE_STATUS,
                )

        voters: dict[str, EligibleVoter] = {}
        for row in rows:
            voter = voters.setdefault(row["member_id"], EligibleVoter(member_id=row["member_id"]))
            if row["token_id"] is not None:
                voter.token_holdings.append(
                    TokenHolding.from_metadata(row["token_id"], _decode(row["metadata"]))
                )
        return list(voters.values())

    async def is_active_member(self, member_id: str) -> bool:
        with storage_errors("is_active_member", event="membership_read_failed"):
            async with self._pg.pool.acquire() as conn:
                status = await conn.fetchval(
                    "SELECT membership_status FROM members WHERE id = $1", member_id
                )
        return status == ACTIVE_STATUS

    async def get_token_holdings(self, member_id: str) -> list[TokenHolding]:
        with storage_errors("get_token_holdings", event="membership_read_failed"):
            async with self._pg.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT token_id, metadata FROM member_tokens
                    WHERE member_id = $1 AND token_type = 'governance'
                    ORDER BY token_id
                    """,
                    member_id,
                )
        return [TokenHolding.from_metadata(r["token_id"], _decode(r["metadata"])) for r in rows]


def _decode(metadata: Any) -> Any:
    # asyncpg returns JSONB as text unless a codec is registered
    if isinstance(metadata, str):
        try:
            return json.loads(metadata)
        except json.JSONDecodeError:
            return None
    return metadata
