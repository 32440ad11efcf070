"""
Shared fixtures for the governance tests: an in-memory engine with a
controllable clock, a recording audit sink and a mocked implementation hook.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from safetynet.config import GovernanceConfig
from safetynet.primitives.governance import Proposal, TokenHolding
from safetynet.systems.governance.audit import InMemoryAuditSink
from safetynet.systems.governance.membership import InMemoryMembershipDirectory
from safetynet.systems.governance.service import GovernanceService
from safetynet.systems.governance.store import InMemoryGovernanceStore

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
DESCRIPTION = "Allocate part of the reserve to the community maintenance fund this quarter."
# Configured administrator; not a voting member
ADMIN = "steward"


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@dataclass
class Engine:
    service: GovernanceService
    store: InMemoryGovernanceStore
    directory: InMemoryMembershipDirectory
    audit: InMemoryAuditSink
    hook: MagicMock
    clock: Clock
    admin: str = ADMIN

    @property
    def controller(self):
        return self.service.controller

    @property
    def ledger(self):
        return self.service.ledger

    def add_member(self, member_id: str, weight: float | None = None, status: str = "active") -> None:
        """Add a member; ``weight`` becomes a single governance token's multiplier."""
        holdings = [] if weight is None else [
            TokenHolding(token_id=f"{member_id}-gov", weight_multiplier=weight)
        ]
        self.directory.add_member(member_id, holdings, status=status)

    async def draft(self, proposer: str = "alice", **kwargs) -> Proposal:
        defaults = {
            "title": "Top up the maintenance fund",
            "description": DESCRIPTION,
            "proposal_type": "treasury_allocation",
            "category": "treasury",
        }
        return await self.controller.create_proposal(proposer_id=proposer, **{**defaults, **kwargs})

    async def active(
        self,
        quorum: float = 0.6,
        days: int = 7,
        proposer: str = "alice",
        **kwargs,
    ) -> Proposal:
        proposal = await self.draft(proposer=proposer, **kwargs)
        return await self.controller.activate(proposal.id, quorum, days, actor_id=self.admin)


def make_config(**kwargs) -> GovernanceConfig:
    defaults = {
        "store": "memory",
        "membership": "memory",
        "audit": "log",
        "sweep_enabled": False,
        "admin_member_ids": [ADMIN],
    }
    return GovernanceConfig(**{**defaults, **kwargs})


def make_hook() -> MagicMock:
    hook = MagicMock()
    hook.apply = AsyncMock()
    return hook


def make_engine(directory: InMemoryMembershipDirectory | None = None) -> Engine:
    clock = Clock()
    store = InMemoryGovernanceStore()
    directory = directory or InMemoryMembershipDirectory()
    audit = InMemoryAuditSink()
    hook = make_hook()
    service = GovernanceService(
        store=store,
        directory=directory,
        audit=audit,
        config=make_config(),
        hook=hook,
        clock=clock,
    )
    engine = Engine(service=service, store=store, directory=directory, audit=audit, hook=hook, clock=clock)
    engine.add_member("alice")
    return engine


class YieldingDirectory(InMemoryMembershipDirectory):
    """Suspends on every read, like a real round trip, so coroutines interleave."""

    async def list_eligible_voters(self):
        await asyncio.sleep(0)
        return await super().list_eligible_voters()

    async def is_active_member(self, member_id: str) -> bool:
        await asyncio.sleep(0)
        return await super().is_active_member(member_id)

    async def get_token_holdings(self, member_id: str):
        await asyncio.sleep(0)
        return await super().get_token_holdings(member_id)


@pytest.fixture
def engine() -> Engine:
    return make_engine()


@pytest.fixture
def racing_engine() -> Engine:
    return make_engine(directory=YieldingDirectory())
