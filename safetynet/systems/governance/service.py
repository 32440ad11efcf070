"""
SafetyNet — Governance Service

Single interface for the governance core:
- Proposal authoring and activation
- Vote casting (one vote per member per proposal)
- Finalization, on every vote and by a periodic deadline sweep
- Status queries

The service wires the store, membership directory, audit sink and
implementation hook into the lifecycle controller and the vote ledger.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from safetynet.primitives.common import HealthStatus, SystemID, utc_now
from safetynet.systems.governance.audit import LogAuditSink, PostgresAuditSink
from safetynet.systems.governance.errors import StoreUnavailableError
from safetynet.systems.governance.hooks import LogImplementationHook
from safetynet.systems.governance.ledger import VoteLedger
from safetynet.systems.governance.lifecycle import ProposalLifecycleController
from safetynet.systems.governance.membership import (
    InMemoryMembershipDirectory,
    PostgresMembershipDirectory,
)
from safetynet.systems.governance.postgres_store import PostgresGovernanceStore
from safetynet.systems.governance.store import InMemoryGovernanceStore

if TYPE_CHECKING:
    from safetynet.clients.postgres import PostgresClient
    from safetynet.config import GovernanceConfig
    from safetynet.systems.governance.audit import BaseAuditSink
    from safetynet.systems.governance.hooks import BaseImplementationHook
    from safetynet.systems.governance.membership import BaseMembershipDirectory
    from safetynet.systems.governance.store import BaseGovernanceStore

logger = structlog.get_logger()


class GovernanceService:
    """
    The governance proposal lifecycle and weighted voting engine.
    """

    system_id: str = SystemID.GOVERNANCE.value

    def __init__(
        self,
        store: BaseGovernanceStore,
        directory: BaseMembershipDirectory,
        audit: BaseAuditSink,
        config: GovernanceConfig,
        hook: BaseImplementationHook | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._directory = directory
        self._config = config
        self.controller = ProposalLifecycleController(
            store=store,
            directory=directory,
            audit=audit,
            hook=hook or LogImplementationHook(),
            config=config,
            clock=clock,
        )
        self.ledger = VoteLedger(
            store=store,
            directory=directory,
            controller=self.controller,
            audit=audit,
        )
        self._running = False
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: GovernanceConfig,
        postgres: PostgresClient | None = None,
        hook: BaseImplementationHook | None = None,
    ) -> GovernanceService:
        """Build the service with the backends named in ``config``."""
        if postgres is None and "postgres" in (config.store, config.membership, config.audit):
            raise ValueError("a Postgres client is required for postgres-backed governance")

        store: BaseGovernanceStore
        if config.store == "postgres":
            store = PostgresGovernanceStore(postgres)  # type: ignore[arg-type]
        else:
            store = InMemoryGovernanceStore()

        directory: BaseMembershipDirectory
        if config.membership == "postgres":
            directory = PostgresMembershipDirectory(postgres)  # type: ignore[arg-type]
        else:
            directory = InMemoryMembershipDirectory()

        audit: BaseAuditSink
        if config.audit == "postgres":
            audit = PostgresAuditSink(postgres)  # type: ignore[arg-type]
        else:
            audit = LogAuditSink()

        return cls(store=store, directory=directory, audit=audit, config=config, hook=hook)

    @property
    def directory(self) -> BaseMembershipDirectory:
        return self._directory

    # ─── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Ensure the store is ready and start the deadline sweep."""
        await self._store.initialize()
        if self._config.sweep_enabled:
            self._running = True
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "governance_initialized",
            store=type(self._store).__name__,
            sweep_enabled=self._config.sweep_enabled,
        )

    async def shutdown(self) -> None:
        """Stop the sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        logger.info("governance_shutdown")

    async def _sweep_loop(self) -> None:
        """Background loop that finalizes proposals past their deadline."""
        while self._running:
            await asyncio.sleep(self._config.sweep_interval_s)
            try:
                await self.controller.finalize_expired()
            except StoreUnavailableError as e:
                logger.warning("governance_sweep_failed", error=str(e))

    async def health(self) -> dict[str, Any]:
        """Report store reachability."""
        try:
            await self._store.list_proposals(limit=1)
        except StoreUnavailableError as e:
            return {"status": HealthStatus.UNHEALTHY.value, "error": str(e)}
        return {
            "status": HealthStatus.HEALTHY.value,
            "sweep_running": self._sweep_task is not None and not self._sweep_task.done(),
        }
