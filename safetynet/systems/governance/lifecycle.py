"""
SafetyNet — Proposal Lifecycle Controller

Owns every proposal state transition:

    DRAFT ──activate──▶ ACTIVE ──finalize──▶ PASSED | REJECTED

DRAFT proposals are authored, edited and deleted by their proposer.
Activation fixes the quorum fraction and voting deadline. Finalization is
the only automatic transition: it is attempted after every vote, on every
late vote, and by the deadline sweep, and it takes effect at most once per
proposal because the store performs it as a conditional write inside a
per-proposal critical section. Only the call that wins the transition
notifies the audit sink and the implementation hook.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from safetynet.primitives.common import utc_now
from safetynet.primitives.governance import (
    AuditEvent,
    AuditEventType,
    Evaluation,
    FinalizeResult,
    Proposal,
    ProposalStatus,
    ProposalStatusView,
    ProposalType,
    VoteTally,
)
from safetynet.systems.governance.audit import record_safely
from safetynet.systems.governance.errors import (
    GovernanceError,
    InvalidInputError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from safetynet.systems.governance.evaluator import evaluate, stored_evaluation
from safetynet.systems.governance.voting_power import total_power

if TYPE_CHECKING:
    from safetynet.config import GovernanceConfig
    from safetynet.systems.governance.audit import BaseAuditSink
    from safetynet.systems.governance.hooks import BaseImplementationHook
    from safetynet.systems.governance.membership import BaseMembershipDirectory
    from safetynet.systems.governance.store import BaseGovernanceStore

logger = structlog.get_logger()

TITLE_LENGTH = (5, 200)
DESCRIPTION_LENGTH = (50, 5000)
CATEGORY_LENGTH = (1, 100)
# Lowest quorum an author may request when drafting; activation accepts (0, 1]
MIN_REQUESTED_QUORUM = 0.1
MAX_PAGE_SIZE = 50


# ─── Input validation ─────────────────────────────────────────────


def validate_quorum_fraction(value: Any, minimum: float = 0.0) -> float:
    """Quorum must be a finite number in (0, 1] and no lower than ``minimum``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInputError("quorum fraction must be a number")
    quorum = float(value)
    if not math.isfinite(quorum) or not 0.0 < quorum <= 1.0:
        raise InvalidInputError("quorum fraction must be in (0, 1]")
    if quorum < minimum:
        raise InvalidInputError(f"quorum fraction must be at least {minimum}")
    return quorum


def validate_voting_period(value: Any, maximum: int) -> int:
    """Voting period is a whole, positive number of days, at most ``maximum``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError("voting period must be a whole number of days")
    if value <= 0:
        raise InvalidInputError("voting period must be at least one day")
    if value > maximum:
        raise InvalidInputError(f"voting period cannot exceed {maximum} days")
    return value


def _validate_text(name: str, value: Any, bounds: tuple[int, int]) -> str:
    if not isinstance(value, str):
        raise InvalidInputError(f"{name} must be text")
    text = value.strip()
    low, high = bounds
    if not low <= len(text) <= high:
        raise InvalidInputError(f"{name} must be between {low} and {high} characters")
    return text


def _parse_proposal_type(value: Any) -> ProposalType:
    if isinstance(value, ProposalType):
        return value
    try:
        return ProposalType(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(f"unknown proposal type: {value!r}") from None


def _validate_changes(value: Any) -> dict[str, Any] | None:
    if value is None or isinstance(value, dict):
        return value
    raise InvalidInputError("proposed changes must be an object")


def page_bounds(page: int, limit: int) -> tuple[int, int]:
    """Convert 1-based page/limit into (offset, limit), capping the page size."""
    if page < 1 or limit < 1:
        raise InvalidInputError("page and limit must be positive")
    limit = min(limit, MAX_PAGE_SIZE)
    return (page - 1) * limit, limit


# ─── Controller ───────────────────────────────────────────────────


class ProposalLifecycleController:
    """
    The proposal state machine.

    All reads that feed a decision (the proposal, its votes, the eligible
    voter set) are fresh store or directory round trips; nothing is cached
    across calls.
    """

    def __init__(
        self,
        store: BaseGovernanceStore,
        directory: BaseMembershipDirectory,
        audit: BaseAuditSink,
        hook: BaseImplementationHook,
        config: GovernanceConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._directory = directory
        self._audit = audit
        self._hook = hook
        self._config = config
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ─── Authoring ────────────────────────────────────────────────

    async def create_proposal(
        self,
        proposer_id: str,
        title: str,
        description: str,
        proposal_type: ProposalType | str = ProposalType.OTHER,
        category: str = "general",
        proposed_changes: dict[str, Any] | None = None,
        quorum_fraction: float | None = None,
        voting_period_days: int | None = None,
    ) -> Proposal:
        """Create a DRAFT proposal authored by an active member."""
        proposal = Proposal(
            title=_validate_text("title", title, TITLE_LENGTH),
            description=_validate_text("description", description, DESCRIPTION_LENGTH),
            proposal_type=_parse_proposal_type(proposal_type),
            category=_validate_text("category", category, CATEGORY_LENGTH),
            proposer_id=proposer_id,
            proposed_changes=_validate_changes(proposed_changes),
            quorum_fraction=(
                self._config.default_quorum_fraction
                if quorum_fraction is None
                else validate_quorum_fraction(quorum_fraction, MIN_REQUESTED_QUORUM)
            ),
            voting_period_days=(
                self._config.default_voting_period_days
                if voting_period_days is None
                else validate_voting_period(voting_period_days, self._config.max_voting_period_days)
            ),
            created_at=self.now(),
        )

        if not await self._directory.is_active_member(proposer_id):
            raise NotEligibleError("only active members can create proposals")

        stored = await self._store.insert_proposal(proposal)
        logger.info(
            "proposal_created",
            proposal_id=stored.id,
            proposer_id=proposer_id,
            proposal_type=stored.proposal_type.value,
        )
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.PROPOSAL_CREATED,
            proposal_id=stored.id,
            voter_id=proposer_id,
            payload={"title": stored.title, "proposal_type": stored.proposal_type.value},
        ))
        return stored

    async def update_draft(
        self, proposal_id: str, actor_id: str, changes: dict[str, Any]
    ) -> Proposal:
        """Edit a DRAFT. Only its author may, and only before activation."""
        proposal = await self._require_draft_owned_by(proposal_id, actor_id)

        fields: dict[str, Any] = {}
        if "title" in changes:
            fields["title"] = _validate_text("title", changes["title"], TITLE_LENGTH)
        if "description" in changes:
            fields["description"] = _validate_text(
                "description", changes["description"], DESCRIPTION_LENGTH
            )
        if "proposal_type" in changes:
            fields["proposal_type"] = _parse_proposal_type(changes["proposal_type"])
        if "category" in changes:
            fields["category"] = _validate_text("category", changes["category"], CATEGORY_LENGTH)
        if "proposed_changes" in changes:
            fields["proposed_changes"] = _validate_changes(changes["proposed_changes"])
        if "quorum_fraction" in changes:
            fields["quorum_fraction"] = validate_quorum_fraction(
                changes["quorum_fraction"], MIN_REQUESTED_QUORUM
            )
        if "voting_period_days" in changes:
            fields["voting_period_days"] = validate_voting_period(
                changes["voting_period_days"], self._config.max_voting_period_days
            )
        unknown = set(changes) - set(fields)
        if unknown:
            raise InvalidInputError(f"fields cannot be edited: {', '.join(sorted(unknown))}")

        updated = await self._store.update_draft(proposal.id, fields)
        if updated is None:
            raise InvalidStateError("only draft proposals can be edited")

        logger.info("proposal_updated", proposal_id=proposal_id, fields=sorted(fields))
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.PROPOSAL_UPDATED,
            proposal_id=proposal_id,
            voter_id=actor_id,
            payload={"fields": sorted(fields)},
        ))
        return updated

    async def delete_draft(self, proposal_id: str, actor_id: str) -> None:
        """Delete a DRAFT. ACTIVE and terminal proposals are never deleted."""
        await self._require_draft_owned_by(proposal_id, actor_id)
        if not await self._store.delete_draft(proposal_id):
            raise InvalidStateError("only draft proposals can be deleted")

        logger.info("proposal_deleted", proposal_id=proposal_id, actor_id=actor_id)
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.PROPOSAL_DELETED,
            proposal_id=proposal_id,
            voter_id=actor_id,
        ))

    async def _require_draft_owned_by(self, proposal_id: str, actor_id: str) -> Proposal:
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.proposer_id != actor_id:
            raise PermissionDeniedError()
        if proposal.status != ProposalStatus.DRAFT:
            raise InvalidStateError("only draft proposals can be changed")
        return proposal

    # ─── Activation ───────────────────────────────────────────────

    async def activate(
        self,
        proposal_id: str,
        quorum_fraction: Any,
        voting_period_days: Any,
        actor_id: str,
    ) -> Proposal:
        """
        Open voting: DRAFT -> ACTIVE. Sets the quorum fraction and the
        voting deadline, neither of which can change afterwards. Only
        configured administrators may activate.
        """
        quorum = validate_quorum_fraction(quorum_fraction)
        days = validate_voting_period(voting_period_days, self._config.max_voting_period_days)
        if actor_id not in self._config.admin_member_ids:
            raise PermissionDeniedError("only administrators can activate proposals")

        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.status != ProposalStatus.DRAFT:
            raise InvalidStateError("only draft proposals can be activated")

        now = self.now()
        activated = await self._store.activate(
            proposal_id,
            quorum_fraction=quorum,
            voting_period_days=days,
            activated_at=now,
            voting_ends_at=now + timedelta(days=days),
        )
        if activated is None:
            raise InvalidStateError("only draft proposals can be activated")

        logger.info(
            "proposal_activated",
            proposal_id=proposal_id,
            actor_id=actor_id,
            quorum_fraction=quorum,
            voting_ends_at=activated.voting_ends_at.isoformat() if activated.voting_ends_at else None,
        )
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.PROPOSAL_ACTIVATED,
            proposal_id=proposal_id,
            voter_id=actor_id,
            payload={
                "quorum_fraction": quorum,
                "voting_period_days": days,
                "voting_ends_at": activated.voting_ends_at.isoformat() if activated.voting_ends_at else None,
            },
        ))
        return activated

    # ─── Finalization ─────────────────────────────────────────────

    async def eligible_power(self) -> float:
        """Total power of the current eligible voter set, read fresh."""
        return total_power(await self._directory.list_eligible_voters())

    async def finalize(self, proposal_id: str) -> FinalizeResult:
        """
        Move an ACTIVE proposal to PASSED or REJECTED if quorum is reached
        or its window has ended. Idempotent: a terminal proposal returns its
        stored outcome without re-evaluating, writing, or calling the hook.
        """
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.status != ProposalStatus.ACTIVE:
            return FinalizeResult.from_proposal(proposal)

        eligible_power = await self.eligible_power()
        now = self.now()

        def decide(current: Proposal, tally: VoteTally) -> Evaluation:
            return evaluate(current, tally, eligible_power, now)

        stored, transitioned = await self._store.finalize(proposal_id, decide, finalized_at=now)
        if not transitioned:
            return FinalizeResult.from_proposal(stored)

        logger.info(
            "proposal_finalized",
            proposal_id=proposal_id,
            outcome=stored.status.value,
            for_power=stored.for_power,
            against_power=stored.against_power,
            abstain_power=stored.abstain_power,
            quorum_reached=stored.quorum_reached,
            eligible_power=eligible_power,
        )
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.PROPOSAL_FINALIZED,
            proposal_id=proposal_id,
            payload={
                "outcome": stored.status.value,
                "for_power": stored.for_power,
                "against_power": stored.against_power,
                "abstain_power": stored.abstain_power,
                "quorum_reached": stored.quorum_reached,
                "eligible_power": eligible_power,
            },
        ))

        if stored.status == ProposalStatus.PASSED and stored.has_changes:
            await self._implement(stored)

        return FinalizeResult.from_proposal(stored, transitioned=True)

    async def _implement(self, proposal: Proposal) -> None:
        try:
            await self._hook.apply(proposal)
        except Exception as e:
            logger.error("proposal_implementation_failed", proposal_id=proposal.id, error=str(e))
            await record_safely(self._audit, AuditEvent(
                type=AuditEventType.IMPLEMENTATION_FAILED,
                proposal_id=proposal.id,
                payload={"error": str(e)},
            ))
            return

        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.IMPLEMENTATION_APPLIED,
            proposal_id=proposal.id,
            payload={"changes": proposal.proposed_changes or {}},
        ))

    async def finalize_expired(self) -> list[FinalizeResult]:
        """Deadline sweep: finalize every ACTIVE proposal whose window has ended."""
        results: list[FinalizeResult] = []
        for proposal_id in await self._store.list_expired_active(self.now()):
            try:
                results.append(await self.finalize(proposal_id))
            except (GovernanceError, StoreUnavailableError) as e:
                logger.warning("proposal_sweep_finalize_failed", proposal_id=proposal_id, error=str(e))
        if results:
            logger.info(
                "proposal_sweep_complete",
                finalized=sum(1 for r in results if r.transitioned),
                checked=len(results),
            )
        return results

    # ─── Read-only ────────────────────────────────────────────────

    async def status(self, proposal_id: str) -> ProposalStatusView:
        """
        Current state with a live tally, evaluated speculatively. Terminal
        proposals report exactly what finalize stored. Never writes.
        """
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError()

        now = self.now()
        if proposal.is_terminal:
            evaluation = stored_evaluation(proposal)
        else:
            tally = await self._store.tally_votes(proposal_id)
            evaluation = evaluate(proposal, tally, await self.eligible_power(), now)

        voting_open = (
            proposal.status == ProposalStatus.ACTIVE
            and proposal.voting_ends_at is not None
            and now < proposal.voting_ends_at
        )
        return ProposalStatusView(proposal=proposal, evaluation=evaluation, voting_open=voting_open)

    async def list_proposals(
        self,
        status: ProposalStatus | str | None = None,
        proposal_type: ProposalType | str | None = None,
        category: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Proposal], int]:
        offset, limit = page_bounds(page, limit)
        try:
            status_filter = ProposalStatus(status.lower()) if status else None
        except ValueError:
            raise InvalidInputError(f"unknown status: {status!r}") from None
        type_filter = _parse_proposal_type(proposal_type) if proposal_type else None
        return await self._store.list_proposals(
            status=status_filter,
            proposal_type=type_filter,
            category=category,
            offset=offset,
            limit=limit,
        )
