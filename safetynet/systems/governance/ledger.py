"""
SafetyNet — Vote Ledger

The only writer of votes. Checks, in order, that the choice is well formed,
the proposal exists, it is ACTIVE with its window still open, the voter is
an active member, and the voter has not voted yet; then snapshots the
voter's power, inserts the vote, and asks the lifecycle controller to try
finalizing.

The pre-insert duplicate check is a courtesy. The store's uniqueness
constraint on (proposal_id, voter_id) is what actually decides a race
between two concurrent votes from the same member.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from safetynet.primitives.governance import (
    AuditEvent,
    AuditEventType,
    ProposalStatus,
    Vote,
    VoteChoice,
)
from safetynet.systems.governance.audit import record_safely
from safetynet.systems.governance.errors import (
    AlreadyVotedError,
    GovernanceError,
    InvalidInputError,
    NotEligibleError,
    NotFoundError,
    NotVotableError,
    StoreUnavailableError,
    VotingClosedError,
)
from safetynet.systems.governance.lifecycle import page_bounds
from safetynet.systems.governance.voting_power import power

if TYPE_CHECKING:
    from safetynet.systems.governance.audit import BaseAuditSink
    from safetynet.systems.governance.lifecycle import ProposalLifecycleController
    from safetynet.systems.governance.membership import BaseMembershipDirectory
    from safetynet.systems.governance.store import BaseGovernanceStore

logger = structlog.get_logger()

MAX_RATIONALE_LENGTH = 1000


class VoteLedger:
    """Accepts at most one vote per member per proposal."""

    def __init__(
        self,
        store: BaseGovernanceStore,
        directory: BaseMembershipDirectory,
        controller: ProposalLifecycleController,
        audit: BaseAuditSink,
    ) -> None:
        self._store = store
        self._directory = directory
        self._controller = controller
        self._audit = audit

    async def cast_vote(
        self,
        proposal_id: str,
        voter_id: str,
        choice: VoteChoice | str,
        rationale: str | None = None,
    ) -> Vote:
        parsed = VoteChoice.parse(choice)
        if parsed is None:
            raise InvalidInputError(f"vote must be one of for, against, abstain (got {choice!r})")
        rationale = _validate_rationale(rationale)

        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.status != ProposalStatus.ACTIVE:
            raise NotVotableError()

        now = self._controller.now()
        if proposal.voting_ends_at is not None and now >= proposal.voting_ends_at:
            await self._finalize_after_close(proposal_id, voter_id)
            raise VotingClosedError()

        if not await self._directory.is_active_member(voter_id):
            raise NotEligibleError("only active members can vote")
        if await self._store.get_vote(proposal_id, voter_id) is not None:
            raise AlreadyVotedError()

        # Snapshot: later holding changes never touch this vote
        weight = power(await self._directory.get_token_holdings(voter_id))
        vote = Vote(
            proposal_id=proposal_id,
            voter_id=voter_id,
            choice=parsed,
            weight=weight,
            rationale=rationale,
            cast_at=now,
        )

        try:
            vote = await self._store.insert_vote(vote, now)
        except VotingClosedError:
            # The deadline passed between the checks above and the insert
            await self._finalize_after_close(proposal_id, voter_id)
            raise

        logger.info(
            "vote_cast",
            proposal_id=proposal_id,
            voter_id=voter_id,
            choice=parsed.value,
            weight=weight,
        )
        await record_safely(self._audit, AuditEvent(
            type=AuditEventType.VOTE_CAST,
            proposal_id=proposal_id,
            voter_id=voter_id,
            payload={"choice": parsed.value, "weight": weight},
        ))

        # Every committed vote is a finalize trigger. The vote stands even
        # if this attempt fails; the next vote or the sweep retries it.
        try:
            await self._controller.finalize(proposal_id)
        except (GovernanceError, StoreUnavailableError) as e:
            logger.warning("finalize_after_vote_failed", proposal_id=proposal_id, error=str(e))

        return vote

    async def _finalize_after_close(self, proposal_id: str, voter_id: str) -> None:
        logger.info("late_vote_triggered_finalize", proposal_id=proposal_id, voter_id=voter_id)
        try:
            await self._controller.finalize(proposal_id)
        except (GovernanceError, StoreUnavailableError) as e:
            logger.warning("finalize_after_close_failed", proposal_id=proposal_id, error=str(e))

    # ─── Reads ────────────────────────────────────────────────────

    async def get_vote(self, proposal_id: str, voter_id: str) -> Vote | None:
        """The member's own vote on a proposal, if any."""
        if await self._store.get_proposal(proposal_id) is None:
            raise NotFoundError()
        return await self._store.get_vote(proposal_id, voter_id)

    async def voting_history(
        self, voter_id: str, page: int = 1, limit: int = 10
    ) -> tuple[list[Vote], int]:
        offset, limit = page_bounds(page, limit)
        return await self._store.list_votes_by_voter(voter_id, offset=offset, limit=limit)


def _validate_rationale(rationale: Any) -> str | None:
    if rationale is None:
        return None
    if not isinstance(rationale, str):
        raise InvalidInputError("rationale must be text")
    rationale = rationale.strip()
    if len(rationale) > MAX_RATIONALE_LENGTH:
        raise InvalidInputError(f"rationale cannot exceed {MAX_RATIONALE_LENGTH} characters")
    return rationale or None
