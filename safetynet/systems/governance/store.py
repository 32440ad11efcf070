"""
SafetyNet — Governance Store

Persistence boundary for proposals and votes. The store is the only place
where the two correctness guarantees of the voting engine live:

  - (proposal_id, voter_id) uniqueness, so the first vote wins;
  - a per-proposal critical section around "aggregate votes, decide,
    write terminal state only if still ACTIVE", so at most one
    finalization happens and no vote lands after the tally is frozen.

``InMemoryGovernanceStore`` gets both from never awaiting inside those
sections; ``PostgresGovernanceStore`` gets them from row locks and a
primary key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from safetynet.primitives.governance import (
    Evaluation,
    Proposal,
    ProposalStatus,
    ProposalType,
    Vote,
    VoteTally,
)
from safetynet.systems.governance.errors import (
    AlreadyVotedError,
    NotFoundError,
    NotVotableError,
    VotingClosedError,
)

if TYPE_CHECKING:
    from datetime import datetime

# Called inside the finalize critical section. Must be pure.
Decide = Callable[[Proposal, VoteTally], Evaluation]

# Fields an author may change on a draft.
DRAFT_FIELDS = frozenset({
    "title",
    "description",
    "proposal_type",
    "category",
    "proposed_changes",
    "quorum_fraction",
    "voting_period_days",
})


class BaseGovernanceStore(ABC):
    """Durable storage for proposals and votes."""

    async def initialize(self) -> None:
        """Create schema or connections. Idempotent."""

    # ─── Proposals ────────────────────────────────────────────────

    @abstractmethod
    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        ...

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        ...

    @abstractmethod
    async def update_draft(self, proposal_id: str, fields: dict[str, Any]) -> Proposal | None:
        """Apply ``fields`` only if the proposal is still DRAFT. None otherwise."""
        ...

    @abstractmethod
    async def delete_draft(self, proposal_id: str) -> bool:
        """Delete only if still DRAFT."""
        ...

    @abstractmethod
    async def activate(
        self,
        proposal_id: str,
        quorum_fraction: float,
        voting_period_days: int,
        activated_at: datetime,
        voting_ends_at: datetime,
    ) -> Proposal | None:
        """DRAFT -> ACTIVE as a conditional update. None if it was not DRAFT."""
        ...

    @abstractmethod
    async def list_proposals(
        self,
        status: ProposalStatus | None = None,
        proposal_type: ProposalType | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Proposal], int]:
        """Newest first, with the unpaginated total."""
        ...

    @abstractmethod
    async def list_expired_active(self, now: datetime) -> list[str]:
        """IDs of ACTIVE proposals whose voting window has ended."""
        ...

    @abstractmethod
    async def finalize(
        self,
        proposal_id: str,
        decide: Decide,
        finalized_at: datetime,
    ) -> tuple[Proposal, bool]:
        """
        Inside the per-proposal critical section: read the proposal, and if
        it is ACTIVE aggregate its votes, call ``decide``, and when the
        evaluation has an outcome write status + tally + finalized_at in one
        conditional update. Returns the proposal as stored afterwards and
        whether this call performed the transition.
        """
        ...

    # ─── Votes ────────────────────────────────────────────────────

    @abstractmethod
    async def insert_vote(self, vote: Vote, now: datetime) -> Vote:
        """
        Persist a vote. Re-checks, atomically with the insert, that the
        proposal is ACTIVE (NotVotableError) and its window is open
        (VotingClosedError). Uniqueness violations raise AlreadyVotedError.
        """
        ...

    @abstractmethod
    async def get_vote(self, proposal_id: str, voter_id: str) -> Vote | None:
        ...

    @abstractmethod
    async def list_votes_by_voter(
        self, voter_id: str, offset: int = 0, limit: int = 10
    ) -> tuple[list[Vote], int]:
        ...

    @abstractmethod
    async def tally_votes(self, proposal_id: str) -> VoteTally:
        """Fresh aggregation over every vote cast on the proposal."""
        ...


class InMemoryGovernanceStore(BaseGovernanceStore):
    """
    Process-local store. Every check-then-write runs without an ``await``
    in between, so it is atomic with respect to other coroutines.
    Not shared across processes.
    """

    def __init__(self) -> None:
        self._proposals: dict[str, Proposal] = {}
        self._votes: dict[tuple[str, str], Vote] = {}

    async def insert_proposal(self, proposal: Proposal) -> Proposal:
        self._proposals[proposal.id] = proposal.model_copy(deep=True)
        return proposal.model_copy(deep=True)

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        proposal = self._proposals.get(proposal_id)
        return proposal.model_copy(deep=True) if proposal else None

    async def update_draft(self, proposal_id: str, fields: dict[str, Any]) -> Proposal | None:
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.DRAFT:
            return None
        updated = proposal.model_copy(
            update={k: v for k, v in fields.items() if k in DRAFT_FIELDS}, deep=True
        )
        self._proposals[proposal_id] = updated
        return updated.model_copy(deep=True)

    async def delete_draft(self, proposal_id: str) -> bool:
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.DRAFT:
            return False
        del self._proposals[proposal_id]
        return True

    async def activate(
        self,
        proposal_id: str,
        quorum_fraction: float,
        voting_period_days: int,
        activated_at: datetime,
        voting_ends_at: datetime,
    ) -> Proposal | None:
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.DRAFT:
            return None
        updated = proposal.model_copy(update={
            "status": ProposalStatus.ACTIVE,
            "quorum_fraction": quorum_fraction,
            "voting_period_days": voting_period_days,
            "activated_at": activated_at,
            "voting_ends_at": voting_ends_at,
        })
        self._proposals[proposal_id] = updated
        return updated.model_copy(deep=True)

    async def list_proposals(
        self,
        status: ProposalStatus | None = None,
        proposal_type: ProposalType | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Proposal], int]:
        matching = [
            p for p in self._proposals.values()
            if (status is None or p.status == status)
            and (proposal_type is None or p.proposal_type == proposal_type)
            and (category is None or p.category == category)
        ]
        matching.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        page = matching[offset:offset + limit]
        return [p.model_copy(deep=True) for p in page], len(matching)

    async def list_expired_active(self, now: datetime) -> list[str]:
        return [
            p.id for p in self._proposals.values()
            if p.status == ProposalStatus.ACTIVE
            and p.voting_ends_at is not None
            and now >= p.voting_ends_at
        ]

    async def finalize(
        self,
        proposal_id: str,
        decide: Decide,
        finalized_at: datetime,
    ) -> tuple[Proposal, bool]:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.status != ProposalStatus.ACTIVE:
            return proposal.model_copy(deep=True), False

        evaluation = decide(proposal, self._tally(proposal_id))
        if evaluation.outcome is None:
            return proposal.model_copy(deep=True), False

        updated = proposal.model_copy(update={
            "status": evaluation.outcome,
            "for_power": evaluation.for_power,
            "against_power": evaluation.against_power,
            "abstain_power": evaluation.abstain_power,
            "eligible_power": evaluation.eligible_power,
            "quorum_reached": evaluation.quorum_reached,
            "finalized_at": finalized_at,
        })
        self._proposals[proposal_id] = updated
        return updated.model_copy(deep=True), True

    async def insert_vote(self, vote: Vote, now: datetime) -> Vote:
        proposal = self._proposals.get(vote.proposal_id)
        if proposal is None:
            raise NotFoundError()
        if proposal.status != ProposalStatus.ACTIVE:
            raise NotVotableError()
        if proposal.voting_ends_at is not None and now >= proposal.voting_ends_at:
            raise VotingClosedError()
        key = (vote.proposal_id, vote.voter_id)
        if key in self._votes:
            raise AlreadyVotedError()
        self._votes[key] = vote
        return vote

    async def get_vote(self, proposal_id: str, voter_id: str) -> Vote | None:
        return self._votes.get((proposal_id, voter_id))

    async def list_votes_by_voter(
        self, voter_id: str, offset: int = 0, limit: int = 10
    ) -> tuple[list[Vote], int]:
        votes = sorted(
            (v for v in self._votes.values() if v.voter_id == voter_id),
            key=lambda v: v.cast_at,
            reverse=True,
        )
        return votes[offset:offset + limit], len(votes)

    async def tally_votes(self, proposal_id: str) -> VoteTally:
        return self._tally(proposal_id)

    def _tally(self, proposal_id: str) -> VoteTally:
        return VoteTally.from_votes(
            [v for (pid, _), v in self._votes.items() if pid == proposal_id]
        )
