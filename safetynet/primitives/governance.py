"""
SafetyNet — Governance Primitives

Proposals, votes, token holdings, tallies, and audit events.
"""

from __future__ import annotations

import enum
import math
from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from safetynet.primitives.common import Identified, SNBaseModel, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class ProposalStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ProposalStatus.PASSED, ProposalStatus.REJECTED)


class ProposalType(str, enum.Enum):
    POLICY_CHANGE = "policy_change"
    PARAMETER_UPDATE = "parameter_update"
    TREASURY_ALLOCATION = "treasury_allocation"
    MEMBERSHIP_DECISION = "membership_decision"
    OTHER = "other"


class VoteChoice(str, enum.Enum):
    FOR = "for"
    AGAINST = "against"
    ABSTAIN = "abstain"

    @classmethod
    def parse(cls, value: Any) -> VoteChoice | None:
        """Accept enum members or case-insensitive strings. None if malformed."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class AuditEventType(str, enum.Enum):
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_UPDATED = "proposal_updated"
    PROPOSAL_DELETED = "proposal_deleted"
    PROPOSAL_ACTIVATED = "proposal_activated"
    VOTE_CAST = "vote_cast"
    PROPOSAL_FINALIZED = "proposal_finalized"
    IMPLEMENTATION_APPLIED = "implementation_applied"
    IMPLEMENTATION_FAILED = "implementation_failed"


# ─── Membership ───────────────────────────────────────────────────


class TokenHolding(SNBaseModel):
    """
    A governance token held by a member, normalised from whatever the
    token registry stores. Only the weight multiplier matters for voting.
    """

    token_id: str = ""
    weight_multiplier: float | None = None

    @field_validator("weight_multiplier", mode="before")
    @classmethod
    def _coerce_multiplier(cls, value: Any) -> float | None:
        # Registry metadata is untyped; anything unusable becomes None
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        return number

    @classmethod
    def from_metadata(cls, token_id: str, metadata: Any) -> TokenHolding:
        """Build from raw NFT metadata, reading the ``votingPower`` key."""
        multiplier = metadata.get("votingPower") if isinstance(metadata, dict) else None
        return cls(token_id=token_id, weight_multiplier=multiplier)


class EligibleVoter(SNBaseModel):
    """An active member and the holdings that determine their voting power."""

    member_id: str
    token_holdings: list[TokenHolding] = Field(default_factory=list)


# ─── Proposal & Vote ──────────────────────────────────────────────


class Proposal(Identified):
    """A governance item subject to member voting."""

    title: str
    description: str
    proposal_type: ProposalType = ProposalType.OTHER
    category: str = ""
    proposer_id: str = ""
    status: ProposalStatus = ProposalStatus.DRAFT
    quorum_fraction: float = 0.6
    voting_period_days: int = 7
    proposed_changes: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)
    activated_at: datetime | None = None
    voting_ends_at: datetime | None = None

    # Written only by finalize
    for_power: float = 0.0
    against_power: float = 0.0
    abstain_power: float = 0.0
    eligible_power: float = 0.0
    quorum_reached: bool = False
    finalized_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def has_changes(self) -> bool:
        return bool(self.proposed_changes)


class Vote(SNBaseModel):
    """One member's vote on one proposal. Immutable once cast."""

    proposal_id: str
    voter_id: str
    choice: VoteChoice
    weight: float
    rationale: str | None = None
    cast_at: datetime = Field(default_factory=utc_now)

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}


# ─── Tallies & Evaluation ─────────────────────────────────────────


class VoteTally(SNBaseModel):
    """Power-weighted sums over a proposal's cast votes."""

    for_power: float = 0.0
    against_power: float = 0.0
    abstain_power: float = 0.0
    vote_count: int = 0

    @property
    def cast_power(self) -> float:
        return self.for_power + self.against_power + self.abstain_power

    @classmethod
    def from_votes(cls, votes: list[Vote]) -> VoteTally:
        tally = cls()
        for vote in votes:
            if vote.choice == VoteChoice.FOR:
                tally.for_power += vote.weight
            elif vote.choice == VoteChoice.AGAINST:
                tally.against_power += vote.weight
            else:
                tally.abstain_power += vote.weight
            tally.vote_count += 1
        return tally


class Evaluation(SNBaseModel):
    """Result of evaluating a proposal against quorum and deadline."""

    quorum_reached: bool
    voting_ended: bool
    outcome: ProposalStatus | None = None
    for_power: float = 0.0
    against_power: float = 0.0
    abstain_power: float = 0.0
    cast_power: float = 0.0
    eligible_power: float = 0.0
    required_power: float = 0.0


class FinalizeResult(SNBaseModel):
    """
    What a finalize call observed.

    ``transitioned`` is True only for the single call that moved the
    proposal out of ACTIVE.
    """

    proposal_id: str
    status: ProposalStatus
    still_open: bool
    transitioned: bool = False
    for_power: float = 0.0
    against_power: float = 0.0
    abstain_power: float = 0.0
    quorum_reached: bool = False
    finalized_at: datetime | None = None

    @classmethod
    def from_proposal(cls, proposal: Proposal, transitioned: bool = False) -> FinalizeResult:
        return cls(
            proposal_id=proposal.id,
            status=proposal.status,
            still_open=not proposal.is_terminal,
            transitioned=transitioned,
            for_power=proposal.for_power,
            against_power=proposal.against_power,
            abstain_power=proposal.abstain_power,
            quorum_reached=proposal.quorum_reached,
            finalized_at=proposal.finalized_at,
        )


class ProposalStatusView(SNBaseModel):
    """Read-only status of a proposal with its live (or frozen) tally."""

    proposal: Proposal
    evaluation: Evaluation
    voting_open: bool


# ─── Audit ────────────────────────────────────────────────────────


class AuditEvent(Identified):
    """An append-only record of a governance state change or vote."""

    type: AuditEventType
    proposal_id: str
    voter_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utc_now)
