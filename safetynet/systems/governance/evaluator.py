"""
SafetyNet — Quorum & Outcome Evaluator

Pure evaluation of a proposal's tally against quorum and deadline.
Stateless and side-effect free: status queries call it speculatively,
finalize calls it inside the store's per-proposal critical section.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from safetynet.primitives.governance import Evaluation, ProposalStatus

if TYPE_CHECKING:
    from datetime import datetime

    from safetynet.primitives.governance import Proposal, VoteTally

# Float sums of weights drift in the last bits; 100 * 0.6 must still meet 60.
_QUORUM_REL_TOL = 1e-9
_QUORUM_ABS_TOL = 1e-12


def meets_quorum(cast_power: float, eligible_power: float, quorum_fraction: float) -> bool:
    required = eligible_power * quorum_fraction
    if cast_power >= required:
        return True
    return math.isclose(cast_power, required, rel_tol=_QUORUM_REL_TOL, abs_tol=_QUORUM_ABS_TOL)


def decide_outcome(for_power: float, against_power: float) -> ProposalStatus:
    """Strict majority of FOR over AGAINST passes. Ties keep the status quo."""
    if for_power > against_power:
        return ProposalStatus.PASSED
    return ProposalStatus.REJECTED


def evaluate(
    proposal: Proposal,
    tally: VoteTally,
    eligible_power: float,
    now: datetime,
) -> Evaluation:
    """
    Evaluate whether ``proposal`` can be finalized and with what outcome.

    Finalizable when quorum is reached OR the voting window has ended; the
    two triggers carry no precedence over each other. Abstain power counts
    toward quorum only. Drafts never produce an outcome.
    """
    cast_power = tally.cast_power
    quorum_reached = meets_quorum(cast_power, eligible_power, proposal.quorum_fraction)
    voting_ended = proposal.voting_ends_at is not None and now >= proposal.voting_ends_at

    outcome: ProposalStatus | None = None
    if proposal.status != ProposalStatus.DRAFT and (quorum_reached or voting_ended):
        outcome = decide_outcome(tally.for_power, tally.against_power)

    return Evaluation(
        quorum_reached=quorum_reached,
        voting_ended=voting_ended,
        outcome=outcome,
        for_power=tally.for_power,
        against_power=tally.against_power,
        abstain_power=tally.abstain_power,
        cast_power=cast_power,
        eligible_power=eligible_power,
        required_power=eligible_power * proposal.quorum_fraction,
    )


def stored_evaluation(proposal: Proposal) -> Evaluation:
    """
    The evaluation a terminal proposal was finalized with, rebuilt from the
    values finalize stored. Later membership changes never alter it.
    """
    cast_power = proposal.for_power + proposal.against_power + proposal.abstain_power
    voting_ended = (
        proposal.voting_ends_at is not None
        and proposal.finalized_at is not None
        and proposal.finalized_at >= proposal.voting_ends_at
    )
    return Evaluation(
        quorum_reached=proposal.quorum_reached,
        voting_ended=voting_ended,
        outcome=proposal.status if proposal.is_terminal else None,
        for_power=proposal.for_power,
        against_power=proposal.against_power,
        abstain_power=proposal.abstain_power,
        cast_power=cast_power,
        eligible_power=proposal.eligible_power,
        required_power=proposal.eligible_power * proposal.quorum_fraction,
    )
