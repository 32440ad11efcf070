"""
SafetyNet — Voting Power Calculator

Maps a member's governance-token holdings to a voting weight.

One member, one vote is the baseline. Holding governance tokens replaces
that baseline with the sum of the tokens' weight multipliers; the two are
never added together.
"""

from __future__ import annotations

from collections.abc import Iterable

from safetynet.primitives.governance import EligibleVoter, TokenHolding

BASE_MEMBER_POWER = 1.0
DEFAULT_TOKEN_MULTIPLIER = 1.0


def token_weight(holding: TokenHolding) -> float:
    """A single token's contribution. Unusable multipliers count as 1.0."""
    multiplier = holding.weight_multiplier
    if multiplier is None or multiplier <= 0:
        return DEFAULT_TOKEN_MULTIPLIER
    return multiplier


def power(holdings: Iterable[TokenHolding]) -> float:
    """Voting power for a member with the given governance-token holdings."""
    weights = [token_weight(h) for h in holdings]
    if not weights:
        return BASE_MEMBER_POWER
    return sum(weights)


def total_power(voters: Iterable[EligibleVoter]) -> float:
    """Total power of an eligible voter set, the quorum denominator."""
    return sum(power(v.token_holdings) for v in voters)
