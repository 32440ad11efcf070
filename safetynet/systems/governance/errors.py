"""
SafetyNet — Governance Error Hierarchy

All exceptions raised by the proposal lifecycle and the vote ledger.

Two families that must never be mixed:
  GovernanceError subclasses  -> business-rule rejections, caller-facing 4xx
  StoreUnavailableError       -> storage failure, retryable, caller-facing 503

Audit sink and implementation hook failures are not represented here:
they are logged and swallowed where they happen.
"""

from __future__ import annotations


class GovernanceError(RuntimeError):
    """Base for all governance business-rule rejections."""

    code: str = "governance_error"
    http_status: int = 400
    default_reason: str = "governance request rejected"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class NotFoundError(GovernanceError):
    """The referenced proposal does not exist."""

    code = "not_found"
    http_status = 404
    default_reason = "proposal not found"


class NotEligibleError(GovernanceError):
    """The member is not active and cannot vote or propose."""

    code = "not_eligible"
    http_status = 403
    default_reason = "only active members can take part in governance"


class NotVotableError(GovernanceError):
    """The proposal is not ACTIVE (still a draft, or already finalized)."""

    code = "not_votable"
    http_status = 409
    default_reason = "proposal is not open for voting"


class VotingClosedError(GovernanceError):
    """
    The voting window has elapsed.

    Raised only after a finalize attempt has been made for the proposal.
    """

    code = "voting_closed"
    http_status = 409
    default_reason = "voting closed"


class AlreadyVotedError(GovernanceError):
    """A vote already exists for this (proposal, voter) pair."""

    code = "already_voted"
    http_status = 409
    default_reason = "already voted"


class InvalidInputError(GovernanceError):
    """Malformed choice, out-of-range quorum, bad voting period, bad draft fields."""

    code = "invalid_input"
    http_status = 422
    default_reason = "invalid input"


class InvalidStateError(GovernanceError):
    """The requested lifecycle action is not allowed from the current state."""

    code = "invalid_state"
    http_status = 409
    default_reason = "proposal is not in a state that allows this action"


class PermissionDeniedError(GovernanceError):
    """The caller may not change this proposal: not its author, or not an administrator."""

    code = "permission_denied"
    http_status = 403
    default_reason = "only the proposal author may do this"


class StoreUnavailableError(RuntimeError):
    """
    The persistent store could not complete a read or write.

    Retryable. The message is generic; the underlying error is kept as
    ``__cause__`` for logs only.
    """

    code = "store_unavailable"
    http_status = 503
    retryable = True

    def __init__(self, operation: str = "") -> None:
        self.operation = operation
        super().__init__("governance store unavailable, try again later")
