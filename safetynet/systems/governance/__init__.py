"""SafetyNet — Governance: proposal lifecycle and weighted voting."""

from safetynet.systems.governance.errors import (
    AlreadyVotedError,
    GovernanceError,
    InvalidInputError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    NotVotableError,
    PermissionDeniedError,
    StoreUnavailableError,
    VotingClosedError,
)
from safetynet.systems.governance.ledger import VoteLedger
from safetynet.systems.governance.lifecycle import ProposalLifecycleController
from safetynet.systems.governance.service import GovernanceService

__all__ = [
    "AlreadyVotedError",
    "GovernanceError",
    "GovernanceService",
    "InvalidInputError",
    "InvalidStateError",
    "NotEligibleError",
    "NotFoundError",
    "NotVotableError",
    "PermissionDeniedError",
    "ProposalLifecycleController",
    "StoreUnavailableError",
    "VoteLedger",
    "VotingClosedError",
]
