"""
SafetyNet — Shared Primitives

Every governance component communicates through these types.
"""

from safetynet.primitives.common import (
    HealthStatus,
    Identified,
    SNBaseModel,
    SystemID,
    new_id,
    utc_now,
)
from safetynet.primitives.governance import (
    AuditEvent,
    AuditEventType,
    EligibleVoter,
    Evaluation,
    FinalizeResult,
    Proposal,
    ProposalStatus,
    ProposalStatusView,
    ProposalType,
    TokenHolding,
    Vote,
    VoteChoice,
    VoteTally,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "EligibleVoter",
    "Evaluation",
    "FinalizeResult",
    "HealthStatus",
    "Identified",
    "Proposal",
    "ProposalStatus",
    "ProposalStatusView",
    "ProposalType",
    "SNBaseModel",
    "SystemID",
    "TokenHolding",
    "Vote",
    "VoteChoice",
    "VoteTally",
    "new_id",
    "utc_now",
]
