"""
SafetyNet — Implementation Hooks

Downstream handlers that put a PASSED proposal's changes into effect
(parameter updates, treasury allocations, membership decisions). The
governance core calls a hook once, after the terminal state has been
committed, and never retries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from safetynet.primitives.governance import Proposal

logger = structlog.get_logger()


class BaseImplementationHook(ABC):
    """Applies the ``proposed_changes`` of a passed proposal."""

    @abstractmethod
    async def apply(self, proposal: Proposal) -> None:
        ...


class LogImplementationHook(BaseImplementationHook):
    """Default hook: records the changes for an operator to carry out."""

    async def apply(self, proposal: Proposal) -> None:
        logger.info(
            "proposal_changes_pending_implementation",
            proposal_id=proposal.id,
            proposal_type=proposal.proposal_type.value,
            changes=proposal.proposed_changes,
        )
