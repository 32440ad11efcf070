"""
Unit tests for VoteLedger.

Precondition ordering, weight snapshots, late votes, failure isolation
after a committed vote, and the end-to-end voting scenario.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from safetynet.primitives.governance import (
    AuditEventType,
    ProposalStatus,
    TokenHolding,
    VoteChoice,
)
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
from safetynet.systems.governance.ledger import MAX_RATIONALE_LENGTH
from safetynet.systems.governance.membership import PostgresMembershipDirectory


def add_voters(engine, **weights: float) -> None:
    for member_id, weight in weights.items():
        engine.add_member(member_id, weight)


# ─── Casting ──────────────────────────────────────────────────────────────────


class TestCastVote:
    @pytest.mark.asyncio
    async def test_records_vote_with_snapshot_weight(self, engine):
        add_voters(engine, bob=4.0, carol=30.0)
        proposal = await engine.active()

        vote = await engine.ledger.cast_vote(proposal.id, "bob", "FOR", rationale="  Needed.  ")

        assert vote.choice == VoteChoice.FOR
        assert vote.weight == 4.0
        assert vote.rationale == "Needed."
        assert vote.cast_at == engine.clock()
        assert await engine.store.get_vote(proposal.id, "bob") == vote

        cast = [e for e in engine.audit.events if e.type == AuditEventType.VOTE_CAST]
        assert len(cast) == 1
        assert cast[0].voter_id == "bob"
        assert cast[0].payload == {"choice": "for", "weight": 4.0}

    @pytest.mark.asyncio
    async def test_member_without_tokens_has_one_vote(self, engine):
        engine.directory.add_member("bob")
        add_voters(engine, carol=30.0)
        proposal = await engine.active()

        vote = await engine.ledger.cast_vote(proposal.id, "bob", VoteChoice.ABSTAIN)
        assert vote.weight == 1.0

    @pytest.mark.parametrize("choice", ["maybe", "", None, 1, "yes"])
    @pytest.mark.asyncio
    async def test_malformed_choice(self, engine, choice):
        add_voters(engine, bob=1.0)
        proposal = await engine.active()
        with pytest.raises(InvalidInputError):
            await engine.ledger.cast_vote(proposal.id, "bob", choice)

    @pytest.mark.asyncio
    async def test_malformed_choice_checked_before_existence(self, engine):
        with pytest.raises(InvalidInputError):
            await engine.ledger.cast_vote("missing", "bob", "perhaps")

    @pytest.mark.asyncio
    async def test_rationale_limits(self, engine):
        add_voters(engine, bob=1.0, carol=30.0)
        proposal = await engine.active()
        with pytest.raises(InvalidInputError):
            await engine.ledger.cast_vote(proposal.id, "bob", "for", "x" * (MAX_RATIONALE_LENGTH + 1))
        with pytest.raises(InvalidInputError):
            await engine.ledger.cast_vote(proposal.id, "bob", "for", rationale=42)

        vote = await engine.ledger.cast_vote(proposal.id, "bob", "for", rationale="   ")
        assert vote.rationale is None

    @pytest.mark.asyncio
    async def test_missing_proposal(self, engine):
        add_voters(engine, bob=1.0)
        with pytest.raises(NotFoundError):
            await engine.ledger.cast_vote("missing", "bob", "for")

    @pytest.mark.asyncio
    async def test_draft_is_not_votable(self, engine):
        add_voters(engine, bob=1.0)
        proposal = await engine.draft()
        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "bob", "for")

    @pytest.mark.asyncio
    async def test_terminal_is_not_votable(self, engine):
        add_voters(engine, bob=5.0, carol=1.0)
        proposal = await engine.active(quorum=0.5)
        await engine.ledger.cast_vote(proposal.id, "bob", "for")
        assert (await engine.store.get_proposal(proposal.id)).status == ProposalStatus.PASSED

        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "carol", "against")

    @pytest.mark.asyncio
    async def test_state_checked_before_eligibility(self, engine):
        proposal = await engine.draft()
        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "stranger", "for")

    @pytest.mark.asyncio
    async def test_inactive_member_not_eligible(self, engine):
        engine.add_member("bob", 3.0, status="suspended")
        proposal = await engine.active()
        with pytest.raises(NotEligibleError):
            await engine.ledger.cast_vote(proposal.id, "bob", "for")
        with pytest.raises(NotEligibleError):
            await engine.ledger.cast_vote(proposal.id, "stranger", "for")

    @pytest.mark.asyncio
    async def test_second_vote_rejected_and_first_kept(self, engine):
        add_voters(engine, bob=1.0, carol=30.0)
        proposal = await engine.active()
        await engine.ledger.cast_vote(proposal.id, "bob", "for")

        with pytest.raises(AlreadyVotedError) as exc_info:
            await engine.ledger.cast_vote(proposal.id, "bob", "against")

        assert exc_info.value.reason == "already voted"
        stored = await engine.store.get_vote(proposal.id, "bob")
        assert stored.choice == VoteChoice.FOR
        assert (await engine.store.tally_votes(proposal.id)).vote_count == 1


class TestWeightSnapshot:
    @pytest.mark.asyncio
    async def test_later_holding_changes_do_not_touch_the_vote(self, engine):
        add_voters(engine, bob=4.0, carol=30.0)
        proposal = await engine.active()
        await engine.ledger.cast_vote(proposal.id, "bob", "for")

        engine.directory.set_holdings("bob", [
            TokenHolding(token_id="bob-gov", weight_multiplier=9.0),
            TokenHolding(token_id="bob-gov-2", weight_multiplier=9.0),
        ])

        assert (await engine.store.get_vote(proposal.id, "bob")).weight == 4.0
        assert (await engine.store.tally_votes(proposal.id)).for_power == 4.0


# ─── Late votes ───────────────────────────────────────────────────────────────


class TestVotingClosed:
    @pytest.mark.asyncio
    async def test_late_vote_finalizes_then_fails(self, engine):
        add_voters(engine, bob=2.0, carol=30.0)
        proposal = await engine.active(days=1)
        await engine.ledger.cast_vote(proposal.id, "bob", "for")
        engine.clock.advance(days=1)

        with pytest.raises(VotingClosedError) as exc_info:
            await engine.ledger.cast_vote(proposal.id, "carol", "against")

        assert exc_info.value.reason == "voting closed"
        assert await engine.store.get_vote(proposal.id, "carol") is None
        stored = await engine.store.get_proposal(proposal.id)
        assert stored.status == ProposalStatus.PASSED
        assert stored.for_power == 2.0
        assert stored.against_power == 0.0

    @pytest.mark.asyncio
    async def test_late_vote_after_finalization_is_not_votable(self, engine):
        add_voters(engine, carol=3.0)
        proposal = await engine.active(days=1)
        engine.clock.advance(days=2)
        with pytest.raises(VotingClosedError):
            await engine.ledger.cast_vote(proposal.id, "carol", "for")
        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "carol", "for")

    @pytest.mark.asyncio
    async def test_finalize_failure_still_reports_voting_closed(self, engine):
        add_voters(engine, carol=3.0)
        proposal = await engine.active(days=1)
        engine.clock.advance(days=2)

        failing = AsyncMock(side_effect=StoreUnavailableError("finalize"))
        with patch.object(engine.controller, "finalize", new=failing):
            with pytest.raises(VotingClosedError):
                await engine.ledger.cast_vote(proposal.id, "carol", "for")
        failing.assert_awaited_once_with(proposal.id)

    @pytest.mark.asyncio
    async def test_deadline_passing_during_insert(self, engine):
        add_voters(engine, carol=3.0)
        proposal = await engine.active(days=1)

        finalize = AsyncMock()
        insert = AsyncMock(side_effect=VotingClosedError())
        with (
            patch.object(engine.store, "insert_vote", new=insert),
            patch.object(engine.controller, "finalize", new=finalize),
        ):
            with pytest.raises(VotingClosedError):
                await engine.ledger.cast_vote(proposal.id, "carol", "for")

        finalize.assert_awaited_once_with(proposal.id)


# ─── Failure isolation ────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_finalize_failure_after_vote_keeps_the_vote(self, engine):
        add_voters(engine, bob=5.0)
        proposal = await engine.active(quorum=0.5)

        failing = AsyncMock(side_effect=StoreUnavailableError("finalize"))
        with patch.object(engine.controller, "finalize", new=failing):
            vote = await engine.ledger.cast_vote(proposal.id, "bob", "for")

        assert vote.weight == 5.0
        assert await engine.store.get_vote(proposal.id, "bob") is not None
        # The next trigger picks it up
        result = await engine.controller.finalize(proposal.id)
        assert result.transitioned is True
        assert result.status == ProposalStatus.PASSED

    @pytest.mark.asyncio
    async def test_driver_failure_reading_voters_after_commit_keeps_the_vote(self, engine):
        add_voters(engine, bob=2.0, carol=6.0)
        proposal = await engine.active(quorum=0.5)

        conn = MagicMock()
        conn.fetch = AsyncMock(side_effect=asyncpg.InterfaceError("pool is closing"))
        postgres = MagicMock()
        postgres.pool.acquire.return_value.__aenter__.return_value = conn
        closing = PostgresMembershipDirectory(postgres)

        with patch.object(engine.directory, "list_eligible_voters", new=closing.list_eligible_voters):
            vote = await engine.ledger.cast_vote(proposal.id, "bob", "for")

        assert vote.weight == 2.0
        assert await engine.store.get_vote(proposal.id, "bob") == vote
        assert (await engine.store.get_proposal(proposal.id)).status == ProposalStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_store_failure_on_insert_is_retryable_not_business(self, engine):
        add_voters(engine, bob=1.0)
        proposal = await engine.active()

        insert = AsyncMock(side_effect=StoreUnavailableError("insert_vote"))
        with patch.object(engine.store, "insert_vote", new=insert):
            with pytest.raises(StoreUnavailableError) as exc_info:
                await engine.ledger.cast_vote(proposal.id, "bob", "for")

        assert not isinstance(exc_info.value, GovernanceError)
        assert exc_info.value.retryable is True
        assert "try again later" in str(exc_info.value)
        assert not [e for e in engine.audit.events if e.type == AuditEventType.VOTE_CAST]


# ─── Reads ────────────────────────────────────────────────────────────────────


class TestReads:
    @pytest.mark.asyncio
    async def test_get_vote(self, engine):
        add_voters(engine, bob=1.0, carol=30.0)
        proposal = await engine.active()
        assert await engine.ledger.get_vote(proposal.id, "bob") is None

        await engine.ledger.cast_vote(proposal.id, "bob", "against")
        vote = await engine.ledger.get_vote(proposal.id, "bob")
        assert vote.choice == VoteChoice.AGAINST

    @pytest.mark.asyncio
    async def test_get_vote_missing_proposal(self, engine):
        with pytest.raises(NotFoundError):
            await engine.ledger.get_vote("missing", "bob")

    @pytest.mark.asyncio
    async def test_voting_history_newest_first(self, engine):
        add_voters(engine, bob=1.0, carol=30.0)
        ids = []
        for _ in range(3):
            proposal = await engine.active()
            await engine.ledger.cast_vote(proposal.id, "bob", "for")
            ids.append(proposal.id)
            engine.clock.advance(hours=1)

        votes, total = await engine.ledger.voting_history("bob", page=1, limit=2)
        assert total == 3
        assert [v.proposal_id for v in votes] == [ids[2], ids[1]]

        rest, _ = await engine.ledger.voting_history("bob", page=2, limit=2)
        assert [v.proposal_id for v in rest] == [ids[0]]


# ─── End to end ───────────────────────────────────────────────────────────────


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_weighted_vote_passes_on_quorum(self, engine):
        # A=3, B=3, C=5 plus a non-voting member so quorum falls on C's vote
        engine.add_member("alice", 3.0)
        add_voters(engine, bob=3.0, carol=5.0, dave=11.0)
        proposal = await engine.active(quorum=0.5, days=7, proposed_changes={"budget": 1200})

        await engine.ledger.cast_vote(proposal.id, "alice", "for")
        with pytest.raises(AlreadyVotedError):
            await engine.ledger.cast_vote(proposal.id, "alice", "against")
        await engine.ledger.cast_vote(proposal.id, "bob", "against")
        assert (await engine.store.get_proposal(proposal.id)).status == ProposalStatus.ACTIVE

        await engine.ledger.cast_vote(proposal.id, "carol", "for")

        stored = await engine.store.get_proposal(proposal.id)
        assert stored.status == ProposalStatus.PASSED
        assert stored.quorum_reached is True
        assert stored.for_power == 8.0
        assert stored.against_power == 3.0
        assert stored.abstain_power == 0.0
        engine.hook.apply.assert_awaited_once()

        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "alice", "for")

    @pytest.mark.asyncio
    async def test_quorum_reached_mid_sequence_finalizes_immediately(self, engine):
        # 11 eligible at 0.5: the second vote already reaches quorum
        engine.add_member("alice", 3.0)
        add_voters(engine, bob=3.0, carol=5.0)
        proposal = await engine.active(quorum=0.5)

        await engine.ledger.cast_vote(proposal.id, "alice", "for")
        await engine.ledger.cast_vote(proposal.id, "bob", "against")

        stored = await engine.store.get_proposal(proposal.id)
        assert stored.status == ProposalStatus.REJECTED
        with pytest.raises(NotVotableError):
            await engine.ledger.cast_vote(proposal.id, "carol", "for")
