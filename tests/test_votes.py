"""
Tests for the Nomination Engine.

These tests verify:
1. RULE: majority outcomes, passive approval, strict quorum variant
2. CREATE: pending vote with a five minute window
3. RESPOND: one response per voter, only while the window is open
4. RESOLVE: exactly one transition and one point per vote, however often
   or however concurrently resolution runs
5. FAN-OUT: new nominations become enriched popups for other players
"""

from datetime import timedelta

import pytest

from party_ledger.core.config import ResolutionRule
from party_ledger.models import ResponseType, VoteStatus
from party_ledger.services.realtime import ChangeKind, RowChange
from party_ledger.services.votes import (
    DuplicateResponseError,
    NominationEngine,
    PlayerNotFoundError,
    SelfNominationError,
    VoteNotFoundError,
    VoteTally,
    VotingClosedError,
    resolve_outcome,
)

from .conftest import wait_for


@pytest.fixture
def votes(store, feed, clock) -> NominationEngine:
    return NominationEngine(store, feed=feed, clock=clock)


async def points_of(store, player_id: str) -> int:
    return (await store.get_player(player_id)).points


# =============================================================================
# TEST: RESOLUTION RULE
# =============================================================================


class TestResolutionRule:

    @pytest.mark.parametrize(
        "agree,disagree,expected",
        [
            (3, 1, VoteStatus.APPROVED),
            (1, 3, VoteStatus.REJECTED),
            (0, 0, VoteStatus.APPROVED),
            (2, 2, VoteStatus.REJECTED),
            (1, 0, VoteStatus.APPROVED),
            (0, 1, VoteStatus.REJECTED),
        ],
    )
    def test_simple_majority(self, agree, disagree, expected):
        assert resolve_outcome(VoteTally(agree, disagree)) == expected

    def test_no_responses_can_be_configured_to_expire(self):
        status = resolve_outcome(VoteTally(0, 0), no_response_outcome="expired")
        assert status == VoteStatus.EXPIRED

    @pytest.mark.parametrize(
        "agree,disagree,expected",
        [
            (4, 1, VoteStatus.APPROVED),
            (4, 3, VoteStatus.APPROVED),
            (1, 4, VoteStatus.REJECTED),
            (4, 4, VoteStatus.REJECTED),
            (3, 2, VoteStatus.APPROVED),
            (2, 3, VoteStatus.REJECTED),
            (0, 0, VoteStatus.APPROVED),
        ],
    )
    def test_strict_quorum(self, agree, disagree, expected):
        status = resolve_outcome(VoteTally(agree, disagree), ResolutionRule.STRICT_QUORUM)
        assert status == expected


# =============================================================================
# TEST: CREATE NOMINATION
# =============================================================================


class TestCreateNomination:

    async def test_creates_pending_vote_with_five_minute_window(self, votes, players, clock):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        assert vote.status == VoteStatus.PENDING
        assert vote.target_id == "p2"
        assert vote.created_by_id == "p1"
        assert vote.reason == "funny hat"
        assert vote.created_at == clock.now
        assert vote.expires_at == vote.created_at + timedelta(minutes=5)

    async def test_persisted_row_matches(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        stored = await store.get_vote(vote.id)
        assert stored == vote

    async def test_unknown_target_is_rejected(self, votes, players):
        with pytest.raises(PlayerNotFoundError):
            await votes.create_nomination("ghost", "p1", "boo")

    async def test_self_nomination_allowed_by_default(self, votes, players):
        vote = await votes.create_nomination("p1", "p1", "modesty")
        assert vote.status == VoteStatus.PENDING

    async def test_self_nomination_policy(self, store, players):
        strict = NominationEngine(store, allow_self_nomination=False)
        with pytest.raises(SelfNominationError):
            await strict.create_nomination("p1", "p1", "modesty")


# =============================================================================
# TEST: RECORD RESPONSE
# =============================================================================


class TestRecordResponse:

    async def test_records_response(self, votes, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        record = await votes.record_response(vote.id, "p3", ResponseType.AGREE)

        assert record.vote_id == vote.id
        assert record.response == ResponseType.AGREE
        assert await votes.tally(vote.id) == VoteTally(agree=1, disagree=0)

    async def test_second_response_from_same_voter_is_rejected(self, votes, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        await votes.record_response(vote.id, "p3", ResponseType.AGREE)

        with pytest.raises(DuplicateResponseError):
            await votes.record_response(vote.id, "p3", ResponseType.DISAGREE)

        assert await votes.tally(vote.id) == VoteTally(agree=1, disagree=0)

    async def test_response_after_window_is_rejected(self, votes, players, clock):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        clock.advance(minutes=5)

        with pytest.raises(VotingClosedError):
            await votes.record_response(vote.id, "p3", ResponseType.AGREE)

    async def test_response_to_resolved_vote_is_rejected(self, votes, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        await votes.decline_nomination(vote.id, "p4")

        with pytest.raises(VotingClosedError):
            await votes.record_response(vote.id, "p3", ResponseType.AGREE)

    async def test_unknown_vote(self, votes, players):
        from uuid import uuid4

        with pytest.raises(VoteNotFoundError):
            await votes.record_response(uuid4(), "p3", ResponseType.AGREE)

    async def test_unknown_voter(self, votes, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        with pytest.raises(PlayerNotFoundError):
            await votes.record_response(vote.id, "ghost", ResponseType.AGREE)


# =============================================================================
# TEST: RESOLVE EXPIRED VOTES
# =============================================================================


class TestResolveExpiredVotes:

    async def test_end_to_end_nomination_flow(self, votes, store, players, clock):
        """p1 nominates p2, two agree, the sweep after expiry awards one point."""
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        assert vote.expires_at == vote.created_at + timedelta(minutes=5)

        await votes.record_response(vote.id, "p3", ResponseType.AGREE)
        await votes.record_response(vote.id, "p4", ResponseType.AGREE)

        summary = await votes.resolve_expired_votes(now=vote.expires_at)

        resolved = await store.get_vote(vote.id)
        assert summary.approved == 1
        assert resolved.status == VoteStatus.APPROVED
        assert resolved.resolved_at == vote.expires_at
        assert resolved.resolved_by_id is None
        assert await points_of(store, "p2") == 3

    async def test_pending_votes_before_expiry_are_untouched(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        summary = await votes.resolve_expired_votes(now=vote.expires_at - timedelta(seconds=1))

        assert summary.processed == 0
        assert (await store.get_vote(vote.id)).status == VoteStatus.PENDING

    async def test_resolving_twice_is_a_no_op(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        later = vote.expires_at + timedelta(seconds=1)

        first = await votes.resolve_expired_votes(now=later)
        second = await votes.resolve_expired_votes(now=later)

        assert first.processed == 1
        assert second.processed == 0
        assert await points_of(store, "p2") == 3

    async def test_racing_resolvers_award_once(self, votes, store, players):
        """Two sweeps that both loaded the vote while it was pending."""
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        later = vote.expires_at + timedelta(seconds=1)
        other = NominationEngine(store)

        first = await votes.resolve_vote(vote, later)
        second = await other.resolve_vote(vote, later)

        assert first == VoteStatus.APPROVED
        assert second is None
        assert await points_of(store, "p2") == 3

    async def test_majority_disagree_rejects_without_points(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        await votes.record_response(vote.id, "p1", ResponseType.AGREE)
        await votes.record_response(vote.id, "p3", ResponseType.DISAGREE)
        await votes.record_response(vote.id, "p4", ResponseType.DISAGREE)

        summary = await votes.resolve_expired_votes(now=vote.expires_at)

        assert summary.rejected == 1
        assert (await store.get_vote(vote.id)).status == VoteStatus.REJECTED
        assert await points_of(store, "p2") == 2

    async def test_expired_outcome_when_configured(self, store, players, clock):
        votes = NominationEngine(store, no_response_outcome="expired", clock=clock)
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        summary = await votes.resolve_expired_votes(now=vote.expires_at)

        assert summary.expired == 1
        assert (await store.get_vote(vote.id)).status == VoteStatus.EXPIRED
        assert await points_of(store, "p2") == 2


# =============================================================================
# TEST: MANUAL OVERRIDE
# =============================================================================


class TestManualOverride:

    async def test_accept_awards_point_and_records_resolver(self, votes, store, players, clock):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        assert await votes.accept_nomination(vote.id, "p4") is True

        resolved = await store.get_vote(vote.id)
        assert resolved.status == VoteStatus.APPROVED
        assert resolved.resolved_by_id == "p4"
        assert resolved.resolved_at == clock.now
        assert await points_of(store, "p2") == 3

    async def test_accept_twice_awards_once(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        assert await votes.accept_nomination(vote.id, "p4") is True
        assert await votes.accept_nomination(vote.id, "p4") is False
        assert await points_of(store, "p2") == 3

    async def test_sweep_after_accept_is_a_no_op(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")
        await votes.accept_nomination(vote.id, "p4")

        summary = await votes.resolve_expired_votes(now=vote.expires_at + timedelta(minutes=1))

        assert summary.processed == 0
        assert await points_of(store, "p2") == 3

    async def test_decline_does_not_award(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        assert await votes.decline_nomination(vote.id, "p4") is True
        assert await votes.accept_nomination(vote.id, "p4") is False

        assert (await store.get_vote(vote.id)).status == VoteStatus.REJECTED
        assert await points_of(store, "p2") == 2

    async def test_unknown_resolver_is_rejected(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        with pytest.raises(PlayerNotFoundError):
            await votes.accept_nomination(vote.id, "ghost")

        assert (await store.get_vote(vote.id)).status == VoteStatus.PENDING
        assert await points_of(store, "p2") == 2

    async def test_accept_unknown_vote_surfaces_error(self, votes, players):
        from uuid import uuid4

        with pytest.raises(VoteNotFoundError):
            await votes.accept_nomination(uuid4(), "p4")


# =============================================================================
# TEST: REALTIME FAN-OUT
# =============================================================================


class TestNominationFanOut:

    async def test_insert_is_enriched_with_names(self, votes, store, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        notice = await votes.handle_change(RowChange("votes", ChangeKind.INSERT, new=vote.to_row()))

        assert notice.target_name == "Jonny"
        assert notice.created_by_name == "Neil"
        assert notice.reason == "funny hat"
        assert votes.next_notification() == notice
        assert votes.next_notification() is None

    async def test_updates_are_not_popups(self, votes, players):
        vote = await votes.create_nomination("p2", "p1", "funny hat")

        notice = await votes.handle_change(RowChange("votes", ChangeKind.UPDATE, new=vote.to_row()))

        assert notice is None
        assert votes.pending_notifications == 0

    async def test_own_nomination_is_suppressed(self, store, feed, players, clock):
        mine = NominationEngine(store, feed=feed, viewer_id="p1", clock=clock)
        vote = await mine.create_nomination("p2", "p1", "funny hat")

        notice = await mine.handle_change(RowChange("votes", ChangeKind.INSERT, new=vote.to_row()))

        assert notice is None

    async def test_realtime_subscription_queues_popup(self, votes, feed, players):
        votes.start_realtime()
        votes.start_realtime()
        try:
            assert feed.subscriber_count("votes") == 1
            vote = await votes.create_nomination("p3", "p2", "best dance")
            await wait_for(lambda: votes.pending_notifications == 1)
        finally:
            await votes.stop_realtime()

        notice = votes.next_notification()
        assert notice.vote_id == vote.id
        assert notice.target_name == "Sarah"
        assert feed.subscriber_count("votes") == 0
