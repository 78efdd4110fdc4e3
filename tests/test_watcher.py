"""
Tests for the Points Watcher.

These tests verify:
1. STARTUP: pre-existing totals never fire
2. IDEMPOTENCE: redelivered or repeated observations fire once
3. RECONCILIATION: a poll catches a crossing the feed never delivered
4. ISOLATION: notification failures never affect detection
5. LIFECYCLE: one subscription per running watcher, none after stop
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from party_ledger.models import Player
from party_ledger.services.milestones import DEFAULT_MILESTONE_ACTIONS
from party_ledger.services.realtime import ChangeFeed, ChangeKind, RowChange
from party_ledger.services.store import PartyStore, PlayerRecord, StoreError
from party_ledger.services.watcher import PointsWatcher

from .conftest import ExplodingChannel, RecordingChannel, wait_for


T0 = datetime(2026, 12, 24, 20, 0, tzinfo=timezone.utc)


def player(points: int, version: int = 1, player_id: str = "p1", name: str = "Neil") -> PlayerRecord:
    return PlayerRecord(
        id=player_id,
        name=name,
        points=points,
        updated_at=T0 + timedelta(seconds=version),
        version=version,
    )


@pytest.fixture
def watcher(store: PartyStore, feed: ChangeFeed, recorder: RecordingChannel) -> PointsWatcher:
    return PointsWatcher(store, feed=feed, channels=[recorder], poll_interval=3600)


# =============================================================================
# TEST: STARTUP SNAPSHOT
# =============================================================================


class TestSnapshot:

    async def test_snapshot_does_not_fire_for_existing_totals(self, watcher, players):
        """p1 already sits on milestone 3; loading it is not a crossing."""
        await watcher.load_snapshot()

        assert watcher.last_known == {"p1": 3, "p2": 2, "p3": 1, "p4": 0}
        assert watcher.events.pending_count == 0

    async def test_unknown_player_becomes_baseline(self, watcher, players):
        await watcher.load_snapshot()

        event = await watcher.observe(player(5, player_id="p9", name="Newcomer"))

        assert event is None
        assert watcher.last_known["p9"] == 5


# =============================================================================
# TEST: NO DUPLICATE FIRE
# =============================================================================


class TestIdempotence:

    async def test_same_value_observed_repeatedly_fires_once(self, watcher, recorder):
        await watcher.observe(player(2, 1))

        events = [
            await watcher.observe(player(3, 2)),
            await watcher.observe(player(3, 2)),
            await watcher.observe(player(3, 3)),
        ]

        assert [e is not None for e in events] == [True, False, False]
        assert len(recorder.sent) == 1
        assert recorder.sent[0].points == 3

    async def test_redelivered_change_fires_once(self, watcher):
        await watcher.observe(player(9, 1))
        change = RowChange("players", ChangeKind.UPDATE, new=player(10, 2).to_row())

        first = await watcher.handle_change(change)
        second = await watcher.handle_change(change)

        assert first is not None and first.points == 10
        assert second is None
        assert watcher.events.pending_count == 1

    async def test_leaving_and_reentering_fires_again(self, watcher):
        await watcher.observe(player(2, 1))

        await watcher.observe(player(3, 2))
        await watcher.observe(player(4, 3))
        await watcher.observe(player(3, 4))

        assert [e.points for e in watcher.events.drain()] == [3, 3]

    async def test_stale_observation_is_ignored(self, watcher):
        await watcher.observe(player(9, 1))
        await watcher.observe(player(10, 3))

        # Out-of-order delivery of an older row image
        stale = await watcher.observe(player(9, 2))
        again = await watcher.observe(player(10, 3))

        assert stale is None
        assert again is None
        assert watcher.last_known["p1"] == 10
        assert watcher.events.pending_count == 1

    async def test_newer_version_wins_over_older_timestamp(self, watcher):
        """Row order comes from the database version, not the writer's clock."""
        await watcher.observe(player(8, 1))
        await watcher.observe(PlayerRecord("p1", "Neil", 9, updated_at=T0 + timedelta(seconds=10), version=2))

        event = await watcher.observe(
            PlayerRecord("p1", "Neil", 10, updated_at=T0 + timedelta(seconds=5), version=3)
        )

        assert event is not None and event.points == 10
        assert watcher.last_known["p1"] == 10

    async def test_delete_forgets_player(self, watcher):
        await watcher.observe(player(4, 1))

        await watcher.handle_change(
            RowChange("players", ChangeKind.DELETE, old=player(4, 1).to_row())
        )

        assert "p1" not in watcher.last_known


# =============================================================================
# TEST: RECONCILIATION BY POLLING
# =============================================================================


class TestReconciliation:

    async def test_poll_catches_missed_crossing(self, store, silent_store, feed, recorder):
        await store.create_player("p1", "Neil", 9)
        watcher = PointsWatcher(store, feed=feed, channels=[recorder], poll_interval=3600)
        await watcher.load_snapshot()

        # The increment bypasses the feed, so no realtime event is ever seen
        await silent_store.increment_points("p1")
        fired = await watcher.poll_once()
        fired_again = await watcher.poll_once()

        assert [e.points for e in fired] == [10]
        assert fired_again == []
        assert len(recorder.sent) == 1

    async def test_poll_recovers_commit_stamped_earlier(self, engine, store, silent_store, feed, recorder):
        """The last commit carries an older timestamp than the row seen over realtime."""
        await store.create_player("p1", "Neil", 8)
        watcher = PointsWatcher(store, feed=feed, channels=[recorder], poll_interval=3600)
        await watcher.load_snapshot()

        nine = await store.increment_points("p1")
        await watcher.handle_change(RowChange("players", ChangeKind.UPDATE, new=nine.to_row()))

        await silent_store.increment_points("p1")
        async with engine.begin() as conn:
            await conn.execute(
                update(Player)
                .where(Player.id == "p1")
                .values(updated_at=nine.updated_at - timedelta(milliseconds=5))
            )

        fired = [await watcher.poll_once() for _ in range(3)]

        assert [[e.points for e in batch] for batch in fired] == [[10], [], []]
        assert watcher.last_known["p1"] == 10
        assert [e.points for e in recorder.sent] == [10]

    async def test_realtime_then_poll_fires_once(self, store, feed, recorder):
        await store.create_player("p1", "Neil", 9)
        watcher = PointsWatcher(store, feed=feed, channels=[recorder], poll_interval=3600)
        await watcher.start()
        try:
            await store.increment_points("p1")
            await wait_for(lambda: watcher.events.pending_count == 1)

            assert await watcher.poll_once() == []
        finally:
            await watcher.stop()

        assert len(recorder.sent) == 1

    async def test_poll_failure_is_logged_not_raised(self, watcher, players, monkeypatch):
        await watcher.load_snapshot()
        monkeypatch.setattr(
            watcher._store, "list_players", AsyncMock(side_effect=StoreError("backend down"))
        )

        assert await watcher.poll_once() == []
        assert watcher.last_known["p1"] == 3

    async def test_failed_startup_snapshot_is_retried_by_poll(self, store, feed, players, monkeypatch):
        watcher = PointsWatcher(store, feed=feed, poll_interval=3600)
        real_list = store.list_players
        monkeypatch.setattr(store, "list_players", AsyncMock(side_effect=StoreError("backend down")))

        await watcher.start()
        try:
            assert watcher.last_known == {}

            monkeypatch.setattr(store, "list_players", real_list)
            await watcher.poll_once()

            assert watcher.last_known["p1"] == 3
            assert watcher.events.pending_count == 0
        finally:
            await watcher.stop()


# =============================================================================
# TEST: NOTIFICATION ISOLATION
# =============================================================================


class TestNotificationIsolation:

    async def test_channel_failure_does_not_block_detection(self, store, feed):
        watcher = PointsWatcher(store, feed=feed, channels=[ExplodingChannel()], poll_interval=3600)
        await watcher.observe(player(4, 1))

        event = await watcher.observe(player(5, 2))

        assert event is not None
        assert watcher.last_known["p1"] == 5
        assert watcher.events.pop() == event
        assert watcher.events.history() == [event]

    async def test_other_channels_still_receive(self, store, feed, recorder):
        watcher = PointsWatcher(
            store, feed=feed, channels=[ExplodingChannel(), recorder], poll_interval=3600
        )
        await watcher.observe(player(6, 1))
        await watcher.observe(player(7, 2))

        assert [e.points for e in recorder.sent] == [7]


# =============================================================================
# TEST: MILESTONE ACTIONS
# =============================================================================


class TestMilestoneActions:

    async def test_partial_actions_keep_defaults(self, store):
        watcher = PointsWatcher(store, actions={10: "Dance on the table!"}, poll_interval=3600)
        await watcher.observe(player(9, 1))
        await watcher.observe(player(2, 1, player_id="p2", name="Jonny"))

        custom = await watcher.observe(player(10, 2))
        default = await watcher.observe(player(3, 2, player_id="p2", name="Jonny"))

        assert custom.action == "Dance on the table!"
        assert default.action == DEFAULT_MILESTONE_ACTIONS[3]


# =============================================================================
# TEST: LIFECYCLE
# =============================================================================


class TestLifecycle:

    async def test_start_twice_keeps_one_subscription(self, watcher, feed, players):
        await watcher.start()
        await watcher.start()
        try:
            assert feed.subscriber_count("players") == 1
        finally:
            await watcher.stop()

        assert feed.subscriber_count("players") == 0
        assert not watcher.running

    async def test_restart_after_stop(self, watcher, feed, store, players):
        await watcher.start()
        await watcher.stop()
        await watcher.stop()

        await watcher.start()
        try:
            assert feed.subscriber_count("players") == 1
            await store.increment_points("p4")
            await wait_for(lambda: watcher.events.pending_count == 1)
            assert watcher.events.pop().player_name == "Alex"
        finally:
            await watcher.stop()
