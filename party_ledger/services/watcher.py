"""
Points Watcher: milestone detection over the player table.

Two producers feed one consumer:
1. The realtime subscription on "players" (fast, may drop or reorder)
2. A periodic full snapshot read (slow, reconciles anything missed)

Both call `observe()`, which compares the observed points against
`last_known` and fires only on a genuine change onto a milestone.
Re-observing a value already recorded is a no-op, so redelivered events
and repeated polls never fire twice.
"""

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .milestones import (
    DEFAULT_MILESTONE_ACTIONS,
    DEFAULT_MILESTONES,
    MilestoneEvent,
    MilestoneFeed,
    detect_crossing,
)
from .notifications import NotificationChannel
from .realtime import ChangeFeed, ChangeKind, RowChange, Subscription
from .store import PartyStore, PlayerRecord, StoreError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnownPoints:
    """Last observed points for a player and the row version they came from."""
    points: int
    version: int = 0


class PointsWatcher:
    """Watches player points and emits one MilestoneEvent per crossing."""

    def __init__(
        self,
        store: PartyStore,
        feed: ChangeFeed | None = None,
        channels: Sequence[NotificationChannel] = (),
        milestones: Iterable[int] = DEFAULT_MILESTONES,
        actions: Mapping[int, str] | None = None,
        poll_interval: float = 5.0,
        history_size: int = 50,
    ):
        self._store = store
        self._feed = feed
        self._channels = list(channels)
        self._milestones = frozenset(milestones)
        # Configured actions override individual defaults
        self._actions = {**DEFAULT_MILESTONE_ACTIONS, **actions} if actions else None
        self._poll_interval = poll_interval

        self.events = MilestoneFeed(history_size=history_size)
        self._last_known: dict[str, KnownPoints] = {}
        self._initialized = False

        self._subscription: Subscription | None = None
        self._consume_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._subscription is not None or self._poll_task is not None

    @property
    def last_known(self) -> dict[str, int]:
        return {player_id: known.points for player_id, known in self._last_known.items()}

    async def start(self) -> None:
        """Load the baseline snapshot, subscribe, and start polling."""
        if self.running:
            logger.info("Points watcher already running")
            return

        try:
            await self.load_snapshot()
        except StoreError as e:
            # The poll loop retries the snapshot on its next tick
            logger.error(f"Initial player snapshot failed: {e}")

        if self._feed is not None:
            self._subscription = self._feed.subscribe("players")
            self._consume_task = asyncio.create_task(self._consume_loop(self._subscription))
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Points watcher started ({len(self._last_known)} players tracked)")

    async def stop(self) -> None:
        """Cancel the subscription and the polling timer."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        for task in (self._consume_task, self._poll_task):
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._consume_task = None
        self._poll_task = None
        logger.info("Points watcher stopped")

    async def load_snapshot(self) -> None:
        """Record every player's current points as the baseline. Never fires."""
        players = await self._store.list_players()
        self._last_known = {
            p.id: KnownPoints(points=p.points, version=p.version) for p in players
        }
        self._initialized = True

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    async def poll_once(self) -> list[MilestoneEvent]:
        """Reconcile against a full snapshot. Read failures are logged, not raised."""
        if not self._initialized:
            try:
                await self.load_snapshot()
            except StoreError as e:
                logger.error(f"Player snapshot failed, retrying next tick: {e}")
            return []

        try:
            players = await self._store.list_players()
        except StoreError as e:
            logger.error(f"Player poll failed, retrying next tick: {e}")
            return []

        fired = []
        for player in players:
            event = await self.observe(player)
            if event is not None:
                fired.append(event)
        return fired

    async def handle_change(self, change: RowChange) -> MilestoneEvent | None:
        """Apply one realtime change on the players table."""
        row = change.row
        if row is None or "id" not in row:
            return None

        if change.kind == ChangeKind.DELETE:
            self._last_known.pop(str(row["id"]), None)
            return None

        return await self.observe(PlayerRecord.from_row(row))

    async def _consume_loop(self, subscription: Subscription) -> None:
        async for change in subscription:
            try:
                await self.handle_change(change)
            except Exception:
                logger.exception(f"Failed to handle player change: {change.kind.value}")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Unexpected error in player poll")

    # =========================================================================
    # CONSUMER
    # =========================================================================

    async def observe(self, player: PlayerRecord) -> MilestoneEvent | None:
        """
        Compare an observed row with last_known and fire on a crossing.

        Observations with a lower row version than the recorded one are
        stale (reordered delivery) and ignored. Versions are assigned by the
        database, so the newest committed row always wins. Unknown players
        become a baseline.
        """
        known = self._last_known.get(player.id)

        if (
            known is not None
            and known.version
            and player.version
            and player.version < known.version
        ):
            logger.debug(f"Ignoring stale observation for {player.id}")
            return None

        self._last_known[player.id] = KnownPoints(
            points=player.points,
            version=player.version or (known.version if known else 0),
        )

        milestone = detect_crossing(
            known.points if known else None,
            player.points,
            self._milestones,
        )
        if milestone is None:
            return None

        event = MilestoneEvent.create(player.id, player.name, milestone, self._actions)
        self.events.push(event)
        logger.info(f"Milestone {milestone} reached by {player.name} ({player.id})")

        await self._dispatch(event)
        return event

    async def _dispatch(self, event: MilestoneEvent) -> None:
        for channel in self._channels:
            try:
                delivered = await channel.send_milestone(event)
            except Exception:
                logger.exception(f"Notification channel {channel.name} raised")
                continue
            if not delivered:
                logger.warning(f"Milestone {event.id} not delivered via {channel.name}")
