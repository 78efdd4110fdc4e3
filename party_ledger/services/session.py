"""
Party Session: one explicitly owned context per active client.

Owns the points watcher, the nomination engine and the optional periodic
sweep. Nothing here is a module-level singleton; create one session per
app instance (or per connected viewer) and stop it on teardown.
"""

import asyncio
import logging
from contextlib import suppress
from datetime import timedelta
from typing import Sequence

from ..core.config import Settings
from .notifications import NotificationChannel
from .realtime import ChangeFeed
from .store import PartyStore
from .votes import NominationEngine
from .watcher import PointsWatcher


logger = logging.getLogger(__name__)


class PartySession:
    """Watcher + vote engine + sweeper with a single start/stop lifecycle."""

    def __init__(
        self,
        store: PartyStore,
        settings: Settings,
        channels: Sequence[NotificationChannel] = (),
        feed: ChangeFeed | None = None,
        viewer_id: str | None = None,
        run_sweeper: bool = True,
    ):
        self.store = store
        self.settings = settings
        # Defaults to the feed the store publishes to
        self.feed: ChangeFeed | None = feed if feed is not None else store.feed
        self._run_sweeper = run_sweeper
        self._sweep_task: asyncio.Task | None = None
        self._started = False

        self.watcher = PointsWatcher(
            store,
            feed=self.feed,
            channels=channels,
            milestones=settings.milestones,
            actions=settings.milestone_actions or None,
            poll_interval=settings.poll_interval_seconds,
            history_size=settings.milestone_history_size,
        )
        self.votes = NominationEngine(
            store,
            feed=self.feed,
            voting_window=timedelta(seconds=settings.voting_window_seconds),
            rule=settings.resolution_rule,
            no_response_outcome=settings.no_response_outcome,
            allow_self_nomination=settings.allow_self_nomination,
            suppress_own_nominations=settings.suppress_own_nominations,
            viewer_id=viewer_id,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            logger.info("Party session already started")
            return
        self._started = True

        await self.watcher.start()
        self.votes.start_realtime()
        if self._run_sweeper:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Party session started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        await self.votes.stop_realtime()
        await self.watcher.stop()
        logger.info("Party session stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                await self.votes.resolve_expired_votes()
            except Exception:
                logger.exception("Unexpected error in vote sweep")
