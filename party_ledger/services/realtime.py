"""
Realtime change feed for the player and vote tables.

Writers publish RowChange events; readers hold a Subscription, which is an
async iterator over its own queue and is closed explicitly. Delivery is
at-least-once and unordered: consumers must compare against their own
state rather than trust event order.

Two producers exist:
1. PartyStore publishes after each commit made by this process
2. PostgresChangeListener forwards NOTIFY payloads emitted by table
   triggers, covering writes made by other processes
"""

import asyncio
import json
import logging
from collections import defaultdict
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator

import asyncpg


logger = logging.getLogger(__name__)

CHANGES_CHANNEL = "party_ledger_changes"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RowChange:
    """One row-level change on a watched table."""
    table: str
    kind: ChangeKind
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @property
    def row(self) -> dict[str, Any] | None:
        """The most relevant row image: new, or old for deletes."""
        return self.new if self.new is not None else self.old

    @classmethod
    def from_payload(cls, payload: str) -> "RowChange":
        data = json.loads(payload)
        return cls(
            table=data["table"],
            kind=ChangeKind(data["kind"].upper()),
            new=data.get("new"),
            old=data.get("old"),
        )


_CLOSED = object()


class Subscription:
    """A cancellable handle over one table's change stream."""

    def __init__(self, feed: "ChangeFeed", table: str, maxsize: int):
        self._feed = feed
        self.table = table
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, change: RowChange) -> None:
        if self._closed:
            return
        if self._queue.full():
            # Oldest event goes; the polling path reconciles what is lost
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Subscription to {self.table} overflowed, dropped oldest event")
        self._queue.put_nowait(change)

    async def get(self) -> RowChange | None:
        """Wait for the next change; None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self)
        # Wake a reader blocked in get()
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[RowChange]:
        return self

    async def __anext__(self) -> RowChange:
        change = await self.get()
        if change is None:
            raise StopAsyncIteration
        return change


class ChangeFeed:
    """In-process fan-out of row changes to table subscriptions."""

    def __init__(self, queue_size: int = 1000):
        self._queue_size = queue_size
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, table: str) -> Subscription:
        subscription = Subscription(self, table, self._queue_size)
        self._subscriptions[table].append(subscription)
        logger.debug(f"New subscription on {table} ({len(self._subscriptions[table])} active)")
        return subscription

    def publish(self, change: RowChange) -> None:
        for subscription in list(self._subscriptions.get(change.table, ())):
            subscription.put(change)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, ()))

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.table, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)


class PostgresChangeListener:
    """
    Forwards trigger NOTIFY payloads from PostgreSQL into a ChangeFeed.

    A dropped LISTEN connection is detected through asyncpg's termination
    callback and re-established in the background with exponential backoff.
    Changes committed while disconnected are not replayed; the watcher's
    poll reconciles player totals.
    """

    def __init__(
        self,
        dsn: str,
        feed: ChangeFeed,
        channel: str = CHANGES_CHANNEL,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        # asyncpg takes a plain libpq DSN
        self._dsn = dsn.replace("postgresql+asyncpg://", "postgresql://", 1)
        self._feed = feed
        self._channel = channel
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

        self._conn: asyncpg.Connection | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False
        self.reconnects = 0

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def running(self) -> bool:
        return self._conn is not None or self._reconnect_task is not None

    async def start(self) -> None:
        if self.running:
            logger.info("Postgres change listener already running")
            return
        self._stopping = False
        await self._connect()
        logger.info(f"Listening for changes on channel {self._channel}")

    async def stop(self) -> None:
        self._stopping = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None

        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.remove_termination_listener(self._on_terminate)
        try:
            await conn.remove_listener(self._channel, self._on_notify)
        finally:
            await conn.close()
        logger.info("Postgres change listener stopped")

    async def _connect(self) -> None:
        conn = await asyncpg.connect(self._dsn)
        try:
            await conn.add_listener(self._channel, self._on_notify)
        except BaseException:
            await conn.close()
            raise
        conn.add_termination_listener(self._on_terminate)
        self._conn = conn

    def _on_terminate(self, connection: Any) -> None:
        if self._stopping or connection is not self._conn:
            return
        logger.warning(f"LISTEN connection on {self._channel} lost, reconnecting")
        self._conn = None
        if self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect_delay
        attempt = 0
        try:
            while not self._stopping:
                attempt += 1
                try:
                    await self._connect()
                except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                    logger.warning(
                        f"Reconnect attempt {attempt} on {self._channel} failed: {e}; "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self._max_reconnect_delay)
                    continue

                self.reconnects += 1
                logger.info(f"Reconnected to {self._channel} after {attempt} attempt(s)")
                return
        finally:
            self._reconnect_task = None

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            change = RowChange.from_payload(payload)
        except (ValueError, KeyError) as e:
            logger.warning(f"Ignoring malformed change payload: {e}")
            return
        self._feed.publish(change)
