"""
Push subscription for store snapshots.

After every committed write the store publishes a full snapshot of coaches,
calendars and bookings. Subscribers only care about the most recent state,
so each subscriber queue holds at most one pending snapshot and a newer one
replaces an unread older one. Snapshots carry a monotonically increasing
version so consumers can discard anything that arrives out of order.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from coachbook.models.schemas import StoreSnapshot

logger = logging.getLogger(__name__)


class SnapshotFeed:
    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[StoreSnapshot]] = set()
        self._latest: StoreSnapshot | None = None
        self._issued = 0

    @property
    def latest(self) -> StoreSnapshot | None:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def next_version(self) -> int:
        """Reserve the version for the next snapshot, shared by every publisher."""
        current = self._latest.version if self._latest is not None else 0
        self._issued = max(self._issued, current) + 1
        return self._issued

    def publish(self, snapshot: StoreSnapshot) -> None:
        if self._latest is not None and snapshot.version <= self._latest.version:
            logger.debug(f"Dropping stale snapshot v{snapshot.version}")
            return
        self._latest = snapshot
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

    async def subscribe(self) -> AsyncIterator[StoreSnapshot]:
        """Yield the current snapshot (if any) and then every newer one."""
        queue: asyncio.Queue[StoreSnapshot] = asyncio.Queue(maxsize=1)
        if self._latest is not None:
            queue.put_nowait(self._latest)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)


class SnapshotCache:
    """
    Holds the most recent snapshot seen by a consumer.

    Readers always get a whole snapshot; a newer one replaces the reference
    in a single assignment.
    """

    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self._snapshot = snapshot or StoreSnapshot()

    @property
    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    def apply(self, snapshot: StoreSnapshot) -> bool:
        if snapshot.version < self._snapshot.version:
            return False
        self._snapshot = snapshot
        return True

    def catch_up(self, feed: SnapshotFeed) -> StoreSnapshot:
        """Take the feed's latest snapshot if the subscription has not delivered it yet."""
        if feed.latest is not None:
            self.apply(feed.latest)
        return self._snapshot

    async def follow(self, feed: SnapshotFeed) -> None:
        """Consume the feed until cancelled."""
        async for snapshot in feed.subscribe():
            self.apply(snapshot)


snapshot_feed = SnapshotFeed()
snapshot_cache = SnapshotCache()
