"""
Tests for the snapshot feed and cache in coachbook/services/feed.py.
"""

import asyncio

import pytest

from coachbook.models.schemas import Coach, CoachCategory, StoreSnapshot
from coachbook.services.feed import SnapshotCache, SnapshotFeed


def make_snapshot(version: int) -> StoreSnapshot:
    return StoreSnapshot(
        version=version,
        coaches={
            "gym1": Coach(
                id="gym1",
                name=f"v{version}",
                category=CoachCategory.GENERAL_ACCESS,
                price_per_session=350,
            )
        },
    )


class TestSnapshotFeed:
    """Tests for SnapshotFeed."""

    def test_publish_keeps_latest(self) -> None:
        """Test that the newest snapshot becomes the latest."""
        feed = SnapshotFeed()
        assert feed.latest is None
        feed.publish(make_snapshot(1))
        feed.publish(make_snapshot(2))
        assert feed.latest is not None
        assert feed.latest.version == 2

    def test_publish_drops_stale_versions(self) -> None:
        """Test that an out-of-order snapshot does not replace a newer one."""
        feed = SnapshotFeed()
        feed.publish(make_snapshot(3))
        feed.publish(make_snapshot(2))
        feed.publish(make_snapshot(3))
        assert feed.latest is not None
        assert feed.latest.version == 3

    def test_next_version_moves_past_latest(self) -> None:
        """Test that reserved versions are never at or below a published one."""
        feed = SnapshotFeed()
        assert feed.next_version() == 1
        feed.publish(make_snapshot(7))
        reserved = feed.next_version()
        assert reserved == 8
        assert feed.next_version() == 9

    @pytest.mark.asyncio
    async def test_subscriber_gets_current_then_newer(self) -> None:
        """Test that a new subscriber first receives the current snapshot."""
        feed = SnapshotFeed()
        feed.publish(make_snapshot(1))
        stream = feed.subscribe()

        first = await anext(stream)
        assert first.version == 1
        assert feed.subscriber_count == 1

        feed.publish(make_snapshot(2))
        second = await anext(stream)
        assert second.version == 2

        await stream.aclose()
        assert feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_only_sees_latest(self) -> None:
        """Test that unread snapshots are replaced rather than queued."""
        feed = SnapshotFeed()
        feed.publish(make_snapshot(1))
        stream = feed.subscribe()
        assert (await anext(stream)).version == 1

        for version in (2, 3, 4):
            feed.publish(make_snapshot(version))

        assert (await anext(stream)).version == 4
        await stream.aclose()


class TestSnapshotCache:
    """Tests for SnapshotCache."""

    def test_starts_empty(self) -> None:
        """Test that a new cache holds the empty version-0 snapshot."""
        cache = SnapshotCache()
        assert cache.snapshot.version == 0
        assert cache.snapshot.coaches == {}

    def test_apply_rejects_older_snapshot(self) -> None:
        """Test that the cache never moves backwards."""
        cache = SnapshotCache()
        assert cache.apply(make_snapshot(5))
        assert not cache.apply(make_snapshot(4))
        assert cache.snapshot.version == 5

    def test_catch_up_takes_feed_latest(self) -> None:
        """Test catching up with a feed that has published."""
        feed = SnapshotFeed()
        cache = SnapshotCache()
        assert cache.catch_up(feed).version == 0
        feed.publish(make_snapshot(2))
        assert cache.catch_up(feed).version == 2

    @pytest.mark.asyncio
    async def test_follow_applies_published_snapshots(self) -> None:
        """Test that a following cache tracks the feed until cancelled."""
        feed = SnapshotFeed()
        cache = SnapshotCache()
        task = asyncio.create_task(cache.follow(feed))
        await asyncio.sleep(0)

        feed.publish(make_snapshot(1))
        for _ in range(3):
            await asyncio.sleep(0)
        assert cache.snapshot.version == 1
        assert cache.snapshot.coaches["gym1"].name == "v1"

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
