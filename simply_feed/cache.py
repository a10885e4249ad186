"""In-memory caches used by the feed store."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from .models import Feed, FeedItem

FEEDS_CACHE_MAX_AGE_SECONDS = 5 * 60


def sort_newest_first(items: Iterable[FeedItem]) -> List[FeedItem]:
    return sorted(items, key=lambda item: item.published_time, reverse=True)


def dedupe_items(items: Iterable[FeedItem]) -> List[FeedItem]:
    """Keep the first item for each identity key."""
    seen = set()
    unique: List[FeedItem] = []
    for item in items:
        key = item.identity_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


class FeedSnapshotCache:
    """Feeds by id, plus a timestamp for the last full load from storage.

    The snapshot is valid while it is non-empty and younger than
    ``max_age`` seconds. Single feeds can be added at any time without
    refreshing the snapshot timestamp.
    """

    def __init__(
        self,
        max_age: float = FEEDS_CACHE_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age = max_age
        self._clock = clock
        self._feeds: Dict[str, Feed] = {}
        self._loaded_at: Optional[float] = None
        self._lock = threading.Lock()

    def is_valid(self) -> bool:
        with self._lock:
            return (
                bool(self._feeds)
                and self._loaded_at is not None
                and self._clock() - self._loaded_at < self.max_age
            )

    def get(self, feed_id: str) -> Optional[Feed]:
        with self._lock:
            return self._feeds.get(feed_id)

    def find(self, predicate: Callable[[Feed], bool]) -> Optional[Feed]:
        with self._lock:
            return next((feed for feed in self._feeds.values() if predicate(feed)), None)

    def put(self, feed: Feed) -> None:
        with self._lock:
            self._feeds[feed.id] = feed

    def values(self) -> List[Feed]:
        with self._lock:
            return list(self._feeds.values())

    def replace_all(self, feeds: Iterable[Feed]) -> None:
        """Drop every cached feed and repopulate from a full storage load."""
        with self._lock:
            self._feeds = {feed.id: feed for feed in feeds}
            self._loaded_at = self._clock()


class ItemCache:
    """Per-feed item lists kept sorted newest first.

    A feed's list is stale when it is empty or when its newest item is older
    than the feed's latest published time (the high-water mark).
    """

    def __init__(self):
        self._items: Dict[str, List[FeedItem]] = {}
        self._lock = threading.Lock()

    def get(self, feed_id: str) -> List[FeedItem]:
        with self._lock:
            return list(self._items.get(feed_id, []))

    def feed_ids(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def newest_published_time(self, feed_id: str) -> Optional[int]:
        with self._lock:
            items = self._items.get(feed_id)
            return items[0].published_time if items else None

    def is_stale(self, feed_id: str, high_water_mark: int) -> bool:
        newest = self.newest_published_time(feed_id)
        return newest is None or newest < high_water_mark

    def replace(self, feed_id: str, items: Iterable[FeedItem]) -> List[FeedItem]:
        merged = sort_newest_first(dedupe_items(items))
        with self._lock:
            self._items[feed_id] = merged
        return list(merged)

    def merge(self, feed_id: str, items: Iterable[FeedItem]) -> List[FeedItem]:
        """Merge ``items`` ahead of the cached ones, dedupe, re-sort and store."""
        return self.replace(feed_id, list(items) + self.get(feed_id))

    def remove(self, feed_id: str, item_ids: Iterable[str]) -> None:
        doomed = set(item_ids)
        if not doomed:
            return
        with self._lock:
            items = self._items.get(feed_id)
            if items:
                self._items[feed_id] = [item for item in items if item.id not in doomed]
