"""Feed store: caching, deduplication, retention and summarisation."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.engine import Engine

from .cache import FeedSnapshotCache, ItemCache, dedupe_items, sort_newest_first
from .db import SqlTableStore, init_engine
from .errors import ConfigurationError, NotFoundError, StorageCapacityError
from .feeds import fetch_feed
from .file_table import FileTableStore
from .models import Feed, FeedItem, now_ms
from .summaries import Summarizer
from .tables import TableStore, paginate

logger = logging.getLogger(__name__)

FEED_TABLE_NAME = "feeds"
FEED_ITEMS_TABLE_NAME = "feeditems"
FEED_PARTITION = "default"
DEFAULT_RETENTION_DAYS = 5

FEED_EXTRA_FIELDS = ["title", "feedUrl"]
FEED_ITEM_EXTRA_FIELDS = ["title", "publishedTime", "topics"]

_DAY_MS = 24 * 60 * 60 * 1000

FeedReader = Callable[[Feed], Tuple[Feed, List[FeedItem]]]


def create_table_store(
    table_name: str,
    connection_string: Optional[str] = None,
    data_folder: Optional[Union[str, Path]] = None,
    engine: Optional[Engine] = None,
) -> TableStore:
    """Pick the remote backend when a connection string (or engine) is given, else the local file."""
    if engine is None and connection_string:
        engine = init_engine(connection_string)
    if engine is not None:
        logger.info("Using SQL table storage for '%s'", table_name)
        return SqlTableStore(engine, table_name)

    if not data_folder:
        raise ConfigurationError("Either a storage connection string or a data folder is required.")
    path = Path(data_folder) / f"{table_name}.table.json"
    logger.info("Using file table storage for '%s' at %s", table_name, path)
    return FileTableStore(path)


def _load_feed(payload: Dict[str, Any]) -> Optional[Feed]:
    try:
        return Feed.from_dict(payload)
    except (TypeError, ValueError, KeyError) as exc:
        logger.error("Skipping malformed feed record %s: %s", payload.get("id"), exc)
        return None


def _load_item(payload: Dict[str, Any]) -> Optional[FeedItem]:
    try:
        return FeedItem.from_dict(payload)
    except (TypeError, ValueError, KeyError) as exc:
        logger.error("Skipping malformed feed item record %s: %s", payload.get("id"), exc)
        return None


def _summary_text(item: FeedItem) -> str:
    body = item.content or item.description
    return f"{item.title}\n\n{body}".strip()


class FeedStore:
    """Manages feeds and their items on top of two table stores.

    Reads are served from in-memory caches first. The feed list is a
    snapshot refreshed every five minutes; each feed's item list is
    refreshed incrementally whenever its newest cached item is older than
    the feed's latest published time.
    """

    def __init__(
        self,
        feeds_table: TableStore,
        items_table: TableStore,
        summarizer: Optional[Summarizer] = None,
        feed_reader: FeedReader = fetch_feed,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], int] = now_ms,
        feeds_cache: Optional[FeedSnapshotCache] = None,
    ):
        self.feeds_table = feeds_table
        self.items_table = items_table
        self.summarizer = summarizer
        self.retention_days = retention_days
        self._feed_reader = feed_reader
        self._clock = clock
        self._feeds = feeds_cache or FeedSnapshotCache()
        self._items = ItemCache()

    # Feeds

    def add_feed(self, url: str) -> Feed:
        """Return the feed for ``url``, creating and refreshing it on first use."""
        existing = self.get_feed_from_url(url)
        if existing is not None:
            return existing

        feed = Feed(id=str(uuid.uuid4()), feed_url=url)
        self._save_feed(feed)
        self._feeds.put(feed)
        logger.info("Added feed %s (%s)", url, feed.id)

        self.refresh_feed(feed.id)
        return self._feeds.get(feed.id) or feed

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        cached = self._feeds.get(feed_id)
        if cached is not None:
            return cached

        try:
            payload = self.feeds_table.get(feed_id, FEED_PARTITION)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load feed %s from storage", feed_id)
            return None
        feed = _load_feed(payload) if payload else None
        if feed is not None:
            self._feeds.put(feed)
        return feed

    def get_feed_from_url(self, url: str) -> Optional[Feed]:
        wanted = url.lower()
        cached = self._feeds.find(lambda feed: feed.feed_url.lower() == wanted)
        if cached is not None:
            return cached

        if "'" not in url:
            try:
                for payload in self.feeds_table.query(f"extra_feedUrl eq '{url}'", FEED_PARTITION):
                    feed = _load_feed(payload)
                    if feed is not None:
                        self._feeds.put(feed)
                        return feed
            except Exception:  # noqa: BLE001
                logger.exception("Failed to look up feed %s in storage", url)
                return None

        # stored URLs may differ in case from the requested one
        return next((feed for feed in self.get_feeds() if feed.feed_url.lower() == wanted), None)

    def get_feeds(self, top: Optional[int] = None, skip: Optional[int] = None) -> List[Feed]:
        if not self._feeds.is_valid():
            self._reload_feeds()
        return paginate(self._feeds.values(), top, skip)

    def _reload_feeds(self) -> None:
        try:
            payloads = self.feeds_table.get_all()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load feeds from storage")
            return
        feeds = [feed for feed in (_load_feed(payload) for payload in payloads) if feed is not None]
        self._feeds.replace_all(feeds)
        logger.debug("Loaded %d feeds from storage", len(feeds))

    def query_feeds(self, text: str) -> List[Feed]:
        """Feeds whose title contains any whitespace-separated token of ``text``."""
        tokens = text.split()
        if not tokens:
            return []
        return [feed for feed in self.get_feeds() if any(token in feed.title for token in tokens)]

    def _save_feed(self, feed: Feed) -> None:
        self.feeds_table.write(feed.to_dict(), FEED_PARTITION, FEED_EXTRA_FIELDS)

    # Items

    def get_item(self, feed_id: str, item_id: str) -> FeedItem:
        if self.get_feed(feed_id) is None:
            raise NotFoundError(f"Feed not found: {feed_id}")

        for item in self._items.get(feed_id):
            if item.id == item_id:
                return item

        try:
            payload = self.items_table.get(item_id, feed_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load item %s of feed %s from storage", item_id, feed_id)
            payload = None
        item = _load_item(payload) if payload else None
        if item is None:
            raise NotFoundError(f"Feed item not found: {item_id}")
        return item

    def get_items_from_feed(
        self,
        feed_id: str,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        since: Optional[int] = None,
    ) -> List[FeedItem]:
        """Items of a feed, newest first, optionally limited to ``published_time >= since``."""
        feed = self.get_feed(feed_id)
        if feed is None:
            logger.warning("Requested items of unknown feed %s", feed_id)
            return []

        items = self._warm_items(feed)
        if since is not None:
            items = [item for item in items if item.published_time >= since]
        return paginate(items, top, skip)

    def _warm_items(self, feed: Feed) -> List[FeedItem]:
        if not self._items.is_stale(feed.id, feed.latest_item_published_time):
            return self._items.get(feed.id)

        head = self._items.newest_published_time(feed.id)
        query_filter = f"extra_publishedTime ge {head + 1}L" if head is not None else ""
        try:
            payloads = self.items_table.query(query_filter, feed.id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load items of feed %s from storage", feed.id)
            return self._items.get(feed.id)

        loaded = [item for item in (_load_item(payload) for payload in payloads) if item is not None]
        logger.debug("Loaded %d items for feed %s (head=%s)", len(loaded), feed.id, head)
        return self._items.merge(feed.id, loaded)

    def get_recent_items(
        self, recency_minutes: float, top: Optional[int] = None, skip: Optional[int] = None
    ) -> List[FeedItem]:
        since = self._clock() - int(recency_minutes * 60 * 1000)
        items: List[FeedItem] = []
        for feed in self.get_feeds():
            items.extend(self.get_items_from_feed(feed.id, since=since))
        return paginate(sort_newest_first(items), top, skip)

    def query_items(
        self,
        text: str,
        feed_filter: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[FeedItem]:
        """Items whose topics or title match the topics derived from ``text``."""
        tokens = [token.lower() for token in text.split()]
        if not tokens:
            return []

        topics = self.summarizer.determine_topics(text.strip()) if self.summarizer else None
        if topics is None:
            topics = tokens
        wanted = set(topics) | set(tokens)

        feeds = self.query_feeds(feed_filter) if feed_filter else self.get_feeds()
        matches: List[FeedItem] = []
        for feed in feeds:
            for item in self.get_items_from_feed(feed.id):
                title = item.title.lower()
                if wanted.intersection(item.topics or []) or any(topic in title for topic in wanted):
                    matches.append(item)
        return paginate(sort_newest_first(matches), top, skip)

    # Refresh

    def refresh_feed(self, feed_id: str) -> List[FeedItem]:
        """Fetch the feed, summarise and store new items, and expire old ones.

        Returns the newly discovered items. Failures are logged, never raised.
        """
        feed = self.get_feed(feed_id)
        if feed is None:
            logger.warning("Cannot refresh unknown feed %s", feed_id)
            return []

        try:
            updated, parsed = self._feed_reader(feed)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to refresh feed %s: %s", feed.feed_url, exc)
            self._mark_unreachable(feed)
            return []

        cutoff = self._retention_cutoff()
        existing = self._warm_items(feed)
        known = {item.identity_key for item in existing}
        new_items = dedupe_items(
            item for item in parsed if item.identity_key not in known and not self._is_expired(item, cutoff)
        )
        retry = [item for item in existing if not item.summary and not self._is_expired(item, cutoff)]
        logger.info(
            "Feed %s: %d new items, %d items awaiting a summary", feed.feed_url, len(new_items), len(retry)
        )

        self._summarize_items(new_items + retry, existing)
        retried = [item for item in retry if item.summary]
        self._persist_items(feed.id, new_items + retried)
        self._items.merge(feed.id, new_items)

        if cutoff is not None:
            self._expire_items(feed.id, cutoff)

        if updated.is_unreachable:
            updated.is_unreachable = False
        try:
            self._save_feed(updated)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist feed %s", feed.feed_url)
        self._feeds.put(updated)
        return new_items

    def _mark_unreachable(self, feed: Feed) -> None:
        if feed.is_unreachable:
            return
        feed = dataclasses.replace(feed, is_unreachable=True)
        try:
            self._save_feed(feed)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist feed %s", feed.feed_url)
        self._feeds.put(feed)

    def _summarize_items(self, items: List[FeedItem], existing: Iterable[FeedItem]) -> int:
        """Summarise ``items`` one at a time, growing a shared topic vocabulary."""
        if self.summarizer is None or not items:
            return 0

        vocabulary = {topic for item in existing for topic in (item.topics or [])}
        summarized = 0
        for item in items:
            result = self.summarizer.summarize(_summary_text(item), vocabulary)
            if result is None:
                logger.warning("Item %s left without a summary", item.link)
                continue
            item.summary = result.summary
            item.topics = result.topics
            item.last_update_time = self._clock()
            vocabulary.update(result.topics)
            summarized += 1
        return summarized

    def _persist_items(self, feed_id: str, items: List[FeedItem]) -> None:
        if not items:
            return
        payloads = [item.to_dict() for item in items]
        try:
            self.items_table.write_batch(payloads, feed_id, FEED_ITEM_EXTRA_FIELDS)
            return
        except StorageCapacityError:
            logger.warning("Batch for feed %s holds an oversized item, writing items one by one", feed_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist %d items of feed %s", len(items), feed_id)
            return

        for payload in payloads:
            try:
                self.items_table.write(payload, feed_id, FEED_ITEM_EXTRA_FIELDS)
            except StorageCapacityError as exc:
                logger.error("Skipping item %s: %s", payload.get("link"), exc)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to persist item %s", payload.get("link"))

    def _retention_cutoff(self) -> Optional[int]:
        if self.retention_days <= 0:
            return None
        return self._clock() - int(self.retention_days * _DAY_MS)

    @staticmethod
    def _is_expired(item: FeedItem, cutoff: Optional[int]) -> bool:
        # an unknown published time (0) is older than any cutoff
        return cutoff is not None and item.published_time < cutoff

    def _expire_items(self, feed_id: str, cutoff: int) -> None:
        try:
            payloads = self.items_table.query(f"extra_publishedTime lt {cutoff}L", feed_id)
            stale_ids = [payload["id"] for payload in payloads if payload.get("id")]
            stale_ids.extend(item.id for item in self._items.get(feed_id) if self._is_expired(item, cutoff))
            stale_ids = list(dict.fromkeys(stale_ids))
            if stale_ids:
                self.items_table.delete_batch(stale_ids, feed_id)
                logger.info("Removed %d expired items from feed %s", len(stale_ids), feed_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to expire items of feed %s", feed_id)
            return
        self._items.remove(feed_id, stale_ids)
