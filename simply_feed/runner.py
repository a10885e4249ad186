"""High-level orchestration for the simply_feed worker."""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol

from .db import init_engine
from .feeds import fetch_feed
from .models import FeedConfig
from .store import FEED_ITEMS_TABLE_NAME, FEED_TABLE_NAME, FeedStore, create_table_store
from .summaries import Summarizer

logger = logging.getLogger(__name__)

MIN_REFRESH_INTERVAL_SECONDS = 10.0


class FeedConfigProvider(Protocol):
    def get_feeds(self) -> List[FeedConfig]: ...


@dataclass
class RunConfig:
    """Runtime options for executing the worker."""

    feeds_file: str
    refresh_interval_seconds: float
    fetch_timeout_seconds: float
    run_once: bool
    llm_api_key: Optional[str]
    llm_base_url: str
    llm_model: str
    llm_timeout_seconds: float
    llm_max_retries: int
    storage_connection_string: Optional[str]
    storage_data_folder: str
    retention_days: float


@dataclass
class CycleResult:
    """Outcome of one pass over the configured feeds."""

    processed: int = 0
    failed: int = 0
    new_items: int = 0


class FeedWorker:
    """Refreshes every configured feed on a fixed interval.

    Feeds are handled one after another. A failure in one feed is logged
    and does not stop the others.
    """

    def __init__(self, config_provider: FeedConfigProvider, store: FeedStore, interval_seconds: float):
        self.config_provider = config_provider
        self.store = store
        self.interval_seconds = max(interval_seconds, MIN_REFRESH_INTERVAL_SECONDS)

    def run_cycle(self) -> CycleResult:
        result = CycleResult()
        try:
            feed_configs = self.config_provider.get_feeds()
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load feed configuration; skipping this cycle")
            return result

        logger.info("Starting refresh cycle over %d feeds", len(feed_configs))
        for feed_config in feed_configs:
            try:
                result.new_items += self._process_feed(feed_config)
                result.processed += 1
            except Exception:  # noqa: BLE001
                result.failed += 1
                logger.exception("Failed to process feed %s", feed_config.feed_url)

        logger.info(
            "Refresh cycle finished: %d processed, %d failed, %d new items",
            result.processed,
            result.failed,
            result.new_items,
        )
        return result

    def _process_feed(self, feed_config: FeedConfig) -> int:
        feed = self.store.get_feed_from_url(feed_config.feed_url)
        if feed is None:
            feed = self.store.add_feed(feed_config.feed_url)
            logger.info("Registered new feed %s as %s", feed_config.feed_url, feed.id)
            return len(self.store.get_items_from_feed(feed.id))
        return len(self.store.refresh_feed(feed.id))

    def run(self, stop_event: Optional[threading.Event] = None, run_once: bool = False) -> None:
        """Run cycles until ``stop_event`` is set; the running cycle always completes."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            self.run_cycle()
            if run_once:
                break
            logger.debug("Next refresh cycle in %.0f seconds", self.interval_seconds)
            stop_event.wait(self.interval_seconds)
        logger.info("Feed worker stopped")


def build_feed_store(config: RunConfig) -> FeedStore:
    """Wire table stores, the summariser and the feed reader into a FeedStore."""
    engine = init_engine(config.storage_connection_string)
    feeds_table = create_table_store(FEED_TABLE_NAME, data_folder=config.storage_data_folder, engine=engine)
    items_table = create_table_store(
        FEED_ITEMS_TABLE_NAME, data_folder=config.storage_data_folder, engine=engine
    )
    summarizer = Summarizer.from_settings(
        api_key=config.llm_api_key,
        base_url=config.llm_base_url,
        model=config.llm_model,
        timeout=config.llm_timeout_seconds,
        max_retries=config.llm_max_retries,
    )
    return FeedStore(
        feeds_table,
        items_table,
        summarizer=summarizer,
        feed_reader=functools.partial(fetch_feed, timeout=config.fetch_timeout_seconds),
        retention_days=config.retention_days,
    )


def execute(
    config: RunConfig,
    config_provider: FeedConfigProvider,
    stop_event: Optional[threading.Event] = None,
) -> FeedWorker:
    """Build the store and run the worker until stopped."""
    store = build_feed_store(config)
    worker = FeedWorker(config_provider, store, config.refresh_interval_seconds)
    worker.run(stop_event=stop_event, run_once=config.run_once)
    return worker
