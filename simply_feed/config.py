"""Configuration loading for simply_feed."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional
from xml.etree import ElementTree as ET

from .errors import ConfigurationError
from .models import FeedConfig
from .store import DEFAULT_RETENTION_DAYS
from .summaries import (
    DEFAULT_LLM_BASE_URL,
    DEFAULT_LLM_MAX_RETRIES,
    DEFAULT_LLM_MODEL,
    DEFAULT_LLM_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 15 * 60
DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
DEFAULT_FEEDS_FILE_NAME = "feeds.json"
DEFAULT_DATA_FOLDER = "."

ENV_LLM_API_KEY = "SIMPLY_FEED_LLM_API_KEY"
ENV_LLM_BASE_URL = "SIMPLY_FEED_LLM_BASE_URL"
ENV_LLM_MODEL = "SIMPLY_FEED_LLM_MODEL"
ENV_STORAGE_CONNECTION_STRING = "SIMPLY_FEED_STORAGE_CONNECTION_STRING"
ENV_STORAGE_FILE_FOLDER = "SIMPLY_FEED_STORAGE_FILE_FOLDER"
ENV_ITEMS_RETENTION_DAYS = "SIMPLY_FEED_ITEMS_RETENTION_DAYS"
ENV_CONFIG_FILE_NAME = "SIMPLY_FEED_CONFIG_FILE_NAME"


@dataclass
class StorageConfig:
    connection_string: Optional[str] = None
    data_folder: str = DEFAULT_DATA_FOLDER
    retention_days: float = DEFAULT_RETENTION_DAYS


@dataclass
class LLMConfig:
    api_key: Optional[str] = None
    base_url: str = DEFAULT_LLM_BASE_URL
    model: str = DEFAULT_LLM_MODEL
    timeout_seconds: float = DEFAULT_LLM_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_LLM_MAX_RETRIES


@dataclass
class WorkerConfig:
    refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    run_once: bool = False


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    feeds_file: str = DEFAULT_FEEDS_FILE_NAME
    env_file: Optional[str] = None
    storage: StorageConfig = field(default_factory=StorageConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def parse_feeds_config(path: str) -> List[FeedConfig]:
    """Parse an OPML file and return feed definitions.

    Outlines may be nested in folders; every outline with an ``xmlUrl`` is a feed.
    """
    logger.info("Loading feed configuration from %s", path)
    try:
        tree = ET.parse(path)
    except ET.ParseError as exc:
        raise ConfigurationError(f"Feeds file {path} is not valid XML: {exc}") from exc
    body = tree.getroot().find("body")
    if body is None:
        raise ConfigurationError(f"{path} is missing the <body> section.")

    feeds: List[FeedConfig] = []
    for outline in body.iter("outline"):
        feed_url = outline.attrib.get("xmlUrl")
        if feed_url:
            feeds.append(FeedConfig(feed_url=feed_url))
            logger.debug("Registered feed '%s'", feed_url)

    logger.info("Loaded %d feed endpoints from configuration", len(feeds))
    return feeds


def parse_json_feeds_config(path: str) -> List[FeedConfig]:
    """Parse a JSON array of ``{"feedUrl": ...}`` objects."""
    logger.info("Loading feed configuration from %s", path)
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as exc:
        raise ConfigurationError(f"Feeds file {path} is not valid JSON") from exc

    if not isinstance(payload, list):
        raise ConfigurationError("Feeds file must contain a JSON array.")

    feeds: List[FeedConfig] = []
    for entry in payload:
        if not isinstance(entry, dict) or not isinstance(entry.get("feedUrl"), str):
            raise ConfigurationError(f"Invalid feed entry in {path}: {entry!r}")
        feeds.append(FeedConfig(feed_url=entry["feedUrl"]))

    logger.info("Loaded %d feed endpoints from configuration", len(feeds))
    return feeds


class StaticFeedConfigProvider:
    """Feed configuration read once from a JSON or OPML file."""

    def __init__(self, path: str):
        self.path = path
        self._feeds: Optional[List[FeedConfig]] = None
        self._lock = threading.Lock()

    def get_feeds(self) -> List[FeedConfig]:
        with self._lock:
            if self._feeds is None:
                if not Path(self.path).exists():
                    raise ConfigurationError(f"Feeds file not found: {self.path}")
                if Path(self.path).suffix.lower() in (".xml", ".opml"):
                    self._feeds = parse_feeds_config(self.path)
                else:
                    self._feeds = parse_json_feeds_config(self.path)
            return list(self._feeds)

    def clear_cache(self) -> None:
        with self._lock:
            self._feeds = None


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def parse_env_config(path: str) -> Dict[str, str]:
    """Parse environment variables from XML."""
    env_vars = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    try:
        tree = ET.parse(path)
        root = tree.getroot()
        for var in root.findall("variable"):
            name = var.attrib.get("name")
            value = var.text
            if name and value:
                env_vars[name] = value.strip()
    except Exception as exc:
        logger.warning("Failed to load environment config: %s", exc)
        raise

    return env_vars


def _number(node: ET.Element, tag: str, default: float) -> float:
    text = node.findtext(tag)
    if text is None or not text.strip():
        return default
    try:
        return float(text)
    except ValueError as exc:
        raise ConfigurationError(f"<{tag}> must be a number, got {text!r}") from exc


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    try:
        root = ET.parse(config_path).getroot()
    except ET.ParseError as exc:
        raise ConfigurationError(f"Config file {path} is not valid XML: {exc}") from exc

    config = AppConfig()

    # Feeds
    feeds_node = root.find("feeds")
    if feeds_node is not None and feeds_node.text:
        config.feeds_file = _resolve_path(config_path, feeds_node.text.strip())

    # Env
    env_node = root.find("env")
    if env_node is not None and env_node.text:
        config.env_file = _resolve_path(config_path, env_node.text.strip())

    # Storage
    storage_node = root.find("storage")
    if storage_node is not None:
        config.storage.connection_string = storage_node.findtext("connection-string") or None
        data_folder = storage_node.findtext("data-folder")
        if data_folder:
            config.storage.data_folder = _resolve_path(config_path, data_folder.strip())
        config.storage.retention_days = _number(storage_node, "retention-days", DEFAULT_RETENTION_DAYS)

    # LLM
    llm_node = root.find("llm")
    if llm_node is not None:
        config.llm.base_url = llm_node.findtext("base-url", DEFAULT_LLM_BASE_URL).strip()
        config.llm.model = llm_node.findtext("model", DEFAULT_LLM_MODEL).strip()
        config.llm.timeout_seconds = _number(llm_node, "timeout-seconds", DEFAULT_LLM_TIMEOUT_SECONDS)
        config.llm.max_retries = int(_number(llm_node, "max-retries", DEFAULT_LLM_MAX_RETRIES))

    # Worker
    worker_node = root.find("worker")
    if worker_node is not None:
        config.worker.refresh_interval_seconds = _number(
            worker_node, "refresh-interval-seconds", DEFAULT_REFRESH_INTERVAL_SECONDS
        )
        config.worker.fetch_timeout_seconds = _number(
            worker_node, "fetch-timeout-seconds", DEFAULT_FETCH_TIMEOUT_SECONDS
        )
        config.worker.run_once = worker_node.findtext("run-once", "false").strip().lower() == "true"

    # Logging
    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            config.logging.file = _resolve_path(config_path, log_file)

    return config


def apply_env_overrides(config: AppConfig, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Overlay ``SIMPLY_FEED_*`` environment variables onto ``config``."""
    environ = os.environ if environ is None else environ

    config.llm.api_key = environ.get(ENV_LLM_API_KEY) or config.llm.api_key
    config.llm.base_url = environ.get(ENV_LLM_BASE_URL) or config.llm.base_url
    config.llm.model = environ.get(ENV_LLM_MODEL) or config.llm.model
    config.storage.connection_string = (
        environ.get(ENV_STORAGE_CONNECTION_STRING) or config.storage.connection_string
    )
    config.storage.data_folder = environ.get(ENV_STORAGE_FILE_FOLDER) or config.storage.data_folder
    config.feeds_file = environ.get(ENV_CONFIG_FILE_NAME) or config.feeds_file

    retention = environ.get(ENV_ITEMS_RETENTION_DAYS)
    if retention:
        try:
            config.storage.retention_days = float(retention)
        except ValueError as exc:
            raise ConfigurationError(f"{ENV_ITEMS_RETENTION_DAYS} must be a number, got {retention!r}") from exc

    if not config.llm.api_key:
        raise ConfigurationError(f"Missing {ENV_LLM_API_KEY}.")
    return config
