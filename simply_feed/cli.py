"""Command-line interface for the simply_feed worker."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import pprint
import signal
import threading
from pathlib import Path
from typing import List, Optional

from .config import (
    ENV_CONFIG_FILE_NAME,
    AppConfig,
    StaticFeedConfigProvider,
    apply_env_overrides,
    parse_app_config,
    parse_env_config,
)
from .errors import SimplyFeedError
from .runner import RunConfig, execute

logger = logging.getLogger(__name__)

MASKED = "***MASKED***"
_SECRET_FIELDS = ("llm_api_key", "storage_connection_string")


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Ingest RSS/Atom feeds, summarise new items and keep them in table storage."
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--feeds-file",
        default=None,
        help=f"JSON or OPML feed list. Overrides config and {ENV_CONFIG_FILE_NAME}.",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single refresh cycle and exit.",
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Seconds between refresh cycles (minimum 10). Overrides config.",
    )

    # Overrides for logging/debugging
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.debug(
            "Logger initialised with level %s and file output to %s",
            level_name.upper(),
            log_path,
        )
    else:
        logger.debug("Logger initialised with console output at level %s", level_name.upper())


def masked_config(config: RunConfig) -> dict:
    """Return ``config`` as a dict with credentials hidden."""
    config_dict = dataclasses.asdict(config)
    for name in _SECRET_FIELDS:
        if config_dict.get(name):
            config_dict[name] = MASKED
    return config_dict


def build_run_config(app_config: AppConfig, args: argparse.Namespace) -> RunConfig:
    feeds_file = args.feeds_file or app_config.feeds_file
    interval = args.refresh_interval
    if interval is None:
        interval = app_config.worker.refresh_interval_seconds
    return RunConfig(
        feeds_file=feeds_file,
        refresh_interval_seconds=interval,
        fetch_timeout_seconds=app_config.worker.fetch_timeout_seconds,
        run_once=args.run_once or app_config.worker.run_once,
        llm_api_key=app_config.llm.api_key,
        llm_base_url=app_config.llm.base_url,
        llm_model=app_config.llm.model,
        llm_timeout_seconds=app_config.llm.timeout_seconds,
        llm_max_retries=app_config.llm.max_retries,
        storage_connection_string=app_config.storage.connection_string,
        storage_data_folder=app_config.storage.data_folder,
        retention_days=app_config.storage.retention_days,
    )


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, _frame):
        logger.info("Received signal %s; stopping after the current cycle", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config) if args.config else AppConfig()

        # Load env config if present
        if app_config.env_file:
            env_vars = parse_env_config(app_config.env_file)
            os.environ.update(env_vars)

        # Determine logging settings (CLI overrides Config)
        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file

        configure_logging(log_level, log_file)

        apply_env_overrides(app_config)
        config = build_run_config(app_config, args)

        logger.info("Active Configuration:\n%s", pprint.pformat(masked_config(config)))

        stop_event = threading.Event()
        install_signal_handlers(stop_event)
        execute(config, StaticFeedConfigProvider(config.feeds_file), stop_event=stop_event)
    except ValueError as exc:
        parser.error(str(exc))
    except (SimplyFeedError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

    return 0
