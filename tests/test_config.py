import json
import textwrap

import pytest

from simply_feed import config as config_module
from simply_feed.config import (
    AppConfig,
    StaticFeedConfigProvider,
    apply_env_overrides,
    parse_app_config,
    parse_env_config,
    parse_feeds_config,
    parse_json_feeds_config,
)
from simply_feed.errors import ConfigurationError
from simply_feed.models import FeedConfig


def _write(path, content):
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def test_parse_feeds_config_reads_nested_outlines(tmp_path):
    opml = _write(
        tmp_path / "feeds.xml",
        """\
        <opml version="2.0">
          <body>
            <outline text="Tech">
              <outline text="Engineering">
                <outline type="rss" text="Eng Blog" xmlUrl="https://example.com/eng.xml" />
              </outline>
              <outline type="rss" text="Tech Blog" xmlUrl="https://example.com/tech.xml" />
            </outline>
            <outline text="Standalone" type="rss" xmlUrl="https://example.com/standalone.xml" />
          </body>
        </opml>
        """,
    )

    feeds = parse_feeds_config(str(opml))

    assert feeds == [
        FeedConfig(feed_url="https://example.com/eng.xml"),
        FeedConfig(feed_url="https://example.com/tech.xml"),
        FeedConfig(feed_url="https://example.com/standalone.xml"),
    ]


def test_parse_feeds_config_missing_body_raises(tmp_path):
    opml = _write(tmp_path / "feeds.xml", "<opml version='2.0'></opml>")

    with pytest.raises(ConfigurationError):
        parse_feeds_config(str(opml))


def test_parse_json_feeds_config(tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text(
        json.dumps([{"feedUrl": "https://a.example.com/rss"}, {"feedUrl": "https://b.example.com/atom", "title": "B"}]),
        encoding="utf-8",
    )

    feeds = parse_json_feeds_config(str(path))

    assert [feed.feed_url for feed in feeds] == ["https://a.example.com/rss", "https://b.example.com/atom"]


@pytest.mark.parametrize("payload", ['{"feedUrl": "x"}', '[{"url": "x"}]', '[{"feedUrl": 5}]', "not json"])
def test_parse_json_feeds_config_rejects_bad_shapes(tmp_path, payload):
    path = tmp_path / "feeds.json"
    path.write_text(payload, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        parse_json_feeds_config(str(path))


def test_static_provider_caches_until_cleared(tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text(json.dumps([{"feedUrl": "https://a.example.com/rss"}]), encoding="utf-8")
    provider = StaticFeedConfigProvider(str(path))

    assert len(provider.get_feeds()) == 1

    path.write_text(
        json.dumps([{"feedUrl": "https://a.example.com/rss"}, {"feedUrl": "https://b.example.com/rss"}]),
        encoding="utf-8",
    )
    assert len(provider.get_feeds()) == 1

    provider.clear_cache()
    assert len(provider.get_feeds()) == 2


def test_static_provider_reads_opml(tmp_path):
    opml = _write(
        tmp_path / "feeds.opml",
        """\
        <opml version="2.0"><body>
          <outline text="News" type="rss" xmlUrl="https://news.example.com/rss" />
        </body></opml>
        """,
    )

    assert StaticFeedConfigProvider(str(opml)).get_feeds()[0].feed_url == "https://news.example.com/rss"


def test_static_provider_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        StaticFeedConfigProvider(str(tmp_path / "nope.json")).get_feeds()


def test_parse_app_config_full(tmp_path):
    config_path = _write(
        tmp_path / "config.xml",
        """\
        <config>
          <feeds>feeds.json</feeds>
          <env>env.xml</env>
          <storage>
            <connection-string>sqlite:///feeds.db</connection-string>
            <data-folder>data</data-folder>
            <retention-days>7</retention-days>
          </storage>
          <llm>
            <base-url>https://llm.example.com/v1/</base-url>
            <model>small-model</model>
            <timeout-seconds>12</timeout-seconds>
            <max-retries>4</max-retries>
          </llm>
          <worker>
            <refresh-interval-seconds>60</refresh-interval-seconds>
            <fetch-timeout-seconds>5</fetch-timeout-seconds>
            <run-once>true</run-once>
          </worker>
          <logging>
            <level>DEBUG</level>
            <file>logs/worker.log</file>
          </logging>
        </config>
        """,
    )

    config = parse_app_config(str(config_path))

    assert config.feeds_file == str((tmp_path / "feeds.json").resolve())
    assert config.env_file == str((tmp_path / "env.xml").resolve())
    assert config.storage.connection_string == "sqlite:///feeds.db"
    assert config.storage.data_folder == str((tmp_path / "data").resolve())
    assert config.storage.retention_days == 7
    assert config.llm.base_url == "https://llm.example.com/v1/"
    assert config.llm.model == "small-model"
    assert config.llm.timeout_seconds == 12
    assert config.llm.max_retries == 4
    assert config.worker.refresh_interval_seconds == 60
    assert config.worker.fetch_timeout_seconds == 5
    assert config.worker.run_once is True
    assert config.logging.level == "DEBUG"
    assert config.logging.file == str((tmp_path / "logs/worker.log").resolve())


def test_parse_app_config_defaults(tmp_path):
    config_path = _write(tmp_path / "config.xml", "<config/>")

    config = parse_app_config(str(config_path))

    assert config.feeds_file == config_module.DEFAULT_FEEDS_FILE_NAME
    assert config.storage.connection_string is None
    assert config.storage.retention_days == 5
    assert config.worker.refresh_interval_seconds == 15 * 60
    assert config.llm.timeout_seconds == 30


def test_parse_app_config_rejects_bad_numbers(tmp_path):
    config_path = _write(
        tmp_path / "config.xml",
        "<config><worker><refresh-interval-seconds>soon</refresh-interval-seconds></worker></config>",
    )

    with pytest.raises(ConfigurationError):
        parse_app_config(str(config_path))


def test_parse_app_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_app_config(str(tmp_path / "missing.xml"))


def test_parse_env_config(tmp_path):
    env_path = _write(
        tmp_path / "env.xml",
        """\
        <environment>
          <variable name="SIMPLY_FEED_LLM_API_KEY"> secret </variable>
          <variable name="EMPTY"></variable>
        </environment>
        """,
    )

    assert parse_env_config(str(env_path)) == {"SIMPLY_FEED_LLM_API_KEY": "secret"}
    assert parse_env_config("") == {}


def test_env_overrides_apply_on_top_of_file_config():
    config = AppConfig()
    environ = {
        "SIMPLY_FEED_LLM_API_KEY": "key",
        "SIMPLY_FEED_LLM_BASE_URL": "https://other.example.com/",
        "SIMPLY_FEED_LLM_MODEL": "other-model",
        "SIMPLY_FEED_STORAGE_CONNECTION_STRING": "sqlite://",
        "SIMPLY_FEED_STORAGE_FILE_FOLDER": "/var/lib/simply-feed",
        "SIMPLY_FEED_ITEMS_RETENTION_DAYS": "3",
        "SIMPLY_FEED_CONFIG_FILE_NAME": "my-feeds.json",
    }

    apply_env_overrides(config, environ)

    assert config.llm.api_key == "key"
    assert config.llm.base_url == "https://other.example.com/"
    assert config.llm.model == "other-model"
    assert config.storage.connection_string == "sqlite://"
    assert config.storage.data_folder == "/var/lib/simply-feed"
    assert config.storage.retention_days == 3
    assert config.feeds_file == "my-feeds.json"


def test_missing_api_key_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        apply_env_overrides(AppConfig(), {})


def test_bad_retention_value_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        apply_env_overrides(AppConfig(), {"SIMPLY_FEED_LLM_API_KEY": "k", "SIMPLY_FEED_ITEMS_RETENTION_DAYS": "five"})
