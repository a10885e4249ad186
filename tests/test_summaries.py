import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from simply_feed import summaries
from simply_feed.errors import ConfigurationError
from simply_feed.summaries import Summarizer


def _response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def client():
    return MagicMock()


def test_summarize_primes_json_and_parses_reply(client):
    client.chat.completions.create.return_value = _response(
        '"summary": "A short summary.", "topics": ["Python", "AI", 3]}'
    )
    summarizer = Summarizer(client, model="test-model")

    result = summarizer.summarize("Some article", topics={"python"})

    assert result.summary == "A short summary."
    assert result.topics == ["python", "ai"]

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    roles = [message["role"] for message in kwargs["messages"]]
    assert roles == ["system", "user", "assistant"]
    assert kwargs["messages"][-1]["content"] == "{"
    assert "python" in kwargs["messages"][0]["content"]
    assert "Some article" in kwargs["messages"][1]["content"]


def test_summarize_accepts_reply_that_repeats_the_brace(client):
    client.chat.completions.create.return_value = _response('{"summary": "S", "topics": []}')

    result = Summarizer(client).summarize("text")

    assert result.summary == "S"
    assert result.topics == []


@pytest.mark.parametrize(
    "content",
    [
        None,
        "   ",
        "not json at all",
        '"summary": "", "topics": []}',
        '"summary": "S"}',
        '"summary": "S", "topics": "python"}',
    ],
)
def test_summarize_invalid_replies_return_none(client, content, caplog):
    client.chat.completions.create.return_value = _response(content)

    with caplog.at_level(logging.ERROR):
        assert Summarizer(client).summarize("text") is None
    assert "Failed to summarize" in caplog.text


def test_summarize_without_choices_returns_none(client):
    client.chat.completions.create.return_value = SimpleNamespace(choices=[])

    assert Summarizer(client).summarize("text") is None


def test_summarize_transport_errors_return_none(client):
    client.chat.completions.create.side_effect = RuntimeError("connection reset")

    assert Summarizer(client).summarize("text") is None


def test_determine_topics(client):
    client.chat.completions.create.return_value = _response('"topics": ["Rust", "WebAssembly"]}')

    assert Summarizer(client).determine_topics("rust in the browser") == ["rust", "webassembly"]


def test_determine_topics_failure_returns_none(client):
    client.chat.completions.create.return_value = _response('"topics": null}')

    assert Summarizer(client).determine_topics("anything") is None


def test_from_settings_requires_api_key():
    with pytest.raises(ConfigurationError):
        Summarizer.from_settings(api_key=None)


def test_from_settings_configures_client_timeout_and_retries():
    with patch.object(summaries, "OpenAI") as mock_openai:
        summarizer = Summarizer.from_settings(api_key="secret", model=None, timeout=12.5, max_retries=4)

    mock_openai.assert_called_once_with(
        api_key="secret",
        base_url=summaries.DEFAULT_LLM_BASE_URL,
        timeout=12.5,
        max_retries=4,
    )
    assert summarizer.model == summaries.DEFAULT_LLM_MODEL
