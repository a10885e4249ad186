"""LLM summarisation and topic extraction over an OpenAI-compatible API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from openai import OpenAI

from .errors import ConfigurationError, LLMResponseError
from .templating import render_prompt

logger = logging.getLogger(__name__)

DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_LLM_MODEL = "gemini-2.5-flash-lite"
DEFAULT_LLM_TIMEOUT_SECONDS = 30.0
DEFAULT_LLM_MAX_RETRIES = 2

SUMMARY_MAX_WORDS = 100
SUMMARY_MAX_TOPICS = 5

# Priming the assistant turn with an opening brace nudges models to answer in bare JSON.
_JSON_PRIMER = "{"


@dataclass
class SummaryResult:
    summary: str
    topics: List[str]


def _normalise_topics(values: List[Any]) -> List[str]:
    return [value.strip().lower() for value in values if isinstance(value, str) and value.strip()]


class Summarizer:
    """Summarises feed items and derives topics for search queries.

    Transport failures are retried by the OpenAI client itself (bounded
    exponential backoff with jitter); every call is bounded by the client
    timeout. All failures are logged and reported as ``None``.
    """

    def __init__(self, client: OpenAI, model: str = DEFAULT_LLM_MODEL):
        self._client = client
        self.model = model

    @classmethod
    def from_settings(
        cls,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = DEFAULT_LLM_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_LLM_MAX_RETRIES,
    ) -> "Summarizer":
        if not api_key:
            raise ConfigurationError("Missing SIMPLY_FEED_LLM_API_KEY.")
        client = OpenAI(
            api_key=api_key,
            base_url=base_url or DEFAULT_LLM_BASE_URL,
            timeout=timeout,
            max_retries=max_retries,
        )
        return cls(client, model or DEFAULT_LLM_MODEL)

    def summarize(self, text: str, topics: Iterable[str] = ()) -> Optional[SummaryResult]:
        """Summarise ``text``, preferring labels from the existing ``topics``."""
        system_prompt = render_prompt("summary_system", topics=sorted(set(topics)))
        user_prompt = render_prompt(
            "summary_user", text=text, max_words=SUMMARY_MAX_WORDS, max_topics=SUMMARY_MAX_TOPICS
        )
        try:
            parsed = self._complete_json(system_prompt, user_prompt)
            summary = parsed.get("summary")
            topics_value = parsed.get("topics")
            if not isinstance(summary, str) or not summary.strip() or not isinstance(topics_value, list):
                raise LLMResponseError(f"Invalid response: {parsed}")
            return SummaryResult(summary=summary.strip(), topics=_normalise_topics(topics_value))
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to summarize text: %s", exc)
            return None

    def determine_topics(self, text: str) -> Optional[List[str]]:
        """Derive lowercase topics for a free-text query."""
        system_prompt = render_prompt("summary_system", topics=[])
        user_prompt = render_prompt("query_user", text=text)
        try:
            parsed = self._complete_json(system_prompt, user_prompt)
            topics_value = parsed.get("topics")
            if not isinstance(topics_value, list):
                raise LLMResponseError(f"Invalid response: {parsed}")
            return _normalise_topics(topics_value)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to determine query topics: %s", exc)
            return None

    def _complete_json(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
            {"role": "assistant", "content": _JSON_PRIMER},
        ]
        logger.debug("LLM request payload: %s", user_prompt)
        response = self._client.chat.completions.create(model=self.model, messages=messages)

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise LLMResponseError("No response from model.")
        content = choices[0].message.content
        if not content or not content.strip():
            raise LLMResponseError("Empty content")

        logger.debug("LLM response text: %s", content)
        content = content.strip()
        if not content.startswith(_JSON_PRIMER):
            content = _JSON_PRIMER + content
        try:
            parsed = json.loads(content)
        except ValueError as exc:
            raise LLMResponseError(f"Response is not valid JSON: {content}") from exc

        if not isinstance(parsed, dict):
            raise LLMResponseError(f"Response is not a JSON object: {content}")
        return parsed
