"""Exception hierarchy for simply_feed."""

from __future__ import annotations


class SimplyFeedError(Exception):
    """Base class for all simply_feed errors."""


class ConfigurationError(SimplyFeedError):
    """A required setting or credential is missing or invalid."""


class FetchError(SimplyFeedError):
    """A feed could not be downloaded (network, timeout or HTTP status)."""


class FormatError(SimplyFeedError):
    """A persisted record or a feed document could not be understood."""


class LLMResponseError(SimplyFeedError):
    """The language model returned an empty or malformed completion."""


class StorageCapacityError(SimplyFeedError):
    """An entity is too large to be stored within the chunk ceiling."""


class NotFoundError(SimplyFeedError):
    """A directly requested feed or item does not exist."""
