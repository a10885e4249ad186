"""Shared data models for simply_feed."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type

UNTITLED_FEED = "Untitled Feed"
UNTITLED_ITEM = "Untitled"


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value):
        return _to_dict(value)
    if isinstance(value, list):
        return [_to_json_value(item) for item in value]
    return value


def _to_dict(obj: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for model_field in dataclasses.fields(obj):
        value = getattr(obj, model_field.name)
        if value is None:
            continue
        payload[_camel(model_field.name)] = _to_json_value(value)
    return payload


def _pick(cls: Type[Any], data: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase payload keys onto the dataclass fields of ``cls``."""
    values = {}
    for model_field in dataclasses.fields(cls):
        key = _camel(model_field.name)
        if key in data:
            values[model_field.name] = data[key]
    return values


class FeedItemType(str, Enum):
    POST = "Post"
    PODCAST = "Podcast"


@dataclass
class FeedItemGuid:
    guid: str
    is_link: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedItemGuid":
        return cls(**_pick(cls, data))


@dataclass
class RefLink:
    """Outbound link found in an item's content."""

    url: str
    title: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefLink":
        return cls(**_pick(cls, data))


@dataclass
class Feed:
    """A subscribed RSS/Atom source with aggregated metadata."""

    id: str
    feed_url: str
    title: str = UNTITLED_FEED
    subtitle: str = ""
    description: str = ""
    language: Optional[str] = None
    link: Optional[str] = None
    image_url: Optional[str] = None
    author: Optional[str] = None
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None
    copyright: Optional[str] = None
    generator: Optional[str] = None
    is_explicit: Optional[bool] = None
    is_unreachable: Optional[bool] = None
    categories: Optional[List[str]] = None
    latest_item_published_time: int = 0
    first_item_published_time: int = 0
    last_update_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feed":
        return cls(**_pick(cls, data))


@dataclass
class FeedItem:
    """One entry (article or episode) belonging to a feed."""

    id: str
    feed_id: str
    link: str
    title: str = UNTITLED_ITEM
    feed_item_type: FeedItemType = FeedItemType.POST
    subtitle: str = ""
    description: str = ""
    author: Optional[str] = None
    content: str = ""
    image_url: Optional[str] = None
    guid: Optional[FeedItemGuid] = None
    categories: Optional[List[str]] = None

    enclosure_url: Optional[str] = None
    transcript_url: Optional[str] = None
    duration: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    is_explicit: Optional[bool] = None

    summary: Optional[str] = None
    topics: Optional[List[str]] = None
    ref_links: Optional[List[RefLink]] = None

    published_time: int = 0
    last_update_time: int = 0

    @property
    def identity_key(self) -> str:
        """Deduplication key: the guid when present, otherwise the link."""
        if self.guid and self.guid.guid:
            return self.guid.guid
        return self.link

    def to_dict(self) -> Dict[str, Any]:
        return _to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedItem":
        values = _pick(cls, data)
        if "feed_item_type" in values:
            values["feed_item_type"] = FeedItemType(values["feed_item_type"])
        if isinstance(values.get("guid"), dict):
            values["guid"] = FeedItemGuid.from_dict(values["guid"])
        if values.get("ref_links") is not None:
            values["ref_links"] = [RefLink.from_dict(link) for link in values["ref_links"]]
        return cls(**values)


@dataclass
class FeedConfig:
    """Configuration for a single subscribed feed."""

    feed_url: str

