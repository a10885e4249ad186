"""Feed fetching and RSS/Atom normalisation."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

import requests
from bs4 import BeautifulSoup, Tag
from markdown_it import MarkdownIt
from markdownify import markdownify

from .errors import FetchError, FormatError
from .models import (
    UNTITLED_FEED,
    UNTITLED_ITEM,
    Feed,
    FeedItem,
    FeedItemGuid,
    FeedItemType,
    RefLink,
    now_ms,
)

logger = logging.getLogger(__name__)

USER_AGENT_HEADER = "Mozilla/5.0 (compatible; SimplyFeed/0.1; RSS Reader)"
ACCEPT_ENCODING_HEADER = "gzip, deflate"
ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml"
FETCH_FEED_TIMEOUT_SECONDS = 15.0

# Namespace URIs, lower-cased; declarations are matched case-insensitively.
ATOM_NS = "http://www.w3.org/2005/atom"
CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
GOOGLE_PLAY_NS = "http://www.google.com/schemas/play-podcasts/1.0"
DC_NS = "http://purl.org/dc/elements/1.1/"
MEDIA_NS = "http://search.yahoo.com/mrss/"
PODCAST_NS = "https://podcastindex.org/namespace/1.0"

NamespaceMap = Dict[str, Optional[str]]

_MARKDOWN = MarkdownIt("commonmark")
_TRUTHY_FLAGS = {"yes", "true", "explicit"}
_FALSY_FLAGS = {"no", "false", "clean"}


class _FeedDownload:
    """One streamed download that another thread may cancel."""

    def __init__(self, url: str, timeout: float, http):
        self.url = url
        self.timeout = timeout
        self.http = http
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    def run(self) -> bytes:
        try:
            response = self.http.get(
                self.url,
                headers={
                    "Accept": ACCEPT_HEADER,
                    "Accept-Encoding": ACCEPT_ENCODING_HEADER,
                    "User-Agent": USER_AGENT_HEADER,
                },
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch feed from {self.url}: {exc}") from exc

        with self._lock:
            self._response = response
        with response:
            if not 200 <= response.status_code < 300:
                raise FetchError(
                    f"Failed to fetch feed from {self.url}: HTTP error! status: {response.status_code}"
                )

            chunks: List[bytes] = []
            try:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if self._cancelled.is_set():
                        break
                    chunks.append(chunk)
            except (requests.RequestException, OSError, ValueError) as exc:
                if self._cancelled.is_set():
                    raise FetchError(f"Failed to fetch feed from {self.url}: cancelled") from exc
                raise FetchError(f"Failed to fetch feed from {self.url}: {exc}") from exc

        if self._cancelled.is_set():
            raise FetchError(f"Failed to fetch feed from {self.url}: cancelled")
        return b"".join(chunks)

    def cancel(self) -> None:
        """Close the in-flight response so a blocked read stops early."""
        self._cancelled.set()
        with self._lock:
            response = self._response
        if response is not None:
            response.close()


def fetch_feed_document(
    url: str,
    timeout: float = FETCH_FEED_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> bytes:
    """Download a feed document, enforcing ``timeout`` as a total deadline.

    The download runs on a helper thread. When the deadline passes the
    response is closed and ``FetchError`` is raised right away, however
    slowly the server is still sending.
    """
    download = _FeedDownload(url, timeout, session or requests)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="feed-fetch")
    try:
        future = executor.submit(download.run)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            download.cancel()
            logger.warning("Fetching %s exceeded %ss, request cancelled", url, timeout)
            raise FetchError(f"Failed to fetch feed from {url}: timed out after {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)


def fetch_feed(
    feed: Feed,
    timeout: float = FETCH_FEED_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> Tuple[Feed, List[FeedItem]]:
    """Fetch and parse ``feed``; return its refreshed metadata and items."""
    logger.info("Fetching feed %s", feed.feed_url)
    document = fetch_feed_document(feed.feed_url, timeout=timeout, session=session)
    updated, items = parse_feed_document(feed, document)
    logger.info("Collected %d items from feed '%s'", len(items), feed.feed_url)
    return updated, items


def parse_feed_document(feed: Feed, document: Union[bytes, str]) -> Tuple[Feed, List[FeedItem]]:
    """Parse an RSS or Atom document into a copy of ``feed`` plus its items."""
    soup = BeautifulSoup(document, "xml")
    root = soup.find(True)
    if root is None:
        raise FormatError(f"Invalid RSS/Atom feed format: {feed.feed_url}")

    if root.name == "feed":
        channel = root
    else:
        channel = _first(_children(root, "channel"))
        if channel is None:
            raise FormatError(f"Invalid RSS/Atom feed format: {feed.feed_url}")

    ns_map = _namespace_prefix_map(root)
    ns_map.update(_namespace_prefix_map(channel))

    updated = dataclasses.replace(feed, **_channel_fields(channel, ns_map))

    # RSS 1.0 keeps its items beside the channel rather than inside it
    item_parent = root if root.name == "RDF" else channel
    raw_items = _children(item_parent, "item") or _children(item_parent, "entry")
    items = _extract_items(updated.id, raw_items, ns_map)

    published_times = [item.published_time for item in items if item.published_time > 0]
    if published_times:
        updated.latest_item_published_time = max(published_times)
        updated.first_item_published_time = min(published_times)
    updated.last_update_time = now_ms()
    return updated, items


def _channel_fields(channel: Tag, ns_map: NamespaceMap) -> dict:
    image = _first(_children(channel, "image"))
    owner = _first(_children(channel, "owner", ns_map, ITUNES_NS))
    return {
        "title": _child_text(channel, "title") or UNTITLED_FEED,
        "subtitle": _child_text(channel, "subtitle") or "",
        "description": _child_text(channel, "description") or "",
        "language": _child_text(channel, "language"),
        "link": _link_href(channel, ns_map, ATOM_NS) or _link_href(channel) or _child_text(channel, "link"),
        "image_url": (image is not None and _child_text(image, "url"))
        or _attr(channel, "image", "href")
        or _attr(channel, "image", "href", ns_map, ITUNES_NS)
        or None,
        "author": _child_text(channel, "author", ns_map, ITUNES_NS)
        or _child_text(channel, "creator", ns_map, DC_NS),
        "owner_name": _child_text(owner, "name", ns_map, ITUNES_NS) if owner is not None else None,
        "owner_email": _child_text(owner, "email", ns_map, ITUNES_NS) if owner is not None else None,
        "copyright": _child_text(channel, "copyright") or _child_text(channel, "rights"),
        "generator": _child_text(channel, "generator"),
        "is_explicit": _flag(_child_text(channel, "explicit", ns_map, ITUNES_NS)),
        "categories": _categories(channel, ns_map) or None,
    }


def _extract_items(feed_id: str, raw_items: Iterable[Tag], ns_map: NamespaceMap) -> List[FeedItem]:
    items: List[FeedItem] = []
    for raw in raw_items:
        enclosure_url = _attr(raw, "enclosure", "url") or _enclosure_link(raw, ns_map)
        guid = _parse_guid(raw)
        link = (
            _link_href(raw, ns_map, ATOM_NS)
            or _link_href(raw)
            or _child_text(raw, "link")
            or (guid.guid if guid and guid.is_link else None)
        )
        author = (
            _child_text(raw, "author", ns_map, ITUNES_NS)
            or _child_text(raw, "creator", ns_map, DC_NS)
            or _author_name(raw)
            or _child_text(raw, "author")
        )
        image_url = (
            _attr(raw, "content", "url", ns_map, MEDIA_NS)
            or _attr(raw, "thumbnail", "url", ns_map, MEDIA_NS)
            or _attr(raw, "image", "href", ns_map, ITUNES_NS)
        )
        encoded = _child_text(raw, "encoded", ns_map, CONTENT_NS) or _child_text(raw, "content") or ""
        description = _child_text(raw, "description") or _child_text(raw, "summary") or ""

        md_content = html_to_markdown(encoded) if encoded else ""
        md_description = html_to_markdown(description) if description else ""

        # quality filter: a link plus some readable body are required
        if not link or (not md_content and not md_description):
            logger.debug("Skipping item without link or content: %s", link or guid)
            continue

        title = _child_text(raw, "title")
        item = FeedItem(
            id=str(uuid.uuid4()),
            feed_id=feed_id,
            feed_item_type=FeedItemType.PODCAST if enclosure_url else FeedItemType.POST,
            title=strip_html(title) if title else UNTITLED_ITEM,
            subtitle=_child_text(raw, "subtitle") or "",
            description=md_description,
            author=author,
            content=md_content,
            image_url=image_url,
            link=link,
            guid=guid,
            categories=_categories(raw, ns_map),
            enclosure_url=enclosure_url,
            transcript_url=_attr(raw, "transcript", "url", ns_map, PODCAST_NS),
            duration=parse_duration(
                _child_text(raw, "duration", ns_map, ITUNES_NS) or _child_text(raw, "duration")
            ),
            season=_int_or_none(_child_text(raw, "season", ns_map, ITUNES_NS)),
            episode=_int_or_none(_child_text(raw, "episode", ns_map, ITUNES_NS)),
            is_explicit=_flag(_child_text(raw, "explicit", ns_map, ITUNES_NS)),
            published_time=parse_date(
                _child_text(raw, "pubDate")
                or _child_text(raw, "published")
                or _child_text(raw, "updated")
                or _child_text(raw, "date", ns_map, DC_NS)
            ),
            last_update_time=now_ms(),
        )
        item.ref_links = ref_links_from_markdown(item.content, link)
        items.append(item)

    return items


def _namespace_prefix_map(tag: Tag) -> NamespaceMap:
    """Map lower-cased namespace URIs declared on ``tag`` to their prefixes.

    The default namespace maps to ``None``; its elements carry bare names.
    """
    namespaces: NamespaceMap = {}
    for key, value in tag.attrs.items():
        key = str(key)
        if not isinstance(value, str):
            continue
        if key == "xmlns":
            namespaces[value.lower()] = None
        elif key.startswith("xmlns:"):
            namespaces[value.lower()] = key[len("xmlns:") :]
    return namespaces


def _qualified_name(tag: Tag) -> str:
    return f"{tag.prefix}:{tag.name}" if tag.prefix else tag.name


def _children(
    parent: Optional[Tag],
    name: str,
    ns_map: Optional[NamespaceMap] = None,
    namespace: Optional[str] = None,
) -> List[Tag]:
    """Direct children of ``parent`` named ``name`` within ``namespace``.

    Without a namespace only un-prefixed elements match. A namespace the
    document never declared matches nothing.
    """
    if parent is None:
        return []
    wanted = name
    if namespace is not None:
        if ns_map is None or namespace not in ns_map:
            return []
        prefix = ns_map[namespace]
        wanted = f"{prefix}:{name}" if prefix else name
    return [child for child in parent.find_all(True, recursive=False) if _qualified_name(child) == wanted]


def _first(tags: List[Tag]) -> Optional[Tag]:
    return tags[0] if tags else None


def _text(tag: Optional[Tag]) -> Optional[str]:
    if tag is None:
        return None
    # inline xhtml content keeps its markup
    value = tag.decode_contents() if tag.find(True) is not None else tag.get_text()
    value = value.strip()
    return value or None


def _child_text(
    parent: Optional[Tag],
    name: str,
    ns_map: Optional[NamespaceMap] = None,
    namespace: Optional[str] = None,
) -> Optional[str]:
    return _text(_first(_children(parent, name, ns_map, namespace)))


def _attr(
    parent: Tag,
    name: str,
    attr: str,
    ns_map: Optional[NamespaceMap] = None,
    namespace: Optional[str] = None,
) -> Optional[str]:
    tag = _first(_children(parent, name, ns_map, namespace))
    if tag is None:
        return None
    value = tag.get(attr)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _link_href(
    parent: Tag, ns_map: Optional[NamespaceMap] = None, namespace: Optional[str] = None
) -> Optional[str]:
    """``href`` of the first alternate (or rel-less) link element."""
    for link in _children(parent, "link", ns_map, namespace):
        href = link.get("href")
        if href and link.get("rel", "alternate") == "alternate":
            return href.strip()
    return None


def _enclosure_link(parent: Tag, ns_map: NamespaceMap) -> Optional[str]:
    for link in _children(parent, "link", ns_map, ATOM_NS) + _children(parent, "link"):
        if link.get("rel") == "enclosure" and link.get("href"):
            return link["href"].strip()
    return None


def _author_name(parent: Tag) -> Optional[str]:
    return _child_text(_first(_children(parent, "author")), "name")


def _parse_guid(parent: Tag) -> Optional[FeedItemGuid]:
    guid_tag = _first(_children(parent, "guid"))
    guid = _text(guid_tag)
    if guid:
        is_permalink = str(guid_tag.get("isPermaLink", "")).strip().lower()
        return FeedItemGuid(guid=guid, is_link=is_permalink != "false")

    # Atom entry ids are identities, not links
    entry_id = _child_text(parent, "id")
    if entry_id:
        return FeedItemGuid(guid=entry_id, is_link=False)
    return None


def _categories(parent: Tag, ns_map: NamespaceMap) -> List[str]:
    categories: List[str] = []
    for tag in _children(parent, "category"):
        value = _text(tag) or tag.get("term")
        if value:
            categories.append(value.strip())
    for tag in _children(parent, "category", ns_map, ITUNES_NS):
        value = tag.get("text")
        if value:
            categories.append(value.strip())
    return list(dict.fromkeys(categories))


def _flag(value: Optional[str]) -> Optional[bool]:
    if not value:
        return None
    value = value.strip().lower()
    if value in _TRUTHY_FLAGS:
        return True
    if value in _FALSY_FLAGS:
        return False
    return None


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_duration(value: Optional[str]) -> Optional[int]:
    """Parse ``H:MM:SS``, ``MM:SS`` or ``SS`` into total seconds."""
    if not value:
        return None
    try:
        parts = [int(float(part)) for part in value.strip().split(":")]
    except ValueError:
        return None

    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 1:
        return parts[0]
    return None


def parse_date(value: Optional[str]) -> int:
    """Parse RFC 822 or ISO 8601 dates into epoch milliseconds; 0 when unknown."""
    if not value:
        return 0
    value = value.strip()

    parsed: Optional[datetime]
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        parsed = None

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable date: %s", value)
            return 0

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def html_to_markdown(raw_value: str) -> str:
    """Convert an HTML fragment to Markdown."""
    return markdownify(raw_value, heading_style="ATX").strip()


def strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def ref_links_from_markdown(content: str, item_link: str) -> Optional[List[RefLink]]:
    """Collect outbound links in ``content`` that do not point back at the item."""
    if not content:
        return None

    links: List[RefLink] = []
    for token in _MARKDOWN.parse(content):
        if token.type != "inline" or not token.children:
            continue
        current: Optional[dict] = None
        for child in token.children:
            if child.type == "link_open":
                current = {"url": str(child.attrGet("href") or ""), "title": child.attrGet("title"), "text": []}
            elif child.type == "link_close" and current is not None:
                url = current["url"]
                if url and not url.startswith(item_link):
                    text = "".join(current["text"])
                    links.append(RefLink(url=url, title=current["title"] or text or None))
                current = None
            elif child.type == "text" and current is not None:
                current["text"].append(child.content)

    return links or None
