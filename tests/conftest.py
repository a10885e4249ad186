import itertools
from typing import Iterable, List, Optional

import pytest

from simply_feed.file_table import FileTableStore
from simply_feed.models import FeedItem, FeedItemGuid
from simply_feed.summaries import SummaryResult

DAY_MS = 24 * 60 * 60 * 1000
NOW_MS = 1_760_000_000_000

RSS_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>Example Blog</title>
    <link>https://blog.example.com/</link>
    <atom:link href="https://blog.example.com/feed.xml" rel="self" type="application/rss+xml"/>
    <description>Posts about &lt;b&gt;things&lt;/b&gt;</description>
    <language>en-us</language>
    <copyright>2025 Example</copyright>
    <generator>Hand Rolled</generator>
    <dc:creator>Jane Writer</dc:creator>
    <image><url>https://blog.example.com/logo.png</url></image>
    <item>
      <title>First &lt;em&gt;post&lt;/em&gt;</title>
      <link>https://blog.example.com/first</link>
      <guid isPermaLink="false">post-1</guid>
      <pubDate>Tue, 10 Jun 2025 10:00:00 GMT</pubDate>
      <description>Short &lt;b&gt;teaser&lt;/b&gt;</description>
      <content:encoded><![CDATA[<p>Full text with <a href="https://other.example.org/ref" title="Reference">a ref</a>
        and <a href="https://blog.example.com/first#more">self</a>.</p>]]></content:encoded>
      <category>Python</category>
      <category>Python</category>
    </item>
    <item>
      <title>Second post</title>
      <guid>https://blog.example.com/second</guid>
      <pubDate>Wed, 11 Jun 2025 10:00:00 GMT</pubDate>
      <description>Only a description</description>
    </item>
    <item>
      <title>No body</title>
      <link>https://blog.example.com/empty</link>
      <pubDate>Thu, 12 Jun 2025 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>No link</title>
      <guid isPermaLink="false">orphan</guid>
      <description>Text without a link</description>
    </item>
  </channel>
</rss>
"""

ATOM_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <subtitle>An Atom feed</subtitle>
  <link rel="self" href="https://atom.example.com/feed.atom"/>
  <link rel="alternate" href="https://atom.example.com/"/>
  <rights>CC-BY</rights>
  <entry>
    <title>Atom entry</title>
    <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a</id>
    <link rel="self" href="https://atom.example.com/entry.atom"/>
    <link href="https://atom.example.com/entry"/>
    <published>2025-06-10T08:30:00Z</published>
    <updated>2025-06-11T08:30:00Z</updated>
    <author><name>Atom Author</name></author>
    <category term="atoms"/>
    <summary>Entry summary</summary>
  </entry>
</feed>
"""

PODCAST_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd"
     xmlns:podcast="https://podcastindex.org/namespace/1.0">
  <channel>
    <title>Example Cast</title>
    <link>https://cast.example.com</link>
    <description>A show</description>
    <itunes:author>Pod Host</itunes:author>
    <itunes:owner>
      <itunes:name>Owner Name</itunes:name>
      <itunes:email>owner@example.com</itunes:email>
    </itunes:owner>
    <itunes:image href="https://cast.example.com/art.jpg"/>
    <itunes:explicit>yes</itunes:explicit>
    <itunes:category text="Technology"/>
    <item>
      <title>Episode 1</title>
      <link>https://cast.example.com/1</link>
      <guid>https://cast.example.com/1</guid>
      <pubDate>Mon, 09 Jun 2025 12:00:00 +0000</pubDate>
      <description>Episode notes</description>
      <enclosure url="https://cast.example.com/1.mp3" length="123" type="audio/mpeg"/>
      <itunes:duration>1:02:03</itunes:duration>
      <itunes:season>2</itunes:season>
      <itunes:episode>7</itunes:episode>
      <itunes:explicit>no</itunes:explicit>
      <itunes:image href="https://cast.example.com/1.jpg"/>
      <podcast:transcript url="https://cast.example.com/1.vtt" type="text/vtt"/>
    </item>
  </channel>
</rss>
"""


_ids = itertools.count(1)


def make_item(
    feed_id: str = "feed-1",
    published_time: int = NOW_MS,
    link: Optional[str] = None,
    guid: Optional[str] = None,
    **kwargs,
) -> FeedItem:
    index = next(_ids)
    return FeedItem(
        id=kwargs.pop("id", f"item-{index}"),
        feed_id=feed_id,
        link=link or f"https://example.com/items/{index}",
        guid=FeedItemGuid(guid) if guid else None,
        content=kwargs.pop("content", "Some content"),
        published_time=published_time,
        **kwargs,
    )


class FakeSummarizer:
    """Records calls and answers with canned results."""

    def __init__(self, results: Optional[Iterable[Optional[SummaryResult]]] = None, topics=None):
        self._results = list(results) if results is not None else None
        self.topics = topics
        self.calls: List[tuple] = []
        self.query_calls: List[str] = []

    def summarize(self, text, topics=()):
        self.calls.append((text, set(topics)))
        if self._results is None:
            return SummaryResult(summary=f"summary {len(self.calls)}", topics=["news"])
        return self._results.pop(0) if self._results else None

    def determine_topics(self, text):
        self.query_calls.append(text)
        return self.topics


class FakeClock:
    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def feeds_table(tmp_path):
    return FileTableStore(tmp_path / "feeds.table.json")


@pytest.fixture
def items_table(tmp_path):
    return FileTableStore(tmp_path / "feeditems.table.json")
