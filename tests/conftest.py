"""Shared test fixtures for feedsync tests."""

import asyncio
import os
import tempfile
from datetime import datetime, timezone

import pytest

from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.feed_parser import ParsedEntry, ParsedFeed


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <author>alice@example.com (Alice)</author>
      <description>Description of the second article</description>
      <pubDate>Thu, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Thu, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <author><name>Bob</name></author>
    <content type="html">Full content of entry 1</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_TRUNCATED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Blog</title>
    <link>https://blog.example.com</link>
    <item>
      <title>Long Post</title>
      <guid>long-post</guid>
      <description><![CDATA[<p>Intro paragraph.</p><!-- more --><p>The rest.</p>]]></description>
    </item>
  </channel>
</rss>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Malformed Feed</title>
    <link>https://example.com</link>
    <item>
      <title>Good Item</title>
      <guid>good-item</guid>
    </item>
    <item>
      <title>Bad Item</title>
      <!-- Missing closing tags intentionally -->
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

SAMPLE_UNTITLED_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <link>https://example.com</link>
    <item><title>Orphan</title><guid>orphan</guid></item>
  </channel>
</rss>"""


class FakeFetch:
    """Stands in for FeedFetcher.fetch, serving canned results per URL."""

    def __init__(self, responses: dict | None = None, delay: float = 0):
        self.responses = responses or {}
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, url: str) -> ParsedFeed:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            result = self.responses[url]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.in_flight -= 1


def make_parsed_feed(*guids: str, title: str = "Example Feed", summary: str = "Body") -> ParsedFeed:
    """Build a ParsedFeed with one entry per guid, in the given order."""
    return ParsedFeed(
        title=title,
        description=None,
        site_link=None,
        entries=[
            ParsedEntry(
                guid=guid,
                title=f"Entry {guid}",
                link=f"https://example.com/{guid}",
                summary=f"{summary} {guid}",
                published_at=datetime(2026, 2, 13, 10, i, tzinfo=timezone.utc),
            )
            for i, guid in enumerate(guids)
        ],
    )


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """Provide a connected Database on a temporary file."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def sync_config():
    """Engine settings with short timeouts for tests."""
    return SyncConfig(max_concurrent_fetches=4, per_feed_timeout_seconds=1)


@pytest.fixture
def make_fetch():
    """Factory for FakeFetch stand-ins."""
    return FakeFetch


@pytest.fixture
def make_feed():
    """Factory for ParsedFeed results."""
    return make_parsed_feed


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_truncated_xml():
    """Sample RSS whose summary carries a read-more marker."""
    return SAMPLE_TRUNCATED_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample malformed RSS XML."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML


@pytest.fixture
def sample_untitled_feed_xml():
    """Sample RSS without a channel title."""
    return SAMPLE_UNTITLED_FEED_XML
