"""RSS/Atom feed fetching and parsing using aiohttp and feedparser."""

import asyncio
import io
import logging
import re
import time
import xml.sax
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from urllib.parse import urlparse

import aiohttp
import feedparser


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_PAYLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_USER_AGENT = "feedsync/0.1.0"

CHUNK_SIZE = 64 * 1024

# Conventional "read more" delimiters used by blog engines.
TRUNCATION_MARKER = re.compile(r"<!--\s*more\b[^>]*-->", re.IGNORECASE)


class FetchErrorKind(Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    TOO_LARGE = "too_large"


class ParseErrorKind(Enum):
    MALFORMED_DOCUMENT = "malformed_document"
    MISSING_REQUIRED_FIELD = "missing_required_field"


class FetchError(Exception):
    """Raised when a feed cannot be retrieved."""

    def __init__(self, kind: FetchErrorKind, message: str, status: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status = status


class FeedParseError(Exception):
    """Raised when a retrieved document cannot be turned into entries."""

    def __init__(self, kind: ParseErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class ParsedEntry:
    """One normalized entry, as yielded by the source."""

    guid: str | None
    title: str
    link: str | None = None
    author: str | None = None
    summary: str | None = None
    published_at: datetime | None = None
    truncated: bool = False


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    title: str
    description: str | None
    site_link: str | None
    entries: list[ParsedEntry]
    warnings: list[str] = field(default_factory=list)


class FeedFetcher:
    """Async feed fetcher with a bounded timeout and payload size.

    Use as an async context manager; one HTTP session is shared by every
    fetch made inside the block.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_payload_bytes = max_payload_bytes
        self.user_agent = user_agent
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            headers={"User-Agent": self.user_agent},
        )
        return self

    async def __aexit__(self, *args):
        if self.session:
            await self.session.close()
            self.session = None

    async def fetch(self, url: str) -> ParsedFeed:
        """Fetch and parse an RSS or Atom feed from a URL.

        Raises:
            FetchError: If the URL is invalid, unreachable, too slow or too big.
            FeedParseError: If the body is not a usable RSS or Atom document.
        """
        body = await self.fetch_bytes(url)
        # Large documents take seconds to parse.
        return await asyncio.to_thread(parse_feed, body, url)

    async def fetch_bytes(self, url: str) -> bytes:
        if self.session is None:
            raise RuntimeError("FeedFetcher must be used as an async context manager")
        _validate_url(url)

        start = time.monotonic()
        try:
            async with self.session.get(url) as response:
                if response.status >= 400:
                    raise FetchError(
                        FetchErrorKind.HTTP_STATUS,
                        f"Could not reach URL: HTTP {response.status}",
                        status=response.status,
                    )
                declared = response.content_length
                if declared is not None and declared > self.max_payload_bytes:
                    raise self._too_large(declared)

                body = bytearray()
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    body.extend(chunk)
                    if len(body) > self.max_payload_bytes:
                        raise self._too_large(len(body))
        except asyncio.TimeoutError:
            raise FetchError(
                FetchErrorKind.TIMEOUT,
                f"Timed out after {self.timeout_seconds}s",
            )
        except aiohttp.ClientError as e:
            raise FetchError(FetchErrorKind.NETWORK, f"Could not reach URL: {e}")

        logger.debug(
            "Fetched %s (%d bytes, %dms)",
            url,
            len(body),
            int((time.monotonic() - start) * 1000),
        )
        return bytes(body)

    def _too_large(self, size: int) -> FetchError:
        return FetchError(
            FetchErrorKind.TOO_LARGE,
            f"Payload of {size} bytes exceeds limit of {self.max_payload_bytes}",
        )


def parse_feed(body: bytes | str, url: str | None = None) -> ParsedFeed:
    """Parse an RSS or Atom document into a ParsedFeed.

    Entries keep the order the source lists them in. HTML inside summaries
    is passed through untouched so truncation markers stay visible.

    Raises:
        FeedParseError: If the document is not a feed or lacks required fields.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")
    # A stream, so feedparser never treats the body as a path or URL to open.
    parsed = feedparser.parse(
        io.BytesIO(body),
        sanitize_html=False,
        resolve_relative_uris=False,
    )

    if not parsed.get("version") and not parsed.entries:
        detail = f": {parsed.bozo_exception}" if parsed.bozo else ""
        raise FeedParseError(
            ParseErrorKind.MALFORMED_DOCUMENT,
            f"Document does not look like an RSS or Atom feed{detail}",
        )

    # The loose fallback parser silently drops everything after the break.
    if parsed.bozo and isinstance(parsed.bozo_exception, xml.sax.SAXException):
        raise FeedParseError(
            ParseErrorKind.MALFORMED_DOCUMENT,
            f"Feed is not well-formed XML: {parsed.bozo_exception}",
        )

    title = (parsed.feed.get("title") or "").strip()
    if not title:
        raise FeedParseError(
            ParseErrorKind.MISSING_REQUIRED_FIELD,
            "Feed has no title",
        )

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(f"Feed has formatting issues: {parsed.bozo_exception}")
        logger.debug("Feed %s parsed with issues: %s", url, parsed.bozo_exception)

    entries = [
        _extract_entry(raw, position)
        for position, raw in enumerate(parsed.entries)
    ]

    return ParsedFeed(
        title=title,
        description=parsed.feed.get("description") or parsed.feed.get("subtitle"),
        site_link=parsed.feed.get("link"),
        entries=entries,
        warnings=warnings,
    )


def _validate_url(url: str) -> None:
    """Validate that the URL has a fetchable format."""
    try:
        result = urlparse(url)
    except ValueError:
        raise FetchError(FetchErrorKind.NETWORK, "Invalid URL format")
    if not result.scheme or not result.netloc:
        raise FetchError(FetchErrorKind.NETWORK, "Invalid URL format")
    if result.scheme not in ("http", "https"):
        raise FetchError(
            FetchErrorKind.NETWORK,
            "Invalid URL format: only http and https are supported",
        )


def _extract_entry(entry, position: int) -> ParsedEntry:
    """Normalize one feedparser entry."""
    guid = (entry.get("id") or "").strip() or None
    link = entry.get("link") or None
    title = (entry.get("title") or "").strip()

    if not (guid or link or title):
        raise FeedParseError(
            ParseErrorKind.MISSING_REQUIRED_FIELD,
            f"Entry #{position + 1} has no id, link or title",
        )

    summary = entry.get("summary") or entry.get("description")
    if not summary and entry.get("content"):
        summary = entry.content[0].get("value")

    return ParsedEntry(
        guid=guid,
        title=title or "Untitled",
        link=link,
        author=entry.get("author") or None,
        summary=summary or None,
        published_at=_parse_date(entry),
        truncated=bool(summary and TRUNCATION_MARKER.search(summary)),
    )


def _parse_date(entry) -> datetime | None:
    """Parse publication date from a feedparser entry, in UTC."""
    for field_name in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field_name)
        if time_struct:
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return None
