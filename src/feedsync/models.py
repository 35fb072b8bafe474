"""Data models for feedsync."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeKind(Enum):
    """Per-feed result classification of one sync cycle."""

    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FETCH_ERROR = "fetch_error"
    PARSE_ERROR = "parse_error"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of syncing one feed in one cycle."""

    kind: OutcomeKind
    new: int = 0
    changed: int = 0
    error_kind: str | None = None
    detail: str | None = None

    @classmethod
    def unchanged(cls) -> "SyncOutcome":
        return cls(OutcomeKind.UNCHANGED)

    @classmethod
    def updated(cls, new: int, changed: int) -> "SyncOutcome":
        if new == 0 and changed == 0:
            return cls.unchanged()
        return cls(OutcomeKind.UPDATED, new=new, changed=changed)

    @classmethod
    def fetch_error(cls, error_kind: str, detail: str | None = None) -> "SyncOutcome":
        return cls(OutcomeKind.FETCH_ERROR, error_kind=error_kind, detail=detail)

    @classmethod
    def parse_error(cls, error_kind: str, detail: str | None = None) -> "SyncOutcome":
        return cls(OutcomeKind.PARSE_ERROR, error_kind=error_kind, detail=detail)

    @classmethod
    def store_error(cls, error_kind: str, detail: str | None = None) -> "SyncOutcome":
        return cls(OutcomeKind.STORE_ERROR, error_kind=error_kind, detail=detail)

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.UNCHANGED, OutcomeKind.UPDATED)

    def __str__(self) -> str:
        if self.kind is OutcomeKind.UPDATED:
            return f"updated({self.new}, {self.changed})"
        if self.ok:
            return self.kind.value
        text = f"{self.kind.value}({self.error_kind})"
        return f"{text}: {self.detail}" if self.detail else text

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly dictionary."""
        return {
            "kind": self.kind.value,
            "new": self.new,
            "changed": self.changed,
            "error_kind": self.error_kind,
            "detail": self.detail,
        }


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source."""

    url: str
    title: str | None = None
    tags: set[str] = field(default_factory=set)
    last_synced_at: datetime | None = None
    last_attempted_at: datetime | None = None
    last_outcome: SyncOutcome | None = None
    error_count: int = 0
    sync_interval_minutes: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None

    @property
    def display_title(self) -> str:
        return self.title or self.url

    def is_due(self, now: datetime) -> bool:
        """Whether a scheduled cycle should include this feed.

        Feeds without an interval override follow the scheduler's own cadence.
        """
        if self.sync_interval_minutes is None or self.last_attempted_at is None:
            return True
        elapsed = (now - self.last_attempted_at).total_seconds()
        return elapsed >= self.sync_interval_minutes * 60


@dataclass
class Entry:
    """Represents a single stored entry from a feed."""

    feed_url: str
    fingerprint: str
    title: str
    content_hash: str
    guid: str | None = None
    author: str | None = None
    link: str | None = None
    summary: str | None = None
    truncated: bool = False
    published_at: datetime | None = None
    first_seen_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    is_read: bool = False
    feed_title: str | None = None
    id: int | None = None

    def to_dict(self, summary_limit: int | None = None) -> dict:
        summary = self.summary or ""
        if summary_limit is not None:
            summary = summary[:summary_limit]
        return {
            "id": self.id,
            "feed_url": self.feed_url,
            "feed_title": self.feed_title,
            "title": self.title,
            "author": self.author,
            "link": self.link,
            "summary": summary,
            "truncated": self.truncated,
            "published_at": _iso(self.published_at),
            "first_seen_at": _iso(self.first_seen_at),
            "updated_at": _iso(self.updated_at),
            "is_read": self.is_read,
        }


@dataclass
class EntryFilter:
    """Criteria for reading entries back out of the store."""

    feed_url: str | None = None
    tag: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    unread_only: bool = False
    search: str | None = None
    limit: int | None = 50
    offset: int = 0


@dataclass
class CycleSummary:
    """Report of one sync cycle, handed back to the caller."""

    started_at: datetime
    completed_at: datetime | None = None
    per_feed: dict[str, SyncOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.per_feed.values() if outcome.ok)

    @property
    def failed(self) -> int:
        return len(self.per_feed) - self.succeeded

    @property
    def new_entries(self) -> int:
        return sum(outcome.new for outcome in self.per_feed.values())

    @property
    def changed_entries(self) -> int:
        return sum(outcome.changed for outcome in self.per_feed.values())

    def to_dict(self) -> dict:
        return {
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "new_entries": self.new_entries,
            "changed_entries": self.changed_entries,
            "feeds": {url: o.to_dict() for url, o in self.per_feed.items()},
        }


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None
