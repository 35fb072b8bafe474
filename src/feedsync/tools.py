"""Agent tool implementations for feedsync."""

import json
from datetime import datetime, timezone

from langchain_core.tools import tool

from feedsync.database import Database, DuplicateFeedError, FeedNotFoundError
from feedsync.engine import SyncEngine, SyncInProgressError
from feedsync.models import EntryFilter, Feed
from feedsync.scheduler import Scheduler

SUMMARY_PREVIEW_CHARS = 200

# Module-level references, set during agent initialization
_db: Database | None = None
_engine: SyncEngine | None = None
_scheduler: Scheduler | None = None


def set_database(db: Database) -> None:
    """Set the database instance used by all tools."""
    global _db
    _db = db


def set_engine(engine: SyncEngine, scheduler: Scheduler | None = None) -> None:
    """Set the sync engine (and optional background scheduler) used by sync tools."""
    global _engine, _scheduler
    _engine = engine
    _scheduler = scheduler


def _get_db() -> Database:
    """Get the database instance, raising if not set."""
    if _db is None:
        raise RuntimeError("Database not initialized. Call set_database() first.")
    return _db


def _get_engine() -> SyncEngine:
    if _engine is None:
        raise RuntimeError("Sync engine not initialized. Call set_engine() first.")
    return _engine


def _error(message: str, **extra) -> str:
    return json.dumps({"status": "error", "message": message, **extra})


def _resolve_feed(feed_identifier: str) -> tuple[Feed | None, str | None]:
    """Resolve a title or URL to exactly one feed, or an error payload."""
    matches = _get_db().find_feeds(feed_identifier)
    if not matches:
        return None, _error(f"No feed found matching '{feed_identifier}'")
    if len(matches) > 1:
        exact = [f for f in matches if f.url == feed_identifier]
        if len(exact) != 1:
            return None, _error(
                "Multiple feeds match. Please be more specific.",
                matches=[f.display_title for f in matches],
            )
        matches = exact
    return matches[0], None


def _feed_to_dict(feed: Feed) -> dict:
    return {
        "id": feed.id,
        "title": feed.display_title,
        "url": feed.url,
        "tags": sorted(feed.tags),
        "status": "erroring" if feed.error_count > 0 else "active",
        "last_synced_at": feed.last_synced_at.isoformat() if feed.last_synced_at else None,
        "last_outcome": str(feed.last_outcome) if feed.last_outcome else None,
        "error_count": feed.error_count,
        "sync_interval_minutes": feed.sync_interval_minutes,
    }


@tool
def subscribe_to_feed(
    url: str,
    tags: list[str] | None = None,
    sync_interval_minutes: int | None = None,
) -> str:
    """Subscribe to an RSS or Atom feed by URL and pull its current entries.

    Args:
        url: The URL of the RSS or Atom feed to subscribe to.
        tags: Optional tags to file the feed under.
        sync_interval_minutes: Optional per-feed sync interval override.
    """
    db = _get_db()

    try:
        feed = db.add_feed(
            url, tags=tags or (), sync_interval_minutes=sync_interval_minutes
        )
    except DuplicateFeedError:
        return _error("Already subscribed to this feed")
    except ValueError as e:
        return _error(str(e))

    result = {"status": "subscribed", "feed": _feed_to_dict(feed)}

    try:
        summary = _get_engine().run_manual_sync([url])
    except SyncInProgressError:
        result["note"] = "A sync is running; entries will arrive with the next sync."
        return json.dumps(result)

    outcome = summary.per_feed.get(url)
    feed = db.get_feed(url)
    result["feed"] = _feed_to_dict(feed)
    result["entry_count"] = outcome.new if outcome else 0
    if outcome is not None and not outcome.ok:
        result["warnings"] = [f"First sync failed: {outcome}"]
    return json.dumps(result)


@tool
def unsubscribe_from_feed(feed_identifier: str) -> str:
    """Unsubscribe from a feed by its title or URL. Its entries are removed too.

    Args:
        feed_identifier: The title or URL of the feed to unsubscribe from.
    """
    feed, error = _resolve_feed(feed_identifier)
    if error:
        return error

    try:
        _get_db().remove_feed(feed.url)
    except FeedNotFoundError as e:
        return _error(str(e))

    return json.dumps({
        "status": "unsubscribed",
        "feed_title": feed.display_title,
    })


@tool
def list_feeds(tag: str = "") -> str:
    """List subscribed feeds with their sync status.

    Args:
        tag: Optional tag; only feeds carrying it are listed.
    """
    feeds = _get_db().list_feeds(tag=tag or None)

    return json.dumps({
        "feeds": [_feed_to_dict(feed) for feed in feeds],
        "total": len(feeds),
    })


@tool
def tag_feed(feed_identifier: str, tags: list[str]) -> str:
    """Add one or more tags to a feed.

    Args:
        feed_identifier: The title or URL of the feed.
        tags: Tags to add.
    """
    feed, error = _resolve_feed(feed_identifier)
    if error:
        return error
    feed = _get_db().tag_feed(feed.url, tags)
    return json.dumps({"status": "success", "feed": _feed_to_dict(feed)})


@tool
def untag_feed(feed_identifier: str, tags: list[str]) -> str:
    """Remove one or more tags from a feed.

    Args:
        feed_identifier: The title or URL of the feed.
        tags: Tags to remove.
    """
    feed, error = _resolve_feed(feed_identifier)
    if error:
        return error
    feed = _get_db().untag_feed(feed.url, tags)
    return json.dumps({"status": "success", "feed": _feed_to_dict(feed)})


@tool
def get_entries(
    feed_identifier: str = "",
    tag: str = "",
    since: str = "",
    until: str = "",
    unread_only: bool = False,
    limit: int = 20,
) -> str:
    """Get feed entries, optionally filtered by feed, tag, date range, or read status.

    Args:
        feed_identifier: Optional filter by feed title or URL.
        tag: Optional filter by feed tag.
        since: Optional ISO 8601 date, only entries published after it.
        until: Optional ISO 8601 date, only entries published before it.
        unread_only: If true, only return unread entries.
        limit: Maximum number of entries to return (default 20).
    """
    db = _get_db()

    feed_url = None
    if feed_identifier:
        feed, error = _resolve_feed(feed_identifier)
        if error:
            return error
        feed_url = feed.url

    entry_filter = EntryFilter(
        feed_url=feed_url,
        tag=tag or None,
        since=_parse_iso_date(since),
        until=_parse_iso_date(until),
        unread_only=unread_only,
        limit=limit,
    )
    entries = db.query_entries(entry_filter)
    total = db.count_entries(entry_filter)

    return json.dumps({
        "entries": [e.to_dict(summary_limit=SUMMARY_PREVIEW_CHARS) for e in entries],
        "total": total,
        "has_more": total > limit,
    })


@tool
def search_entries(query: str, limit: int = 20) -> str:
    """Search entries by keyword across titles, summaries and authors.

    Args:
        query: The keyword or phrase to search for.
        limit: Maximum number of results to return (default 20).
    """
    db = _get_db()
    entry_filter = EntryFilter(search=query, limit=limit)
    entries = db.query_entries(entry_filter)
    total = db.count_entries(entry_filter)

    return json.dumps({
        "entries": [e.to_dict(summary_limit=SUMMARY_PREVIEW_CHARS) for e in entries],
        "total": total,
        "has_more": total > limit,
    })


@tool
def mark_as_read(
    entry_ids: list[int] | None = None,
    feed_identifier: str = "",
) -> str:
    """Mark one or more entries as read, or mark all entries in a feed as read.

    Args:
        entry_ids: Optional list of specific entry IDs to mark as read.
        feed_identifier: Optional feed title or URL, marks all its entries as read.
    """
    db = _get_db()

    if not entry_ids and not feed_identifier:
        return _error("Provide entry_ids and/or feed_identifier")

    total_marked = 0

    if feed_identifier:
        feed, error = _resolve_feed(feed_identifier)
        if error:
            return error
        total_marked += db.mark_feed_read(feed.url)

    if entry_ids:
        total_marked += db.mark_entries_read(entry_ids)

    return json.dumps({
        "status": "success",
        "entries_marked": total_marked,
    })


@tool
def mark_as_unread(entry_ids: list[int]) -> str:
    """Mark one or more entries as unread.

    Args:
        entry_ids: List of specific entry IDs to mark as unread.
    """
    marked = _get_db().mark_entries_unread(entry_ids)

    return json.dumps({
        "status": "success",
        "entries_marked": marked,
    })


@tool
def sync_feeds(feed_identifier: str = "") -> str:
    """Fetch new entries now, for one feed or for all feeds.

    Args:
        feed_identifier: Optional feed title or URL; all feeds if empty.
    """
    feed_urls = None
    if feed_identifier:
        feed, error = _resolve_feed(feed_identifier)
        if error:
            return error
        feed_urls = [feed.url]

    try:
        summary = _get_engine().run_manual_sync(feed_urls)
    except SyncInProgressError:
        return _error("A sync is already running. Try again when it finishes.")

    return json.dumps({"status": "success", **summary.to_dict()})


@tool
def sync_status() -> str:
    """Report whether background sync is running and how the last sync went."""
    engine = _get_engine()
    last = engine.last_summary
    return json.dumps({
        "scheduler": _scheduler.state.value if _scheduler else "stopped",
        "interval_minutes": _scheduler.interval_minutes if _scheduler else None,
        "sync_running": engine.is_running,
        "last_sync": last.to_dict() if last else None,
    })


def _parse_iso_date(date_str: str) -> datetime | None:
    """Parse an ISO 8601 date string, returning None on failure."""
    if not date_str:
        return None
    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
