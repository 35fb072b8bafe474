"""SQLite storage for feeds and entries."""

import logging
import os
import sqlite3
import threading
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime

from feedsync.dedup import Classification, ClassifiedEntry
from feedsync.models import Entry, EntryFilter, Feed, OutcomeKind, SyncOutcome, utcnow

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    title TEXT,
    last_synced_at TEXT,
    last_attempted_at TEXT,
    last_outcome_kind TEXT,
    last_outcome_new INTEGER DEFAULT 0,
    last_outcome_changed INTEGER DEFAULT 0,
    last_outcome_error_kind TEXT,
    last_outcome_detail TEXT,
    error_count INTEGER DEFAULT 0,
    sync_interval_minutes INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feed_tags (
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    PRIMARY KEY (feed_id, tag)
);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    fingerprint TEXT NOT NULL,
    guid TEXT,
    title TEXT NOT NULL,
    author TEXT,
    link TEXT,
    summary TEXT,
    truncated INTEGER DEFAULT 0,
    content_hash TEXT NOT NULL,
    published_at TEXT,
    first_seen_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    is_read INTEGER DEFAULT 0,
    UNIQUE(feed_id, fingerprint)
);

CREATE INDEX IF NOT EXISTS idx_feed_tags_tag ON feed_tags(tag);
CREATE INDEX IF NOT EXISTS idx_entries_feed_id ON entries(feed_id);
CREATE INDEX IF NOT EXISTS idx_entries_published_at ON entries(published_at);
CREATE INDEX IF NOT EXISTS idx_entries_is_read ON entries(is_read);

CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5(
    title,
    summary,
    author,
    content='entries',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS entries_ai AFTER INSERT ON entries BEGIN
    INSERT INTO entries_fts(rowid, title, summary, author)
    VALUES (new.id, new.title, new.summary, new.author);
END;

CREATE TRIGGER IF NOT EXISTS entries_ad AFTER DELETE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, summary, author)
    VALUES ('delete', old.id, old.title, old.summary, old.author);
END;

CREATE TRIGGER IF NOT EXISTS entries_au AFTER UPDATE ON entries BEGIN
    INSERT INTO entries_fts(entries_fts, rowid, title, summary, author)
    VALUES ('delete', old.id, old.title, old.summary, old.author);
    INSERT INTO entries_fts(rowid, title, summary, author)
    VALUES (new.id, new.title, new.summary, new.author);
END;
"""

UPSERT_ENTRY_SQL = """
INSERT INTO entries (feed_id, fingerprint, guid, title, author, link, summary,
                     truncated, content_hash, published_at, first_seen_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(feed_id, fingerprint) DO UPDATE SET
    guid = excluded.guid,
    title = excluded.title,
    author = excluded.author,
    link = excluded.link,
    summary = excluded.summary,
    truncated = excluded.truncated,
    content_hash = excluded.content_hash,
    published_at = excluded.published_at,
    updated_at = excluded.updated_at
"""


class StoreError(Exception):
    """Base class for storage failures."""

    kind = "store_error"


class DuplicateFeedError(StoreError):
    """Raised when adding a feed whose URL is already stored."""

    kind = "duplicate_feed"


class FeedNotFoundError(StoreError):
    """Raised when a feed URL is not in the store."""

    kind = "feed_not_found"


class CommitFailureError(StoreError):
    """Raised when a write could not be committed; nothing was applied."""

    kind = "commit_failure"


class Database:
    """SQLite database manager for feeds and entries.

    One connection is shared between threads. Every transaction holds the
    connection lock from first statement to commit, and reads take the same
    lock, so a reader never sees part of a batch.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _transaction(self):
        """Run a block as one all-or-nothing transaction."""
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    # --- Feed operations ---

    def add_feed(
        self,
        url: str,
        tags: Iterable[str] = (),
        title: str | None = None,
        sync_interval_minutes: int | None = None,
    ) -> Feed:
        """Insert a new feed with empty sync history.

        Raises:
            DuplicateFeedError: If a feed with this URL already exists.
        """
        _check_interval(sync_interval_minutes)
        feed = Feed(
            url=url,
            title=title,
            tags=_clean_tags(tags),
            sync_interval_minutes=sync_interval_minutes,
        )
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """INSERT INTO feeds (url, title, sync_interval_minutes, created_at)
                       VALUES (?, ?, ?, ?)""",
                    (url, title, sync_interval_minutes, _dt_to_str(feed.created_at)),
                )
                feed.id = cursor.lastrowid
                self._insert_tags(conn, feed.id, feed.tags)
        except sqlite3.IntegrityError:
            raise DuplicateFeedError(f"Already subscribed to {url}")
        logger.info("Added feed %s", url)
        return feed

    def remove_feed(self, url: str) -> None:
        """Delete a feed together with its tags and entries.

        Raises:
            FeedNotFoundError: If no feed has this URL.
        """
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM feeds WHERE url = ?", (url,))
            if cursor.rowcount == 0:
                raise FeedNotFoundError(f"No feed with URL {url}")
        logger.info("Removed feed %s", url)

    def get_feed(self, url: str) -> Feed:
        """Look up a feed by its URL."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM feeds WHERE url = ?", (url,)
            ).fetchone()
            if row is None:
                raise FeedNotFoundError(f"No feed with URL {url}")
            return _row_to_feed(row, self._tags_for(row["id"]))

    def list_feeds(self, tag: str | None = None) -> list[Feed]:
        """Return all feeds, or only those carrying ``tag``."""
        query = "SELECT * FROM feeds"
        params: list = []
        if tag is not None:
            query += """ WHERE id IN (SELECT feed_id FROM feed_tags WHERE tag = ?)"""
            params.append(tag.strip())
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
            tags = self._all_tags()
        return [_row_to_feed(r, tags.get(r["id"], set())) for r in rows]

    def find_feeds(self, identifier: str) -> list[Feed]:
        """Find feeds by URL or title (case-insensitive substring)."""
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM feeds
                   WHERE url = ? OR title LIKE ? ESCAPE '\\'
                   ORDER BY id""",
                (identifier, f"%{_escape_like(identifier)}%"),
            ).fetchall()
            tags = self._all_tags()
        return [_row_to_feed(r, tags.get(r["id"], set())) for r in rows]

    def tag_feed(self, url: str, tags: Iterable[str]) -> Feed:
        """Add tags to a feed. Tags already present are left alone."""
        with self._transaction() as conn:
            feed_id = self._require_feed_id(url)
            self._insert_tags(conn, feed_id, _clean_tags(tags))
        return self.get_feed(url)

    def untag_feed(self, url: str, tags: Iterable[str]) -> Feed:
        """Remove tags from a feed."""
        with self._transaction() as conn:
            feed_id = self._require_feed_id(url)
            conn.executemany(
                "DELETE FROM feed_tags WHERE feed_id = ? AND tag = ?",
                [(feed_id, tag) for tag in _clean_tags(tags)],
            )
        return self.get_feed(url)

    def set_sync_interval(self, url: str, minutes: int | None) -> None:
        """Override (or with ``None`` clear) a feed's own sync interval."""
        _check_interval(minutes)
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE feeds SET sync_interval_minutes = ? WHERE url = ?",
                (minutes, url),
            )
            if cursor.rowcount == 0:
                raise FeedNotFoundError(f"No feed with URL {url}")

    # --- Sync operations ---

    def known_hashes(self, url: str) -> dict[str, str]:
        """Map of fingerprint to content hash for every stored entry of a feed.

        Raises:
            FeedNotFoundError: If the feed was removed.
            StoreError: If the entries could not be read.
        """
        try:
            with self._lock:
                feed_id = self._require_feed_id(url)
                rows = self.conn.execute(
                    "SELECT fingerprint, content_hash FROM entries WHERE feed_id = ?",
                    (feed_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read entries for {url}: {e}") from e
        return {r["fingerprint"]: r["content_hash"] for r in rows}

    def upsert_entries(
        self,
        url: str,
        classified: Iterable[ClassifiedEntry],
        feed_title: str | None = None,
    ) -> tuple[int, int]:
        """Commit one feed's new and changed entries in a single transaction.

        Unchanged entries are skipped. ``feed_title`` fills in the feed's
        title if it has none yet.

        Returns:
            Tuple of (new entries inserted, changed entries updated).

        Raises:
            FeedNotFoundError: If the feed was removed.
            CommitFailureError: If the batch could not be written; none of it
                was applied.
        """
        batch = [
            c for c in classified
            if c.classification is not Classification.UNCHANGED
        ]
        new = sum(1 for c in batch if c.classification is Classification.NEW)
        now = utcnow()
        try:
            with self._transaction() as conn:
                feed_id = self._require_feed_id(url)
                for item in batch:
                    self._write_entry(conn, feed_id, item, now)
                if feed_title:
                    conn.execute(
                        "UPDATE feeds SET title = COALESCE(title, ?) WHERE id = ?",
                        (feed_title, feed_id),
                    )
        except sqlite3.Error as e:
            raise CommitFailureError(
                f"Could not commit {len(batch)} entries for {url}: {e}"
            ) from e
        return new, len(batch) - new

    def record_sync_outcome(
        self, url: str, outcome: SyncOutcome, timestamp: datetime
    ) -> None:
        """Fold one cycle's outcome into the feed's last-sync metadata."""
        if outcome.ok:
            error_sql = "error_count = 0, last_synced_at = :ts"
        else:
            error_sql = "error_count = error_count + 1"
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"""UPDATE feeds SET
                           last_attempted_at = :ts,
                           last_outcome_kind = :kind,
                           last_outcome_new = :new,
                           last_outcome_changed = :changed,
                           last_outcome_error_kind = :error_kind,
                           last_outcome_detail = :detail,
                           {error_sql}
                        WHERE url = :url""",
                    {
                        "ts": _dt_to_str(timestamp),
                        "kind": outcome.kind.value,
                        "new": outcome.new,
                        "changed": outcome.changed,
                        "error_kind": outcome.error_kind,
                        "detail": outcome.detail,
                        "url": url,
                    },
                )
                if cursor.rowcount == 0:
                    raise FeedNotFoundError(f"No feed with URL {url}")
        except sqlite3.Error as e:
            raise CommitFailureError(
                f"Could not record sync outcome for {url}: {e}"
            ) from e

    # --- Entry operations ---

    def query_entries(self, entry_filter: EntryFilter | None = None) -> list[Entry]:
        """Get entries matching a filter, newest first (or by search rank)."""
        entry_filter = entry_filter or EntryFilter()
        where, params = _entry_where(entry_filter)
        if entry_filter.search:
            query = f"""
                SELECT entries.*, feeds.url AS feed_url, feeds.title AS feed_title
                FROM entries_fts
                JOIN entries ON entries.id = entries_fts.rowid
                JOIN feeds ON entries.feed_id = feeds.id
                WHERE entries_fts MATCH ? {where}
                ORDER BY entries_fts.rank
            """
            params = [_fts_phrase(entry_filter.search), *params]
        else:
            query = f"""
                SELECT entries.*, feeds.url AS feed_url, feeds.title AS feed_title
                FROM entries
                JOIN feeds ON entries.feed_id = feeds.id
                WHERE 1=1 {where}
                ORDER BY entries.published_at DESC, entries.id DESC
            """
        query += " LIMIT ? OFFSET ?"
        params += [
            entry_filter.limit if entry_filter.limit is not None else -1,
            entry_filter.offset,
        ]
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count_entries(self, entry_filter: EntryFilter | None = None) -> int:
        """Count entries matching a filter, ignoring limit and offset."""
        entry_filter = entry_filter or EntryFilter()
        where, params = _entry_where(entry_filter)
        if entry_filter.search:
            query = f"""
                SELECT COUNT(*) AS cnt FROM entries_fts
                JOIN entries ON entries.id = entries_fts.rowid
                JOIN feeds ON entries.feed_id = feeds.id
                WHERE entries_fts MATCH ? {where}
            """
            params = [_fts_phrase(entry_filter.search), *params]
        else:
            query = f"""
                SELECT COUNT(*) AS cnt FROM entries
                JOIN feeds ON entries.feed_id = feeds.id
                WHERE 1=1 {where}
            """
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return row["cnt"] if row else 0

    def mark_entries_read(self, entry_ids: list[int]) -> int:
        """Mark specific entries as read. Returns count of affected rows."""
        return self._set_read(entry_ids, True)

    def mark_entries_unread(self, entry_ids: list[int]) -> int:
        """Mark specific entries as unread. Returns count of affected rows."""
        return self._set_read(entry_ids, False)

    def mark_feed_read(self, url: str) -> int:
        """Mark all entries in a feed as read. Returns count of affected rows."""
        with self._transaction() as conn:
            feed_id = self._require_feed_id(url)
            cursor = conn.execute(
                "UPDATE entries SET is_read = 1 WHERE feed_id = ? AND is_read = 0",
                (feed_id,),
            )
            return cursor.rowcount

    # --- Internal helpers ---

    def _write_entry(
        self,
        conn: sqlite3.Connection,
        feed_id: int,
        item: ClassifiedEntry,
        now: datetime,
    ) -> None:
        entry = item.entry
        conn.execute(
            UPSERT_ENTRY_SQL,
            (
                feed_id,
                item.fingerprint,
                entry.guid,
                entry.title,
                entry.author,
                entry.link,
                entry.summary,
                int(entry.truncated),
                item.content_hash,
                _dt_to_str(entry.published_at),
                _dt_to_str(now),
                _dt_to_str(now),
            ),
        )

    def _set_read(self, entry_ids: list[int], is_read: bool) -> int:
        if not entry_ids:
            return 0
        placeholders = ",".join("?" for _ in entry_ids)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""UPDATE entries SET is_read = ?
                    WHERE id IN ({placeholders}) AND is_read = ?""",
                [int(is_read), *entry_ids, int(not is_read)],
            )
            return cursor.rowcount

    def _require_feed_id(self, url: str) -> int:
        row = self.conn.execute(
            "SELECT id FROM feeds WHERE url = ?", (url,)
        ).fetchone()
        if row is None:
            raise FeedNotFoundError(f"No feed with URL {url}")
        return row["id"]

    def _insert_tags(self, conn: sqlite3.Connection, feed_id: int, tags: set[str]) -> None:
        conn.executemany(
            "INSERT OR IGNORE INTO feed_tags (feed_id, tag) VALUES (?, ?)",
            [(feed_id, tag) for tag in sorted(tags)],
        )

    def _tags_for(self, feed_id: int) -> set[str]:
        rows = self.conn.execute(
            "SELECT tag FROM feed_tags WHERE feed_id = ?", (feed_id,)
        ).fetchall()
        return {r["tag"] for r in rows}

    def _all_tags(self) -> dict[int, set[str]]:
        tags: dict[int, set[str]] = {}
        for row in self.conn.execute("SELECT feed_id, tag FROM feed_tags"):
            tags.setdefault(row["feed_id"], set()).add(row["tag"])
        return tags


# --- Helper functions ---


def _check_interval(minutes: int | None) -> None:
    if minutes is not None and minutes <= 0:
        raise ValueError("Sync interval must be a positive number of minutes")


def _clean_tags(tags: Iterable[str]) -> set[str]:
    return {t.strip() for t in tags if t and t.strip()}


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _fts_phrase(text: str) -> str:
    """Quote every search word so user input is never read as FTS syntax."""
    words = text.split()
    return " ".join('"' + w.replace('"', '""') + '"' for w in words) or '""'


def _entry_where(entry_filter: EntryFilter) -> tuple[str, list]:
    clauses = []
    params: list = []
    if entry_filter.feed_url is not None:
        clauses.append("feeds.url = ?")
        params.append(entry_filter.feed_url)
    if entry_filter.tag is not None:
        clauses.append(
            "entries.feed_id IN (SELECT feed_id FROM feed_tags WHERE tag = ?)"
        )
        params.append(entry_filter.tag.strip())
    if entry_filter.since is not None:
        clauses.append("entries.published_at >= ?")
        params.append(_dt_to_str(entry_filter.since))
    if entry_filter.until is not None:
        clauses.append("entries.published_at <= ?")
        params.append(_dt_to_str(entry_filter.until))
    if entry_filter.unread_only:
        clauses.append("entries.is_read = 0")
    where = "".join(f" AND {c}" for c in clauses)
    return where, params


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_outcome(row: sqlite3.Row) -> SyncOutcome | None:
    if not row["last_outcome_kind"]:
        return None
    return SyncOutcome(
        kind=OutcomeKind(row["last_outcome_kind"]),
        new=row["last_outcome_new"] or 0,
        changed=row["last_outcome_changed"] or 0,
        error_kind=row["last_outcome_error_kind"],
        detail=row["last_outcome_detail"],
    )


def _row_to_feed(row: sqlite3.Row, tags: set[str]) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        tags=set(tags),
        last_synced_at=_str_to_dt(row["last_synced_at"]),
        last_attempted_at=_str_to_dt(row["last_attempted_at"]),
        last_outcome=_row_to_outcome(row),
        error_count=row["error_count"] or 0,
        sync_interval_minutes=row["sync_interval_minutes"],
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a joined entries/feeds row to an Entry dataclass."""
    return Entry(
        id=row["id"],
        feed_url=row["feed_url"],
        feed_title=row["feed_title"],
        fingerprint=row["fingerprint"],
        guid=row["guid"],
        title=row["title"],
        author=row["author"],
        link=row["link"],
        summary=row["summary"],
        truncated=bool(row["truncated"]),
        content_hash=row["content_hash"],
        published_at=_str_to_dt(row["published_at"]),
        first_seen_at=_str_to_dt(row["first_seen_at"]) or utcnow(),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
        is_read=bool(row["is_read"]),
    )
