"""Tests for the SQLite store."""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from feedsync.database import (
    CommitFailureError,
    Database,
    DuplicateFeedError,
    FeedNotFoundError,
    StoreError,
)
from feedsync.dedup import plan_merge
from feedsync.feed_parser import ParsedEntry
from feedsync.models import EntryFilter, OutcomeKind, SyncOutcome

FEED_URL = "https://example.com/rss"
OTHER_URL = "https://other.example.com/atom"


def _entries(*guids, summary="Body"):
    return [
        ParsedEntry(
            guid=g,
            title=f"Entry {g}",
            link=f"https://example.com/{g}",
            summary=f"{summary} {g}",
            published_at=datetime(2026, 2, 13, 10, i, tzinfo=timezone.utc),
        )
        for i, g in enumerate(guids)
    ]


def _commit(db, url, entries):
    plan = plan_merge(url, entries, db.known_hashes(url))
    return db.upsert_entries(url, plan)


class TestFeeds:
    """Tests for feed operations."""

    def test_add_and_list(self, db):
        feed = db.add_feed(FEED_URL, tags=["news", "tech"])

        assert feed.id is not None
        feeds = db.list_feeds()
        assert len(feeds) == 1
        assert feeds[0].url == FEED_URL
        assert feeds[0].tags == {"news", "tech"}
        assert feeds[0].last_synced_at is None
        assert feeds[0].last_outcome is None

    def test_duplicate_feed(self, db):
        db.add_feed(FEED_URL)
        with pytest.raises(DuplicateFeedError):
            db.add_feed(FEED_URL, tags=["other"])
        assert len(db.list_feeds()) == 1

    def test_list_by_tag(self, db):
        db.add_feed(FEED_URL, tags=["news"])
        db.add_feed(OTHER_URL, tags=["blogs"])

        assert [f.url for f in db.list_feeds(tag="news")] == [FEED_URL]
        assert db.list_feeds(tag="missing") == []

    def test_tag_and_untag(self, db):
        db.add_feed(FEED_URL, tags=["news"])

        feed = db.tag_feed(FEED_URL, ["tech", " news ", ""])
        assert feed.tags == {"news", "tech"}

        feed = db.untag_feed(FEED_URL, ["news"])
        assert feed.tags == {"tech"}

    def test_tag_unknown_feed(self, db):
        with pytest.raises(FeedNotFoundError):
            db.tag_feed(FEED_URL, ["x"])

    def test_find_feeds(self, db):
        db.add_feed(FEED_URL, title="Example News")
        db.add_feed(OTHER_URL, title="Other Blog")

        assert [f.url for f in db.find_feeds("news")] == [FEED_URL]
        assert [f.url for f in db.find_feeds(OTHER_URL)] == [OTHER_URL]

    def test_find_feeds_wildcards_are_literal(self, db):
        """Should treat % and _ in a title search as plain characters."""
        db.add_feed(FEED_URL, title="dev_log")
        db.add_feed(OTHER_URL, title="devXlog 100 percent")

        assert [f.url for f in db.find_feeds("dev_log")] == [FEED_URL]
        assert db.find_feeds("100%") == []
        assert [f.url for f in db.find_feeds("100")] == [OTHER_URL]

    def test_get_unknown_feed(self, db):
        with pytest.raises(FeedNotFoundError):
            db.get_feed(FEED_URL)

    def test_sync_interval_override(self, db):
        db.add_feed(FEED_URL, sync_interval_minutes=15)
        assert db.get_feed(FEED_URL).sync_interval_minutes == 15

        db.set_sync_interval(FEED_URL, None)
        assert db.get_feed(FEED_URL).sync_interval_minutes is None

        with pytest.raises(ValueError):
            db.set_sync_interval(FEED_URL, 0)

    def test_remove_feed_removes_entries(self, db):
        """Should delete the feed, its tags and all its entries together."""
        db.add_feed(FEED_URL, tags=["news"])
        db.add_feed(OTHER_URL)
        _commit(db, FEED_URL, _entries("e1", "e2"))
        _commit(db, OTHER_URL, _entries("o1"))

        db.remove_feed(FEED_URL)

        assert [f.url for f in db.list_feeds()] == [OTHER_URL]
        remaining = db.query_entries(EntryFilter(limit=None))
        assert [e.feed_url for e in remaining] == [OTHER_URL]
        assert db.count_entries(EntryFilter(search="Entry e1")) == 0

    def test_remove_unknown_feed(self, db):
        with pytest.raises(FeedNotFoundError):
            db.remove_feed(FEED_URL)


class TestUpsertEntries:
    """Tests for committing entry batches."""

    def test_inserts_new_entries(self, db):
        db.add_feed(FEED_URL)

        assert _commit(db, FEED_URL, _entries("e1", "e2")) == (2, 0)

        entries = db.query_entries(EntryFilter(feed_url=FEED_URL))
        assert {e.guid for e in entries} == {"e1", "e2"}

    def test_unchanged_entries_skipped(self, db):
        db.add_feed(FEED_URL)
        _commit(db, FEED_URL, _entries("e1", "e2"))

        assert _commit(db, FEED_URL, _entries("e1", "e2")) == (0, 0)
        assert db.count_entries(EntryFilter(feed_url=FEED_URL)) == 2

    def test_changed_entry_updated_in_place(self, db):
        """Should update a re-published entry without duplicating it."""
        db.add_feed(FEED_URL)
        _commit(db, FEED_URL, _entries("e1"))
        before = db.query_entries(EntryFilter(feed_url=FEED_URL))[0]

        assert _commit(db, FEED_URL, _entries("e1", summary="Edited")) == (0, 1)

        entries = db.query_entries(EntryFilter(feed_url=FEED_URL))
        assert len(entries) == 1
        after = entries[0]
        assert after.id == before.id
        assert after.summary == "Edited e1"
        assert after.content_hash != before.content_hash
        assert after.first_seen_at == before.first_seen_at
        assert after.updated_at >= before.updated_at

    def test_known_hashes_read_failure(self, db, monkeypatch):
        """Should report an unreadable entries table as a store error."""
        db.add_feed(FEED_URL)

        class BrokenConnection:
            def execute(self, *args):
                raise sqlite3.OperationalError("disk I/O error")

            def close(self):
                pass

        monkeypatch.setattr(db, "_conn", BrokenConnection())

        with pytest.raises(StoreError, match="disk I/O error"):
            db.known_hashes(FEED_URL)

    def test_fills_missing_title(self, db):
        db.add_feed(FEED_URL)
        db.upsert_entries(FEED_URL, [], feed_title="Example")
        assert db.get_feed(FEED_URL).title == "Example"

        db.upsert_entries(FEED_URL, [], feed_title="Renamed")
        assert db.get_feed(FEED_URL).title == "Example"

    def test_unknown_feed(self, db):
        with pytest.raises(FeedNotFoundError):
            db.upsert_entries(FEED_URL, [])

    def test_failed_batch_applies_nothing(self, db, monkeypatch):
        """Should roll back the whole batch when a write fails midway."""
        db.add_feed(FEED_URL)
        _commit(db, FEED_URL, _entries("e1"))
        plan = plan_merge(
            FEED_URL, _entries("e1", "e2", "e3", summary="v2"), db.known_hashes(FEED_URL)
        )

        original = Database._write_entry
        calls = []

        def flaky_write(self, conn, feed_id, item, now):
            calls.append(item.fingerprint)
            if len(calls) == 2:
                raise sqlite3.OperationalError("disk I/O error")
            return original(self, conn, feed_id, item, now)

        monkeypatch.setattr(Database, "_write_entry", flaky_write)

        with pytest.raises(CommitFailureError):
            db.upsert_entries(FEED_URL, plan)

        entries = db.query_entries(EntryFilter(feed_url=FEED_URL))
        assert [e.guid for e in entries] == ["e1"]
        assert entries[0].summary == "Body e1"

    def test_interrupted_batch_applies_nothing(self, db, monkeypatch):
        """Should roll back when the commit is interrupted by any exception."""
        db.add_feed(FEED_URL)
        plan = plan_merge(FEED_URL, _entries("e1", "e2"), {})

        original = Database._write_entry

        def interrupted(self, conn, feed_id, item, now):
            original(self, conn, feed_id, item, now)
            raise KeyboardInterrupt

        monkeypatch.setattr(Database, "_write_entry", interrupted)

        with pytest.raises(KeyboardInterrupt):
            db.upsert_entries(FEED_URL, plan)

        assert db.count_entries(EntryFilter(feed_url=FEED_URL)) == 0

    def test_batches_are_independent_per_feed(self, db, monkeypatch):
        db.add_feed(FEED_URL)
        db.add_feed(OTHER_URL)
        _commit(db, FEED_URL, _entries("e1", "e2"))

        def broken(self, conn, feed_id, item, now):
            raise sqlite3.OperationalError("boom")

        monkeypatch.setattr(Database, "_write_entry", broken)
        with pytest.raises(CommitFailureError):
            _commit(db, OTHER_URL, _entries("o1"))

        assert db.count_entries(EntryFilter(feed_url=FEED_URL)) == 2

    def test_reader_never_sees_partial_batch(self, db, monkeypatch):
        """Should block readers on other threads until the batch commits."""
        db.add_feed(FEED_URL)
        plan = plan_merge(FEED_URL, _entries("e1", "e2", "e3"), {})

        original = Database._write_entry
        first_written = threading.Event()
        observed = []

        def slow_write(self, conn, feed_id, item, now):
            original(self, conn, feed_id, item, now)
            if not first_written.is_set():
                first_written.set()
                reader.start()
                reader.join(timeout=0.2)

        def read():
            observed.append(db.count_entries(EntryFilter(feed_url=FEED_URL)))

        reader = threading.Thread(target=read)
        monkeypatch.setattr(Database, "_write_entry", slow_write)

        db.upsert_entries(FEED_URL, plan)
        reader.join(timeout=5)

        assert observed == [3]


class TestSyncOutcome:
    """Tests for recording per-feed outcomes."""

    def test_success_updates_timestamps(self, db):
        db.add_feed(FEED_URL)
        now = datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)

        db.record_sync_outcome(FEED_URL, SyncOutcome.updated(2, 0), now)

        feed = db.get_feed(FEED_URL)
        assert feed.last_synced_at == now
        assert feed.last_attempted_at == now
        assert feed.last_outcome == SyncOutcome.updated(2, 0)
        assert feed.error_count == 0

    def test_failure_keeps_last_success(self, db):
        """Should count errors without moving the last successful sync."""
        db.add_feed(FEED_URL)
        ok_at = datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)
        db.record_sync_outcome(FEED_URL, SyncOutcome.unchanged(), ok_at)

        failed_at = ok_at + timedelta(hours=1)
        outcome = SyncOutcome.fetch_error("timeout", "Timed out after 30s")
        db.record_sync_outcome(FEED_URL, outcome, failed_at)
        db.record_sync_outcome(FEED_URL, outcome, failed_at)

        feed = db.get_feed(FEED_URL)
        assert feed.last_synced_at == ok_at
        assert feed.last_attempted_at == failed_at
        assert feed.last_outcome.kind is OutcomeKind.FETCH_ERROR
        assert feed.last_outcome.error_kind == "timeout"
        assert feed.error_count == 2

        db.record_sync_outcome(FEED_URL, SyncOutcome.unchanged(), failed_at)
        assert db.get_feed(FEED_URL).error_count == 0

    def test_unknown_feed(self, db):
        with pytest.raises(FeedNotFoundError):
            db.record_sync_outcome(
                FEED_URL, SyncOutcome.unchanged(), datetime.now(timezone.utc)
            )


class TestQueryEntries:
    """Tests for reading entries back."""

    @pytest.fixture
    def populated(self, db):
        db.add_feed(FEED_URL, tags=["news"], title="Example News")
        db.add_feed(OTHER_URL, tags=["blogs"], title="Other Blog")
        _commit(db, FEED_URL, _entries("e1", "e2"))
        _commit(db, OTHER_URL, [
            ParsedEntry(
                guid="o1",
                title="Python packaging tips",
                author="Carol",
                summary="Wheels and sdists",
                published_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            )
        ])
        return db

    def test_newest_first(self, populated):
        entries = populated.query_entries()
        assert [e.guid for e in entries] == ["o1", "e2", "e1"]
        assert entries[0].feed_title == "Other Blog"

    def test_filter_by_tag(self, populated):
        entries = populated.query_entries(EntryFilter(tag="news"))
        assert {e.guid for e in entries} == {"e1", "e2"}

    def test_filter_by_date(self, populated):
        since = datetime(2026, 2, 20, tzinfo=timezone.utc)
        assert [e.guid for e in populated.query_entries(EntryFilter(since=since))] == ["o1"]
        assert populated.count_entries(EntryFilter(until=since)) == 2

    def test_limit_and_offset(self, populated):
        entries = populated.query_entries(EntryFilter(limit=1, offset=1))
        assert [e.guid for e in entries] == ["e2"]

    def test_search(self, populated):
        """Should search titles, summaries and authors."""
        assert [e.guid for e in populated.query_entries(EntryFilter(search="packaging"))] == ["o1"]
        assert [e.guid for e in populated.query_entries(EntryFilter(search="carol"))] == ["o1"]
        assert populated.count_entries(EntryFilter(search="Body", feed_url=FEED_URL)) == 2

    def test_search_input_is_not_query_syntax(self, populated):
        assert populated.query_entries(EntryFilter(search='unbalanced" OR')) == []

    def test_read_state(self, populated):
        ids = [e.id for e in populated.query_entries(EntryFilter(feed_url=FEED_URL))]

        assert populated.mark_entries_read(ids[:1]) == 1
        assert populated.count_entries(EntryFilter(unread_only=True)) == 2

        assert populated.mark_feed_read(FEED_URL) == 1
        assert populated.count_entries(EntryFilter(unread_only=True)) == 1

        assert populated.mark_entries_unread(ids) == 2
        assert populated.mark_entries_unread([]) == 0


class TestDurability:
    """Tests for state surviving a restart."""

    def test_committed_state_survives_reopen(self, tmp_db_path):
        db = Database(tmp_db_path)
        db.connect()
        db.add_feed(FEED_URL, tags=["news"])
        _commit(db, FEED_URL, _entries("e1", "e2"))
        db.record_sync_outcome(
            FEED_URL, SyncOutcome.updated(2, 0), datetime.now(timezone.utc)
        )
        db.close()

        reopened = Database(tmp_db_path)
        reopened.connect()
        try:
            feed = reopened.get_feed(FEED_URL)
            assert feed.tags == {"news"}
            assert feed.last_outcome == SyncOutcome.updated(2, 0)
            assert reopened.count_entries(EntryFilter(feed_url=FEED_URL)) == 2
        finally:
            reopened.close()
