"""Sync engine: fetches subscribed feeds and merges them into the store."""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from enum import Enum

from feedsync.config import SyncConfig
from feedsync.database import Database, StoreError
from feedsync.dedup import plan_merge
from feedsync.feed_parser import (
    FeedFetcher,
    FeedParseError,
    FetchError,
    FetchErrorKind,
    ParsedFeed,
)
from feedsync.models import CycleSummary, Feed, SyncOutcome, utcnow

logger = logging.getLogger(__name__)

FetchFunc = Callable[[str], Awaitable[ParsedFeed]]

# error_kind for failures that are neither fetch, parse nor store errors
UNEXPECTED_ERROR_KIND = "unexpected"


class CycleState(Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_RESULTS = "awaiting_results"
    MERGING = "merging"
    COMPLETED = "completed"


class SyncInProgressError(Exception):
    """Raised when a cycle is requested while another one is running."""


class SyncEngine:
    """Runs sync cycles over the feeds in a Database.

    Only one cycle runs at a time, across threads and event loops; a second
    request is rejected with SyncInProgressError rather than queued.

    Args:
        db: The store to read feeds from and commit entries to.
        config: Concurrency and fetch limits.
        fetch: Optional coroutine function ``url -> ParsedFeed`` used instead
            of a FeedFetcher session.
    """

    def __init__(
        self,
        db: Database,
        config: SyncConfig | None = None,
        fetch: FetchFunc | None = None,
    ):
        self.db = db
        self.config = config or SyncConfig()
        self._fetch = fetch
        self._cycle_lock = threading.Lock()
        self.state = CycleState.IDLE
        self.in_flight = 0
        self.last_summary: CycleSummary | None = None

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def run_manual_sync(self, feed_urls: Iterable[str] | None = None) -> CycleSummary:
        """Run one cycle to completion from synchronous code.

        Must not be called from a thread that already runs an event loop;
        use ``await run_cycle(...)`` there.

        Raises:
            SyncInProgressError: If a scheduled or manual cycle is running.
            FeedNotFoundError: If one of ``feed_urls`` is not subscribed.
        """
        return asyncio.run(self.run_cycle(feed_urls))

    async def run_cycle(
        self,
        feed_urls: Iterable[str] | None = None,
        due_only: bool = False,
    ) -> CycleSummary:
        """Fetch and merge every selected feed once.

        Args:
            feed_urls: Restrict the cycle to these feeds. All feeds if None.
            due_only: Skip feeds whose own sync interval has not elapsed.

        Returns:
            CycleSummary with one outcome per dispatched feed. A cycle always
            completes, even when every feed fails.
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise SyncInProgressError("A sync cycle is already running")
        try:
            summary = await self._run_cycle(feed_urls, due_only)
        except BaseException:
            self.state = CycleState.IDLE
            raise
        finally:
            self._cycle_lock.release()
        self.last_summary = summary
        return summary

    async def _run_cycle(
        self, feed_urls: Iterable[str] | None, due_only: bool
    ) -> CycleSummary:
        summary = CycleSummary(started_at=utcnow())
        self.state = CycleState.DISPATCHING
        feeds = self._select_feeds(feed_urls, due_only, summary)
        logger.info("Sync cycle started: %d feeds", len(feeds))

        semaphore = asyncio.Semaphore(self.config.max_concurrent_fetches)
        async with self._fetcher() as fetch:
            tasks = [
                asyncio.create_task(self._sync_feed(feed, fetch, semaphore, summary))
                for feed in feeds
            ]
            self.state = CycleState.AWAITING_RESULTS
            results = await asyncio.gather(*tasks, return_exceptions=True)

        for feed, result in zip(feeds, results):
            if isinstance(result, Exception):
                logger.error(
                    "Feed '%s' sync failed: %s",
                    feed.display_title,
                    result,
                    exc_info=result,
                )
                summary.per_feed[feed.url] = SyncOutcome.store_error(
                    UNEXPECTED_ERROR_KIND, f"{type(result).__name__}: {result}"
                )

        summary.completed_at = utcnow()
        self.state = CycleState.COMPLETED
        logger.info(
            "Sync cycle complete: %d ok, %d failed, %d new, %d changed",
            summary.succeeded,
            summary.failed,
            summary.new_entries,
            summary.changed_entries,
        )
        return summary

    def _select_feeds(
        self,
        feed_urls: Iterable[str] | None,
        due_only: bool,
        summary: CycleSummary,
    ) -> list[Feed]:
        if feed_urls is None:
            feeds = self.db.list_feeds()
        else:
            feeds = [self.db.get_feed(url) for url in dict.fromkeys(feed_urls)]
        if due_only:
            feeds = [f for f in feeds if f.is_due(summary.started_at)]
        return feeds

    @asynccontextmanager
    async def _fetcher(self):
        if self._fetch is not None:
            yield self._fetch
            return
        async with FeedFetcher(
            timeout_seconds=self.config.per_feed_timeout_seconds,
            max_payload_bytes=self.config.max_payload_bytes,
            user_agent=self.config.user_agent,
        ) as fetcher:
            yield fetcher.fetch

    async def _sync_feed(
        self,
        feed: Feed,
        fetch: FetchFunc,
        semaphore: asyncio.Semaphore,
        summary: CycleSummary,
    ) -> None:
        try:
            async with semaphore:
                self.in_flight += 1
                try:
                    parsed = await asyncio.wait_for(
                        fetch(feed.url), timeout=self.config.per_feed_timeout_seconds
                    )
                finally:
                    self.in_flight -= 1
        except asyncio.TimeoutError:
            outcome = SyncOutcome.fetch_error(
                FetchErrorKind.TIMEOUT.value,
                f"Timed out after {self.config.per_feed_timeout_seconds}s",
            )
        except FetchError as e:
            outcome = SyncOutcome.fetch_error(e.kind.value, str(e))
        except FeedParseError as e:
            outcome = SyncOutcome.parse_error(e.kind.value, str(e))
        except Exception as e:
            logger.exception("Feed '%s' unexpected error", feed.display_title)
            outcome = SyncOutcome.fetch_error(
                UNEXPECTED_ERROR_KIND, f"{type(e).__name__}: {e}"
            )
        else:
            outcome = self._merge(feed, parsed)

        outcome = self._record(feed, outcome)
        summary.per_feed[feed.url] = outcome

    def _merge(self, feed: Feed, parsed: ParsedFeed) -> SyncOutcome:
        """Classify and commit one feed's entries. Runs without awaiting."""
        self.state = CycleState.MERGING
        try:
            known = self.db.known_hashes(feed.url)
            plan = plan_merge(feed.url, parsed.entries, known)
            new, changed = self.db.upsert_entries(
                feed.url, plan, feed_title=parsed.title
            )
        except StoreError as e:
            return SyncOutcome.store_error(e.kind, str(e))
        finally:
            self.state = CycleState.AWAITING_RESULTS
        if new or changed:
            logger.info(
                "Feed '%s': %d new, %d changed entries",
                feed.display_title,
                new,
                changed,
            )
        return SyncOutcome.updated(new, changed)

    def _record(self, feed: Feed, outcome: SyncOutcome) -> SyncOutcome:
        if not outcome.ok:
            logger.warning("Feed '%s' error: %s", feed.display_title, outcome)
        try:
            self.db.record_sync_outcome(feed.url, outcome, utcnow())
        except StoreError as e:
            logger.warning(
                "Feed '%s': could not record sync outcome: %s", feed.display_title, e
            )
            if outcome.ok:
                return SyncOutcome.store_error(e.kind, str(e))
        return outcome
