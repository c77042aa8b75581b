"""
Sync Engine - keeps the local article store in step with the remote feed.

Handles:
- refresh (restart from the first page) and load-more (next page) per context
- At most one sync in flight per context; concurrent refreshes share it
- Retry with exponential backoff for transient errors
- Cursor bookkeeping and change notifications for views
- Guaranteed release of the in-flight flag on success, error or cancellation
"""

import asyncio
import dataclasses
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from tenacity import RetryCallState

from .backoff import BackoffPolicy
from .database.models import Article, PageCursor, UpsertResult
from .exceptions import ErrorKind, FeedSyncError, FetchError, NetworkError, StoreUnavailable

if TYPE_CHECKING:
    from .database import Database
    from .feed_client import FeedClient, FeedPage


logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    BACKOFF = "backoff"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"  # Some pages merged before a later page failed
    FAILED = "failed"
    NOOP = "noop"  # Nothing to do; served from cache


@dataclass
class SyncState:
    """Per-context sync bookkeeping. Only the engine mutates it; others get copies."""
    context: str
    status: SyncStatus = SyncStatus.IDLE
    in_flight: bool = False
    last_synced_at: datetime | None = None
    last_error: str | None = None
    last_error_code: str | None = None
    retry_count: int = 0
    disabled: bool = False  # Set by a local store error until reset()


@dataclass
class SyncResult:
    """What a refresh/load-more call hands back to the presentation layer."""
    context: str
    outcome: SyncOutcome
    upsert: UpsertResult = field(default_factory=UpsertResult)
    error: FeedSyncError | None = None
    pages_fetched: int = 0
    end_of_feed: bool = False
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome in (SyncOutcome.SUCCESS, SyncOutcome.NOOP)

    @property
    def show_retry(self) -> bool:
        """Whether the view should offer a retry. Only transient failures clear up by retrying."""
        return (
            self.outcome in (SyncOutcome.FAILED, SyncOutcome.PARTIAL)
            and self.error is not None
            and self.error.transient
        )

    @property
    def warning(self) -> str | None:
        if self.outcome is SyncOutcome.PARTIAL and self.error is not None:
            return f"Showing partially updated results: {self.error}"
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Orchestrates fetch, merge and persist cycles for each filter context."""

    def __init__(
        self,
        db: "Database",
        client: "FeedClient",
        page_size: int = 20,
        backoff: BackoffPolicy | None = None,
        fetch_timeout: float = 15,
        initial_pages: int = 1,
        stale_after: timedelta = timedelta(minutes=15),
        cursor_ttl: timedelta = timedelta(hours=24),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._db = db
        self._client = client
        self.page_size = page_size
        self.backoff = backoff or BackoffPolicy()
        self.fetch_timeout = fetch_timeout
        self.initial_pages = max(1, initial_pages)
        self.stale_after = stale_after
        self.cursor_ttl = cursor_ttl
        self._sleep = sleep
        self._clock = clock

        self._states: dict[str, SyncState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, int] = {}
        self._local_errors: dict[str, FeedSyncError] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._versions: dict[str, int] = {}

    # ─────────────────────────────────────────────────────────────
    # Presentation operations
    # ─────────────────────────────────────────────────────────────

    async def refresh(self, context: str) -> SyncResult:
        """
        Restart the context from its first page.

        Joins the in-flight sync for the context if there is one. Older pages
        already in the store are kept.
        """
        return await self._run(context, functools.partial(self._sync, context, True))

    async def load_more(self, context: str) -> SyncResult:
        """Fetch the next page. No-op at end of feed or while a sync is in flight."""
        state = self._state(context)
        if state.in_flight:
            return SyncResult(context, SyncOutcome.NOOP, from_cache=True)

        try:
            cursor = self._db.get_cursor(context)
        except StoreUnavailable as error:
            if not error.transient:
                return self._fail(context, error, UpsertResult(), 0, None)
            # The sync re-reads it under the retry policy
            cursor = None

        if cursor is not None and cursor.end_of_feed:
            return SyncResult(context, SyncOutcome.NOOP, end_of_feed=True, from_cache=True)

        return await self._run(context, functools.partial(self._sync, context, False))

    async def ensure_fresh(self, context: str, max_age: timedelta | None = None) -> SyncResult:
        """Serve from cache if the context was fetched recently, otherwise refresh."""
        max_age = max_age if max_age is not None else self.stale_after
        if not self._state(context).in_flight:
            try:
                cursor = self._db.get_cursor(context)
            except StoreUnavailable as error:
                if not error.transient:
                    return self._fail(context, error, UpsertResult(), 0, None)
                cursor = None
            if cursor is not None and cursor.fetched_at and self._clock() - cursor.fetched_at < max_age:
                return SyncResult(
                    context, SyncOutcome.NOOP, end_of_feed=cursor.end_of_feed, from_cache=True
                )
        return await self.refresh(context)

    async def fetch_detail(self, article_id: str) -> Article | None:
        """
        Cache-first article detail.

        A failed remote lookup falls back to the cached record when there is one.
        """
        cached = self._db.get_article(article_id)
        if cached is not None and cached.body:
            return cached

        try:
            detail = await self._with_timeout(self._client.fetch_detail(article_id), f"detail {article_id}")
        except FetchError as error:
            logger.warning(f"Could not fetch detail for {article_id}: {error}")
            if cached is not None:
                return cached
            raise

        if detail is None:
            return cached

        if cached is None and detail.article is not None:
            self._db.upsert([detail.article], now=self._clock())
        self._db.update_article_content(article_id, detail.content, detail.summary)
        return self._db.get_article(article_id)

    # ─────────────────────────────────────────────────────────────
    # State, teardown and notifications
    # ─────────────────────────────────────────────────────────────

    def state(self, context: str) -> SyncState:
        """Snapshot copy of the context's sync state."""
        return dataclasses.replace(self._state(context))

    def states(self) -> dict[str, SyncState]:
        return {context: dataclasses.replace(s) for context, s in self._states.items()}

    def reset(self, context: str):
        """Clear a recorded error, re-enabling a context disabled by a local error."""
        state = self._state(context)
        state.disabled = False
        state.last_error = None
        state.last_error_code = None
        state.retry_count = 0
        self._local_errors.pop(context, None)
        logger.info(f"Sync state for {context} reset")

    async def cancel(self, context: str) -> bool:
        """Cancel the in-flight sync for a context. Returns True if one was running."""
        task = self._tasks.get(context)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return True

    async def close(self):
        """Cancel every in-flight sync."""
        for context in list(self._tasks):
            await self.cancel(context)

    def subscribe(self, context: str) -> asyncio.Queue:
        """Queue receiving a version number each time the context's data changes."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(context, set()).add(queue)
        return queue

    def unsubscribe(self, context: str, queue: asyncio.Queue):
        subscribers = self._subscribers.get(context)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[context]

    def version(self, context: str) -> int:
        return self._versions.get(context, 0)

    def _notify(self, context: str):
        self._versions[context] = self._versions.get(context, 0) + 1
        for queue in self._subscribers.get(context, ()):
            queue.put_nowait(self._versions[context])

    def _state(self, context: str) -> SyncState:
        state = self._states.get(context)
        if state is None:
            state = self._states[context] = SyncState(context=context)
        return state

    # ─────────────────────────────────────────────────────────────
    # In-flight management
    # ─────────────────────────────────────────────────────────────

    async def _run(self, context: str, operation: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        task = self._tasks.get(context)
        if task is None or task.done():
            state = self._state(context)
            if state.disabled:
                error = self._local_errors.get(context) or StoreUnavailable("Sync disabled for context")
                return SyncResult(context, SyncOutcome.FAILED, error=error, from_cache=True)

            state.in_flight = True
            state.status = SyncStatus.SYNCING
            task = asyncio.create_task(self._guarded(context, operation), name=f"sync:{context}")
            task.add_done_callback(functools.partial(self._release, context))
            self._tasks[context] = task
        else:
            logger.debug(f"Joining in-flight sync for {context}")

        self._waiters[context] = self._waiters.get(context, 0) + 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The shared sync only goes away with its last caller
            if self._waiters.get(context) == 1 and not task.done():
                task.cancel()
                await asyncio.wait([task])
            raise
        finally:
            remaining = self._waiters.get(context, 1) - 1
            if remaining > 0:
                self._waiters[context] = remaining
            else:
                self._waiters.pop(context, None)

    async def _guarded(self, context: str, operation: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        try:
            return await operation()
        finally:
            state = self._state(context)
            state.in_flight = False
            state.status = SyncStatus.IDLE

    def _release(self, context: str, task: asyncio.Task):
        # Runs even if the task was cancelled before it ever started
        if self._tasks.get(context) is not task:
            return
        del self._tasks[context]
        state = self._state(context)
        state.in_flight = False
        state.status = SyncStatus.IDLE
        if task.cancelled():
            logger.info(f"Sync for {context} cancelled")

    # ─────────────────────────────────────────────────────────────
    # Sync cycle
    # ─────────────────────────────────────────────────────────────

    async def _sync(self, context: str, restart: bool) -> SyncResult:
        state = self._state(context)
        total = UpsertResult()
        fetched = 0
        token: str | None = None

        try:
            cursor = None
            if not restart:
                cursor = await self._retrying(context, functools.partial(self._load_cursor, context))
            if cursor is not None:
                token = cursor.token
                pages_loaded = cursor.pages_loaded
            else:
                pages_loaded = 0
            target_pages = self.initial_pages if restart else 1

            end_of_feed = False
            while fetched < target_pages and not end_of_feed:
                page, upsert = await self._retrying(
                    context, functools.partial(self._fetch_and_merge, context, token)
                )
                if upsert.changed:
                    self._notify(context)
                await self._retrying(context, functools.partial(
                    self._save_cursor, context, page.next_cursor, pages_loaded + 1, page.end_of_feed
                ))
                # A page counts once its cursor is saved
                fetched += 1
                pages_loaded += 1
                total = total.merge(upsert)
                token = page.next_cursor
                end_of_feed = page.end_of_feed
        except FeedSyncError as error:
            return self._fail(context, error, total, fetched, token)

        state.retry_count = 0
        state.last_synced_at = self._clock()
        state.last_error = None
        state.last_error_code = None
        logger.info(
            f"Synced {context}: {fetched} page(s), {total.inserted} new, "
            f"{total.updated} updated, {total.unchanged} unchanged"
        )
        return SyncResult(
            context,
            SyncOutcome.SUCCESS,
            upsert=total,
            pages_fetched=fetched,
            end_of_feed=end_of_feed,
        )

    async def _retrying(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one step of a sync, retrying transient failures under the backoff policy."""
        retrying = self.backoff.retrying(
            sleep=self._sleep,
            before_sleep=functools.partial(self._before_retry, context),
        )
        async for attempt in retrying:
            with attempt:
                self._state(context).status = SyncStatus.SYNCING
                result = await operation()
        return result

    def _before_retry(self, context: str, retry_state: RetryCallState):
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        state = self._state(context)
        state.retry_count += 1
        state.status = SyncStatus.BACKOFF
        state.last_error = str(error)
        state.last_error_code = error.code
        logger.warning(
            f"Transient error syncing {context} "
            f"(attempt {retry_state.attempt_number}/{self.backoff.max_retries + 1}): "
            f"{error}; retrying in {delay:.1f}s"
        )

    async def _load_cursor(self, context: str) -> PageCursor | None:
        return self._db.get_cursor(context)

    async def _fetch_and_merge(self, context: str, token: str | None) -> tuple["FeedPage", UpsertResult]:
        """One page: fetch and upsert."""
        page = await self._with_timeout(
            self._client.fetch_page(context, token, self.page_size), f"{context} page {token}"
        )
        upsert = self._db.upsert(page.articles, context=context, now=self._clock())
        return page, upsert

    async def _with_timeout(self, awaitable: Awaitable, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.fetch_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Fetching {what} timed out after {self.fetch_timeout}s") from e

    async def _save_cursor(self, context: str, token: str | None, pages_loaded: int, end_of_feed: bool):
        now = self._clock()
        self._db.save_cursor(PageCursor(
            context=context,
            token=token,
            page_size=self.page_size,
            pages_loaded=pages_loaded,
            end_of_feed=end_of_feed,
            fetched_at=now,
            expires_at=now + self.cursor_ttl,
        ))

    def _fail(
        self,
        context: str,
        error: FeedSyncError,
        total: UpsertResult,
        fetched: int,
        token: str | None,
    ) -> SyncResult:
        state = self._state(context)
        state.last_error = str(error)
        state.last_error_code = error.code

        if error.kind is ErrorKind.LOCAL:
            state.disabled = True
            self._local_errors[context] = error
            logger.error(f"Local store error for {context}, sync disabled until reset: {error}")
        elif error.kind is ErrorKind.PERMANENT:
            logger.error(f"Permanent error syncing {context} (cursor={token}): {error}")
        else:
            logger.warning(f"Giving up on {context} (cursor={token}) after retries: {error}")

        self._notify(context)
        return SyncResult(
            context,
            SyncOutcome.PARTIAL if fetched else SyncOutcome.FAILED,
            upsert=total,
            error=error,
            pages_fetched=fetched,
            from_cache=True,
        )
