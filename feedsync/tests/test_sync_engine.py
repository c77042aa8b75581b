"""
Tests for the sync engine: refresh, load-more, retries, coalescing and cancellation.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import BASE_TIME, make_article, make_page
from feedsync.backoff import BackoffPolicy
from feedsync.database import UpsertResult
from feedsync.exceptions import (
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    StoreUnavailable,
    UnauthorizedError,
)
from feedsync.feed_client import ArticleDetail
from feedsync.sync_engine import SyncEngine, SyncOutcome, SyncStatus


def articles(start: int, stop: int):
    return [make_article(i) for i in range(start, stop)]


@pytest.fixture
def two_pages(feed_client):
    """guonei: page one (1-20) then page two (21-40), more after that."""
    feed_client.add_page("guonei", None, make_page("guonei", articles(1, 21), next_cursor="2"))
    feed_client.add_page("guonei", "2", make_page("guonei", articles(21, 41), next_cursor="3"))
    return feed_client


class TestRefresh:
    """Tests for SyncEngine.refresh."""

    @pytest.mark.asyncio
    async def test_first_refresh_populates_store(self, engine, test_db, two_pages):
        result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.upsert.inserted == 20
        assert result.pages_fetched == 1
        assert test_db.count_by_context("guonei") == 20

        cursor = test_db.get_cursor("guonei")
        assert cursor.token == "2"
        assert cursor.pages_loaded == 1
        assert cursor.end_of_feed is False

        state = engine.state("guonei")
        assert state.status is SyncStatus.IDLE
        assert state.in_flight is False
        assert state.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_refresh_keeps_older_pages(self, engine, test_db, two_pages):
        await engine.refresh("guonei")
        await engine.load_more("guonei")

        result = await engine.refresh("guonei")

        assert result.upsert.unchanged == 20
        assert test_db.count_by_context("guonei") == 40
        cursor = test_db.get_cursor("guonei")
        assert cursor.token == "2"
        assert cursor.pages_loaded == 1

    @pytest.mark.asyncio
    async def test_initial_pages(self, test_db, two_pages, fake_sleep):
        engine = SyncEngine(test_db, two_pages, initial_pages=2, sleep=fake_sleep)

        result = await engine.refresh("guonei")

        assert result.pages_fetched == 2
        assert test_db.count_by_context("guonei") == 40
        assert test_db.get_cursor("guonei").token == "3"


class TestLoadMore:
    """Tests for SyncEngine.load_more."""

    @pytest.mark.asyncio
    async def test_load_more_appends_next_page(self, engine, test_db, two_pages):
        await engine.refresh("guonei")

        result = await engine.load_more("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.upsert.inserted == 20
        assert two_pages.calls[-1] == ("guonei", "2", 20)
        assert test_db.count_by_context("guonei") == 40
        assert test_db.get_cursor("guonei").token == "3"
        assert test_db.get_cursor("guonei").pages_loaded == 2

    @pytest.mark.asyncio
    async def test_overlapping_page_is_deduplicated(self, engine, test_db, feed_client):
        feed_client.add_page("guonei", None, make_page("guonei", articles(1, 21), next_cursor="2"))
        # The feed shifted: article 20 shows up again at the top of page two
        feed_client.add_page("guonei", "2", make_page("guonei", articles(20, 40), next_cursor="3"))

        await engine.refresh("guonei")
        result = await engine.load_more("guonei")

        assert result.upsert.inserted == 19
        assert result.upsert.unchanged == 1
        assert test_db.count_by_context("guonei") == 39

    @pytest.mark.asyncio
    async def test_load_more_at_end_of_feed(self, engine, feed_client):
        feed_client.add_page("guonei", None, make_page("guonei", articles(1, 6)))
        await engine.refresh("guonei")

        result = await engine.load_more("guonei")

        assert result.outcome is SyncOutcome.NOOP
        assert result.end_of_feed is True
        assert len(feed_client.calls) == 1

    @pytest.mark.asyncio
    async def test_load_more_while_in_flight(self, engine, two_pages):
        two_pages.gate = asyncio.Event()
        refresh = asyncio.create_task(engine.refresh("guonei"))
        await two_pages.started.wait()

        result = await engine.load_more("guonei")

        assert result.outcome is SyncOutcome.NOOP
        two_pages.gate.set()
        await refresh
        assert len(two_pages.calls) == 1

    @pytest.mark.asyncio
    async def test_load_more_without_cursor_fetches_first_page(self, engine, test_db, two_pages):
        result = await engine.load_more("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert two_pages.calls == [("guonei", None, 20)]
        assert test_db.count_by_context("guonei") == 20
        assert test_db.get_cursor("guonei").token == "2"


class TestRetries:
    """Tests for transient failure handling."""

    @pytest.mark.asyncio
    async def test_rate_limited_then_success(self, engine, two_pages, fake_sleep):
        two_pages.errors = [RateLimitedError(retry_after=5)]
        seen = []
        fake_sleep.on_sleep = lambda: seen.append(engine.state("guonei"))

        result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert fake_sleep.delays == [5.0]
        assert seen[0].status is SyncStatus.BACKOFF
        assert seen[0].retry_count == 1
        assert seen[0].in_flight is True

        state = engine.state("guonei")
        assert state.retry_count == 0
        assert state.last_error is None
        assert state.status is SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_cache_unchanged(self, engine, test_db, two_pages, fake_sleep):
        await engine.refresh("guonei")
        before = test_db.page_by_context("guonei")
        two_pages.errors = [NetworkError("connection reset")] * 4

        result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.FAILED
        assert result.from_cache is True
        assert result.show_retry is True
        assert isinstance(result.error, NetworkError)
        assert fake_sleep.delays == [1.0, 2.0, 4.0]
        assert len(two_pages.calls) == 1 + 4
        assert test_db.page_by_context("guonei") == before

        state = engine.state("guonei")
        assert state.retry_count == 3
        assert state.last_error_code == "NetworkError"
        assert state.in_flight is False
        assert state.status is SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, engine, two_pages, fake_sleep):
        two_pages.errors = [UnauthorizedError("API rejected key")]

        result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.FAILED
        assert result.show_retry is False
        assert fake_sleep.delays == []
        assert len(two_pages.calls) == 1
        state = engine.state("guonei")
        assert state.last_error_code == "UnauthorizedError"
        assert state.disabled is False

    @pytest.mark.asyncio
    async def test_store_contention_is_retried(self, engine, test_db, two_pages, fake_sleep):
        with patch.object(test_db, "upsert", side_effect=[
            StoreUnavailable("database is locked", transient=True),
            UpsertResult(inserted=20),
        ]):
            result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert len(two_pages.calls) == 2
        assert fake_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_cursor_save_contention_is_retried(self, engine, test_db, two_pages, fake_sleep):
        """A locked store while saving the cursor retries the save, not the fetch."""
        save_cursor = test_db.save_cursor
        failures = [StoreUnavailable("database is locked", transient=True)]

        def flaky_save(cursor):
            if failures:
                raise failures.pop(0)
            return save_cursor(cursor)

        with patch.object(test_db, "save_cursor", side_effect=flaky_save):
            result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.pages_fetched == 1
        assert fake_sleep.delays == [1.0]
        assert len(two_pages.calls) == 1
        assert test_db.get_cursor("guonei").token == "2"
        assert engine.state("guonei").retry_count == 0

    @pytest.mark.asyncio
    async def test_cursor_read_contention_is_retried(self, engine, test_db, two_pages, fake_sleep):
        await engine.refresh("guonei")
        get_cursor = test_db.get_cursor
        failures = [StoreUnavailable("database is locked", transient=True)] * 2

        def flaky_get(context):
            if failures:
                raise failures.pop(0)
            return get_cursor(context)

        with patch.object(test_db, "get_cursor", side_effect=flaky_get):
            result = await engine.load_more("guonei")

        assert result.outcome is SyncOutcome.SUCCESS
        assert two_pages.calls[-1] == ("guonei", "2", 20)
        assert fake_sleep.delays == [1.0]
        assert test_db.get_cursor("guonei").pages_loaded == 2

    @pytest.mark.asyncio
    async def test_failed_cursor_save_is_not_partial(self, engine, test_db, two_pages, fake_sleep):
        """A page whose cursor was never saved does not count as fetched."""
        with patch.object(test_db, "save_cursor", side_effect=StoreUnavailable("disk I/O error")):
            result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.FAILED
        assert result.pages_fetched == 0
        assert fake_sleep.delays == []
        assert engine.state("guonei").disabled is True

    @pytest.mark.asyncio
    async def test_fetch_timeout_is_network_error(self, test_db, two_pages, fake_sleep):
        engine = SyncEngine(
            test_db,
            two_pages,
            backoff=BackoffPolicy(max_retries=0),
            fetch_timeout=0.01,
            sleep=fake_sleep,
        )
        two_pages.gate = asyncio.Event()

        result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.FAILED
        assert isinstance(result.error, NetworkError)
        assert engine.state("guonei").in_flight is False


class TestFailures:
    """Tests for partial results and local errors."""

    @pytest.mark.asyncio
    async def test_partial_result(self, test_db, feed_client, fake_sleep):
        engine = SyncEngine(test_db, feed_client, initial_pages=2, sleep=fake_sleep)
        first = make_page("guonei", articles(1, 21), next_cursor="2")

        with patch.object(feed_client, "fetch_page", new=AsyncMock(
            side_effect=[first, MalformedResponseError("result.data is not a list")]
        )):
            result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.PARTIAL
        assert result.pages_fetched == 1
        assert result.upsert.inserted == 20
        assert result.warning is not None
        assert result.show_retry is False
        assert test_db.count_by_context("guonei") == 20
        assert test_db.get_cursor("guonei").token == "2"

    @pytest.mark.asyncio
    async def test_local_error_disables_context_until_reset(self, engine, test_db, two_pages):
        with patch.object(test_db, "upsert", side_effect=StoreUnavailable("disk I/O error")):
            result = await engine.refresh("guonei")

        assert result.outcome is SyncOutcome.FAILED
        assert result.show_retry is False
        assert engine.state("guonei").disabled is True

        calls = len(two_pages.calls)
        blocked = await engine.refresh("guonei")
        assert blocked.outcome is SyncOutcome.FAILED
        assert isinstance(blocked.error, StoreUnavailable)
        assert len(two_pages.calls) == calls

        engine.reset("guonei")
        recovered = await engine.refresh("guonei")
        assert recovered.outcome is SyncOutcome.SUCCESS
        assert engine.state("guonei").disabled is False

    @pytest.mark.asyncio
    async def test_other_contexts_unaffected_by_local_error(self, engine, test_db, two_pages):
        two_pages.add_page("tiyu", None, make_page("tiyu", articles(1, 6)))
        with patch.object(test_db, "upsert", side_effect=StoreUnavailable("disk I/O error")):
            await engine.refresh("guonei")

        result = await engine.refresh("tiyu")

        assert result.outcome is SyncOutcome.SUCCESS


class TestConcurrency:
    """Tests for coalescing and cancellation."""

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, engine, two_pages):
        two_pages.gate = asyncio.Event()
        first = asyncio.create_task(engine.refresh("guonei"))
        second = asyncio.create_task(engine.refresh("guonei"))
        await two_pages.started.wait()

        assert engine.state("guonei").in_flight is True
        two_pages.gate.set()
        results = await asyncio.gather(first, second)

        assert len(two_pages.calls) == 1
        assert results[0] is results[1]
        assert engine.state("guonei").in_flight is False

    @pytest.mark.asyncio
    async def test_contexts_sync_independently(self, engine, feed_client):
        feed_client.add_page("guonei", None, make_page("guonei", articles(1, 6)))
        feed_client.add_page("tiyu", None, make_page("tiyu", articles(10, 16)))

        results = await asyncio.gather(engine.refresh("guonei"), engine.refresh("tiyu"))

        assert [r.outcome for r in results] == [SyncOutcome.SUCCESS, SyncOutcome.SUCCESS]
        assert len(feed_client.calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_refresh_releases_context(self, engine, test_db, two_pages):
        two_pages.gate = asyncio.Event()
        task = asyncio.create_task(engine.refresh("guonei"))
        await two_pages.started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = engine.state("guonei")
        assert state.in_flight is False
        assert state.status is SyncStatus.IDLE
        assert test_db.count_by_context("guonei") == 0

        two_pages.gate.set()
        result = await engine.refresh("guonei")
        assert result.outcome is SyncOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_cancelling_one_waiter_keeps_shared_sync(self, engine, test_db, two_pages):
        two_pages.gate = asyncio.Event()
        first = asyncio.create_task(engine.refresh("guonei"))
        second = asyncio.create_task(engine.refresh("guonei"))
        await two_pages.started.wait()

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        two_pages.gate.set()
        result = await second

        assert result.outcome is SyncOutcome.SUCCESS
        assert test_db.count_by_context("guonei") == 20

    @pytest.mark.asyncio
    async def test_engine_cancel(self, engine, two_pages):
        two_pages.gate = asyncio.Event()
        task = asyncio.create_task(engine.refresh("guonei"))
        await two_pages.started.wait()

        assert await engine.cancel("guonei") is True
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.state("guonei").in_flight is False
        assert await engine.cancel("guonei") is False


class TestEnsureFresh:
    """Tests for SyncEngine.ensure_fresh."""

    @pytest.mark.asyncio
    async def test_serves_recent_cache(self, test_db, two_pages, fake_sleep):
        now = [BASE_TIME]
        engine = SyncEngine(
            test_db, two_pages, stale_after=timedelta(minutes=15),
            sleep=fake_sleep, clock=lambda: now[0],
        )

        first = await engine.ensure_fresh("guonei")
        assert first.outcome is SyncOutcome.SUCCESS

        now[0] = BASE_TIME + timedelta(minutes=5)
        cached = await engine.ensure_fresh("guonei")
        assert cached.outcome is SyncOutcome.NOOP
        assert cached.from_cache is True
        assert len(two_pages.calls) == 1

        now[0] = BASE_TIME + timedelta(minutes=20)
        stale = await engine.ensure_fresh("guonei")
        assert stale.outcome is SyncOutcome.SUCCESS
        assert len(two_pages.calls) == 2


class TestNotifications:
    """Tests for change notifications."""

    @pytest.mark.asyncio
    async def test_changed_merge_notifies(self, engine, two_pages):
        queue = engine.subscribe("guonei")

        await engine.refresh("guonei")
        assert queue.get_nowait() == 1

        # Same page again: nothing changed
        await engine.refresh("guonei")
        assert queue.empty()
        assert engine.version("guonei") == 1

    @pytest.mark.asyncio
    async def test_failure_notifies(self, engine, two_pages):
        queue = engine.subscribe("guonei")
        two_pages.errors = [UnauthorizedError("API rejected key")]

        await engine.refresh("guonei")

        assert not queue.empty()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, engine, two_pages):
        queue = engine.subscribe("guonei")
        engine.unsubscribe("guonei", queue)

        await engine.refresh("guonei")

        assert queue.empty()


class TestFetchDetail:
    """Tests for SyncEngine.fetch_detail."""

    @pytest.mark.asyncio
    async def test_cached_body_skips_fetch(self, engine, test_db, feed_client):
        test_db.upsert([make_article(1)])
        test_db.update_article_content("article-001", "<p>Body</p>")

        article = await engine.fetch_detail("article-001")

        assert article.body == "<p>Body</p>"
        assert feed_client.detail_calls == []

    @pytest.mark.asyncio
    async def test_fetches_and_stores_body(self, engine, test_db, feed_client):
        test_db.upsert([make_article(1)])
        feed_client.details["article-001"] = ArticleDetail(
            article_id="article-001", content="<p>Full story</p>", summary="Full story"
        )

        article = await engine.fetch_detail("article-001")

        assert article.body == "<p>Full story</p>"
        assert test_db.get_article("article-001").summary == "Full story"

    @pytest.mark.asyncio
    async def test_uncached_article_is_stored(self, engine, test_db, feed_client):
        feed_client.details["article-009"] = ArticleDetail(
            article_id="article-009",
            content="<p>Body</p>",
            summary="Body",
            article=make_article(9),
        )

        article = await engine.fetch_detail("article-009")

        assert article.title == "Headline 9"
        assert article.body == "<p>Body</p>"

    @pytest.mark.asyncio
    async def test_fetch_failure_falls_back_to_cache(self, engine, test_db, feed_client):
        test_db.upsert([make_article(1)])
        feed_client.detail_errors = [NetworkError("connection reset")]

        article = await engine.fetch_detail("article-001")

        assert article.id == "article-001"
        assert article.body is None

    @pytest.mark.asyncio
    async def test_fetch_failure_without_cache_raises(self, engine, feed_client):
        feed_client.detail_errors = [NetworkError("connection reset")]

        with pytest.raises(NetworkError):
            await engine.fetch_detail("missing")

    @pytest.mark.asyncio
    async def test_unknown_article(self, engine):
        assert await engine.fetch_detail("missing") is None
