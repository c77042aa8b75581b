"""
Pytest fixtures for feedsync tests.
"""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from feedsync.backoff import BackoffPolicy
from feedsync.config import state
from feedsync.database import Article, Database
from feedsync.feed_client import ArticleDetail, FeedPage
from feedsync.server import app
from feedsync.sync_engine import SyncEngine
from feedsync.view_feed import ViewFeed

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_article(index: int, published_at: datetime | None = None, **overrides) -> Article:
    """Build an article; higher index means older."""
    fields = dict(
        id=f"article-{index:03d}",
        title=f"Headline {index}",
        published_at=published_at or BASE_TIME - timedelta(minutes=index),
        category="国内",
        author="Example Daily",
        source="Example Daily",
        url=f"https://news.example.com/{index}.html",
        image_url=f"https://img.example.com/{index}.jpg",
    )
    fields.update(overrides)
    return Article(**fields)


def make_page(
    context: str,
    articles: list[Article],
    next_cursor: str | None = None,
) -> FeedPage:
    return FeedPage(
        context=context,
        articles=articles,
        next_cursor=next_cursor,
        end_of_feed=next_cursor is None,
    )


class FakeFeedClient:
    """
    In-memory stand-in for FeedClient.

    Pages are served by (context, cursor). Queued errors are raised, in order,
    before any page is served. Setting `gate` makes every fetch wait on it.
    """

    def __init__(self):
        self.pages: dict[tuple[str, str | None], FeedPage] = {}
        self.errors: list[Exception] = []
        self.details: dict[str, ArticleDetail | None] = {}
        self.detail_errors: list[Exception] = []
        self.calls: list[tuple[str, str | None, int]] = []
        self.detail_calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    def add_page(self, context: str, cursor: str | None, page: FeedPage):
        self.pages[(context, cursor)] = page

    async def fetch_page(self, context: str, cursor: str | None, page_size: int) -> FeedPage:
        self.calls.append((context, cursor, page_size))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return self.pages[(context, cursor)]

    async def fetch_detail(self, article_id: str) -> ArticleDetail | None:
        self.detail_calls.append(article_id)
        if self.detail_errors:
            raise self.detail_errors.pop(0)
        return self.details.get(article_id)


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []
        self.on_sleep = None

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep()
        await asyncio.sleep(0)


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d) / "feedsync.db"


@pytest.fixture
def test_db(temp_db_path):
    """Create a test database instance."""
    db = Database(temp_db_path)
    yield db


@pytest.fixture
def feed_client():
    return FakeFeedClient()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def engine(test_db, feed_client, fake_sleep):
    """Sync engine with deterministic backoff and no real sleeping."""
    return SyncEngine(
        test_db,
        feed_client,
        page_size=20,
        backoff=BackoffPolicy(base_delay=1.0, max_delay=30.0, max_retries=3, jitter=0.0),
        fetch_timeout=5,
        sleep=fake_sleep,
    )


@pytest.fixture
def view(test_db, engine):
    return ViewFeed(test_db, engine)


@pytest.fixture
def client(test_db, feed_client, engine, view):
    """Create a test client with an isolated database and fake remote feed."""
    # Store original state
    original_db = state.db
    original_client = state.feed_client
    original_engine = state.engine
    original_view = state.view
    original_scheduler = state.scheduler

    test_db.seed_categories()
    state.db = test_db
    state.feed_client = feed_client
    state.engine = engine
    state.view = view
    state.scheduler = None

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    # Restore original state
    state.db = original_db
    state.feed_client = original_client
    state.engine = original_engine
    state.view = original_view
    state.scheduler = original_scheduler

