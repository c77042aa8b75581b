"""
Feed Sync API Server

FastAPI application exposing the sync layer to an application shell:
- Cached, paged article reads and snapshot streaming
- Refresh / load-more with typed outcomes
- Article detail and read state
- Categories and search
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .backoff import BackoffPolicy
from .config import config, state
from .database import Database
from .exceptions import StoreUnavailable
from .feed_client import FeedClient
from .routes import articles_router, feeds_router, misc_router
from .scheduler import RefreshScheduler
from .sync_engine import SyncEngine
from .view_feed import ViewFeed

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources."""
    # Startup - skip if already initialized (e.g., by tests)
    if state.db is None:
        state.db = Database(config.DB_PATH)
        state.db.seed_categories()
        state.feed_client = FeedClient(
            api_url=config.FEED_API_URL,
            detail_url=config.FEED_DETAIL_API_URL,
            api_key=config.FEED_API_KEY,
            timeout=config.FETCH_TIMEOUT,
        )
        state.engine = SyncEngine(
            state.db,
            state.feed_client,
            page_size=config.PAGE_SIZE,
            backoff=BackoffPolicy(
                base_delay=config.BACKOFF_BASE_SECONDS,
                max_delay=config.BACKOFF_MAX_SECONDS,
                max_retries=config.MAX_RETRIES,
                jitter=config.BACKOFF_JITTER,
            ),
            fetch_timeout=config.FETCH_TIMEOUT,
            initial_pages=config.INITIAL_PAGES,
            stale_after=timedelta(seconds=config.STALE_AFTER_SECONDS),
            cursor_ttl=timedelta(hours=config.CURSOR_TTL_HOURS),
        )
        state.view = ViewFeed(state.db, state.engine)

        if not config.has_api_key():
            logger.warning("No FEED_API_KEY configured. Remote fetches will be rejected.")

        if config.ENABLE_SCHEDULER:
            state.scheduler = RefreshScheduler(
                state.db,
                state.engine,
                interval_minutes=config.REFRESH_INTERVAL_MINUTES,
                retention=timedelta(hours=config.RETENTION_HOURS),
            )
            await state.scheduler.start()

    yield

    # Shutdown
    if state.scheduler:
        try:
            await state.scheduler.stop()
        except Exception as e:
            logger.warning(f"Error stopping refresh scheduler: {e}")
    if state.engine:
        await state.engine.close()


app = FastAPI(
    title="Feed Sync API",
    version=__version__,
    lifespan=lifespan
)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """Storage faults are a service problem, not a client one."""
    logger.error(f"Store unavailable during {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc), "transient": exc.transient},
    )


# Include routers
app.include_router(misc_router)
app.include_router(articles_router)
app.include_router(feeds_router)
