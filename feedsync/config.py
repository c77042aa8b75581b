"""
Configuration and application state management.
"""

import os
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv
from fastapi import HTTPException

if TYPE_CHECKING:
    from .database import Database
    from .feed_client import FeedClient
    from .scheduler import RefreshScheduler
    from .sync_engine import SyncEngine
    from .view_feed import ViewFeed

# Load environment variables
load_dotenv()


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


class Config:
    """Application configuration from environment."""
    # Remote feed API (aggregated news list + detail endpoints)
    FEED_API_URL: str = os.getenv("FEED_API_URL", "http://v.juhe.cn/toutiao/index")
    FEED_DETAIL_API_URL: str = os.getenv("FEED_DETAIL_API_URL", "http://v.juhe.cn/toutiao/content")
    FEED_API_KEY: str = os.getenv("FEED_API_KEY", "")

    DB_PATH: Path = Path(os.getenv("DB_PATH", "./data/feedsync.db"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Paging and fetching
    PAGE_SIZE: int = int(os.getenv("PAGE_SIZE", "20"))
    FETCH_TIMEOUT: float = float(os.getenv("FETCH_TIMEOUT", "15"))  # seconds, per attempt
    INITIAL_PAGES: int = int(os.getenv("INITIAL_PAGES", "1"))

    # Retry policy
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    BACKOFF_BASE_SECONDS: float = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
    BACKOFF_MAX_SECONDS: float = float(os.getenv("BACKOFF_MAX_SECONDS", "60"))
    BACKOFF_JITTER: float = float(os.getenv("BACKOFF_JITTER", "0.5"))

    # Cache freshness and retention
    STALE_AFTER_SECONDS: int = int(os.getenv("STALE_AFTER_SECONDS", "900"))
    CURSOR_TTL_HOURS: int = int(os.getenv("CURSOR_TTL_HOURS", "24"))
    RETENTION_HOURS: int = int(os.getenv("RETENTION_HOURS", "24"))

    # Background refresh
    ENABLE_SCHEDULER: bool = _parse_bool(os.getenv("ENABLE_SCHEDULER"), default=True)
    REFRESH_INTERVAL_MINUTES: int = int(os.getenv("REFRESH_INTERVAL_MINUTES", "30"))

    @classmethod
    def has_api_key(cls) -> bool:
        """Check if the remote feed API key is configured."""
        return bool(cls.FEED_API_KEY)


config = Config()


class AppState:
    """Shared application state."""
    db: "Database | None" = None
    feed_client: "FeedClient | None" = None
    engine: "SyncEngine | None" = None
    view: "ViewFeed | None" = None
    scheduler: "RefreshScheduler | None" = None


state = AppState()


def get_db() -> "Database":
    """Dependency to get database instance."""
    if not state.db:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return state.db


def get_engine() -> "SyncEngine":
    """Dependency to get the sync engine."""
    if not state.engine:
        raise HTTPException(status_code=500, detail="Sync engine not initialized")
    return state.engine


def get_view() -> "ViewFeed":
    """Dependency to get the view feed."""
    if not state.view:
        raise HTTPException(status_code=500, detail="View feed not initialized")
    return state.view
