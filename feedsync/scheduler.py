"""
Background Refresh Scheduler.

Periodically refreshes every enabled category and evicts expired articles.
"""

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from .exceptions import StoreUnavailable

if TYPE_CHECKING:
    from .database import Database
    from .sync_engine import SyncEngine, SyncResult


logger = logging.getLogger(__name__)


class RefreshScheduler:
    """
    Background scheduler for periodic feed refresh.

    Each cycle refreshes the enabled categories concurrently (the engine
    keeps it to one sync per category) and then evicts old articles.
    """

    def __init__(
        self,
        db: "Database",
        engine: "SyncEngine",
        interval_minutes: float = 30,
        retention: timedelta = timedelta(hours=24),
        initial_delay: float = 10,
    ):
        self.db = db
        self.engine = engine
        self.retention = retention
        self._interval_minutes = interval_minutes
        self._initial_delay = initial_delay
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the refresh scheduler."""
        if self._running:
            return

        # Clear out expired cache once on startup
        self.evict()

        self._running = True
        self._task = asyncio.create_task(self._refresh_loop())
        logger.info(f"Refresh scheduler started (interval: {self._interval_minutes} minutes)")

    async def stop(self):
        """Stop the refresh scheduler."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Refresh scheduler stopped")

    async def run_once(self) -> list["SyncResult"]:
        """Refresh all enabled categories, then evict. Returns one result per category."""
        categories = self.db.get_categories(enabled_only=True)
        results = await asyncio.gather(
            *(self.engine.refresh(category.key) for category in categories)
        )

        failed = [r.context for r in results if not r.ok]
        if failed:
            logger.warning(f"Background refresh failed for: {', '.join(failed)}")
        else:
            logger.debug(f"Background refresh finished for {len(results)} categories")

        self.evict()
        return list(results)

    def evict(self) -> int:
        """Evict articles past the retention window. Returns count removed."""
        try:
            removed = self.db.evict_older_than(self.retention)
        except StoreUnavailable as e:
            logger.warning(f"Eviction skipped: {e}")
            return 0
        if removed:
            logger.info(f"Evicted {removed} expired articles")
        return removed

    async def _refresh_loop(self):
        """Main refresh loop."""
        # Initial delay to let the app finish starting
        await asyncio.sleep(self._initial_delay)

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in background refresh loop: {e}")

            # Wait for next cycle
            await asyncio.sleep(self._interval_minutes * 60)
