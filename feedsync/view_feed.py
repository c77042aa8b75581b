"""
View Feed - read-only, cache-first projection of a context for the UI.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator

from .database.models import Article
from .sync_engine import SyncState

if TYPE_CHECKING:
    from .database import Database
    from .sync_engine import SyncEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageSnapshot:
    context: str
    articles: tuple[Article, ...]
    state: SyncState
    end_of_feed: bool
    pages_loaded: int
    version: int


class ViewFeed:
    """Serves snapshots of the pages fetched so far, straight from the store."""

    def __init__(self, db: "Database", engine: "SyncEngine"):
        self._db = db
        self._engine = engine

    def snapshot(self, context: str) -> PageSnapshot:
        """Current store contents for the context's fetched pages (at least one page)."""
        cursor = self._db.get_cursor(context)
        pages_loaded = cursor.pages_loaded if cursor else 0
        limit = max(pages_loaded, 1) * self._engine.page_size
        return PageSnapshot(
            context=context,
            articles=tuple(self._db.page_by_context(context, 0, limit)),
            state=self._engine.state(context),
            end_of_feed=bool(cursor and cursor.end_of_feed),
            pages_loaded=pages_loaded,
            version=self._engine.version(context),
        )

    def page(self, context: str, offset: int = 0, limit: int = 20) -> list[Article]:
        return self._db.page_by_context(context, offset, limit)

    async def observe(self, context: str) -> AsyncIterator[PageSnapshot]:
        """
        Yield the current snapshot, then a new one after every change to the context.

        Never ends on its own; stop iterating (or close the generator) to
        unsubscribe. Bursts of changes are collapsed into one snapshot.
        """
        # Subscribe before the first read so no change is missed in between
        queue = self._engine.subscribe(context)
        try:
            yield self.snapshot(context)
            while True:
                await queue.get()
                while not queue.empty():
                    queue.get_nowait()
                yield self.snapshot(context)
        finally:
            self._engine.unsubscribe(context, queue)
            logger.debug(f"Observer for {context} closed")
