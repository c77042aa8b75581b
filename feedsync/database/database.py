"""
Database facade - the article store used by the sync engine and views.

Delegates to specialized repositories that share one SQLite file.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from .connection import DatabaseConnection
from .article_repository import ArticleRepository
from .cursor_repository import CursorRepository
from .category_repository import CategoryRepository
from .models import Article, Category, PageCursor, UpsertResult


class Database:
    """
    Unified database access facade.

    All methods may raise StoreUnavailable.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self._connection = DatabaseConnection(db_path, busy_timeout=busy_timeout)

        # Initialize repositories
        self.articles = ArticleRepository(self._connection)
        self.cursors = CursorRepository(self._connection)
        self.categories = CategoryRepository(self._connection)

    # ─────────────────────────────────────────────────────────────
    # Article operations (delegated to ArticleRepository)
    # ─────────────────────────────────────────────────────────────

    def upsert(
        self,
        articles: list[Article],
        context: str | None = None,
        now: datetime | None = None,
    ) -> UpsertResult:
        return self.articles.upsert(articles, context, now)

    def page_by_context(self, context: str, offset: int = 0, limit: int = 20) -> list[Article]:
        return self.articles.page_by_context(context, offset, limit)

    def count_by_context(self, context: str) -> int:
        return self.articles.count_by_context(context)

    def evict_older_than(self, retention: timedelta, now: datetime | None = None) -> int:
        """Evict old articles, sparing the rows loaded by unexpired cursors."""
        now = now or datetime.now(timezone.utc)
        live = [cursor for cursor in self.cursors.get_all() if not cursor.is_expired(now)]
        return self.articles.evict_older_than(retention, live, now)

    def get_article(self, article_id: str) -> Article | None:
        return self.articles.get(article_id)

    def search(self, keyword: str, limit: int = 50) -> list[Article]:
        return self.articles.search(keyword, limit)

    def update_article_content(self, article_id: str, body: str, summary: str | None = None) -> bool:
        return self.articles.update_content(article_id, body, summary)

    def mark_read(self, article_id: str, is_read: bool = True) -> bool:
        return self.articles.mark_read(article_id, is_read)

    # ─────────────────────────────────────────────────────────────
    # Cursor operations (delegated to CursorRepository)
    # ─────────────────────────────────────────────────────────────

    def get_cursor(self, context: str) -> PageCursor | None:
        return self.cursors.get(context)

    def save_cursor(self, cursor: PageCursor):
        return self.cursors.save(cursor)

    def delete_cursor(self, context: str):
        return self.cursors.delete(context)

    # ─────────────────────────────────────────────────────────────
    # Category operations (delegated to CategoryRepository)
    # ─────────────────────────────────────────────────────────────

    def seed_categories(self) -> int:
        return self.categories.seed_defaults()

    def get_category(self, key: str) -> Category | None:
        return self.categories.get(key)

    def get_categories(self, enabled_only: bool = False) -> list[Category]:
        return self.categories.get_all(enabled_only)

    def set_category_enabled(self, key: str, enabled: bool) -> bool:
        updated = self.categories.set_enabled(key, enabled)
        if updated and not enabled:
            # A hidden category has no open view to keep rows for
            self.delete_cursor(key)
        return updated

    def reorder_categories(self, keys: list[str]):
        return self.categories.reorder(keys)
