"""
Article repository - upsert, paging and eviction for cached articles.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

from ..hashing import compute_content_hash
from .connection import DatabaseConnection
from .converters import row_to_article, to_db_time
from .models import Article, PageCursor, UpsertResult

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"


class ArticleRepository:
    """Repository for article operations."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def upsert(
        self,
        articles: list[Article],
        context: str | None = None,
        now: datetime | None = None,
    ) -> UpsertResult:
        """
        Insert or update articles by id.

        Each article is written in its own transaction: a failure part-way
        through a batch leaves the earlier articles committed. Articles whose
        content hash matches the stored one are left untouched, so local
        state like the read flag survives. When a context is given the
        articles are also linked to it.
        """
        result = UpsertResult()
        fetched_at = to_db_time(now or datetime.now(timezone.utc))

        with self._db.conn() as conn:
            for article in articles:
                content_hash = compute_content_hash(article)
                with self._db.transaction(conn):
                    outcome, published_at = self._upsert_one(conn, article, content_hash, fetched_at)
                    newly_linked = self._link(conn, context, article.id, published_at) if context else False

                if outcome == INSERTED:
                    result.inserted += 1
                elif outcome == UPDATED:
                    result.updated += 1
                else:
                    result.unchanged += 1
                    if newly_linked:
                        result.linked += 1

        return result

    def _upsert_one(
        self,
        conn: sqlite3.Connection,
        article: Article,
        content_hash: str,
        fetched_at: str,
    ) -> tuple[str, str]:
        """Write one article. Returns the outcome and the stored published_at."""
        row = conn.execute(
            "SELECT content_hash, published_at FROM articles WHERE id = ?", (article.id,)
        ).fetchone()
        published_at = to_db_time(article.published_at)
        if row is not None and article.published_estimated:
            # Keep the date estimated on first sight
            published_at = row["published_at"]

        if row is None:
            conn.execute(
                """INSERT INTO articles
                   (id, title, summary, body, category, author, source, url, image_url,
                    version, content_hash, published_at, fetched_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (article.id, article.title, article.summary, article.body,
                 article.category, article.author, article.source, article.url,
                 article.image_url, article.version, content_hash, published_at,
                 fetched_at)
            )
            return INSERTED, published_at

        if row["content_hash"] == content_hash:
            return UNCHANGED, published_at

        # Remote-origin fields only; a list payload without body/summary
        # must not wipe what the detail endpoint filled in.
        conn.execute(
            """UPDATE articles SET
               title = ?, summary = COALESCE(?, summary), body = COALESCE(?, body),
               category = ?, author = ?, source = ?, url = ?, image_url = ?,
               version = ?, content_hash = ?, published_at = ?, fetched_at = ?
               WHERE id = ?""",
            (article.title, article.summary, article.body, article.category,
             article.author, article.source, article.url, article.image_url,
             article.version, content_hash, published_at, fetched_at, article.id)
        )
        conn.execute(
            "UPDATE article_contexts SET published_at = ? WHERE article_id = ?",
            (published_at, article.id)
        )
        return UPDATED, published_at

    def _link(self, conn: sqlite3.Connection, context: str, article_id: str, published_at: str) -> bool:
        """Add context membership. Returns True if the link is new."""
        cursor = conn.execute(
            """INSERT OR IGNORE INTO article_contexts (context, article_id, published_at)
               VALUES (?, ?, ?)""",
            (context, article_id, published_at)
        )
        return cursor.rowcount == 1

    def get(self, article_id: str) -> Article | None:
        """Get single article by ID."""
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT * FROM articles WHERE id = ?", (article_id,)
            ).fetchone()
            return row_to_article(row) if row else None

    def page_by_context(self, context: str, offset: int = 0, limit: int = 20) -> list[Article]:
        """
        Get one page of a context's articles.

        Newest first, ties broken by id ascending, so repeated reads of an
        unchanged store return identical pages.
        """
        if offset < 0 or limit <= 0:
            raise ValueError("offset must be >= 0 and limit must be > 0")

        with self._db.conn() as conn:
            rows = conn.execute(
                """SELECT a.* FROM article_contexts ac
                   JOIN articles a ON a.id = ac.article_id
                   WHERE ac.context = ?
                   ORDER BY ac.published_at DESC, ac.article_id ASC
                   LIMIT ? OFFSET ?""",
                (context, limit, offset)
            ).fetchall()
            return [row_to_article(row) for row in rows]

    def count_by_context(self, context: str) -> int:
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as cnt FROM article_contexts WHERE context = ?", (context,)
            ).fetchone()
            return row["cnt"]

    def evict_older_than(
        self,
        retention: timedelta,
        live_cursors: list[PageCursor],
        now: datetime | None = None,
    ) -> int:
        """
        Delete articles published before now - retention.

        Each live cursor protects the window of rows its view has loaded
        (pages_loaded * page_size, in page order) so an open pagination view
        does not lose rows. Everything older outside those windows goes.
        Returns count deleted.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = to_db_time(now - retention)

        with self._db.conn() as conn:
            protected: set[str] = set()
            for cursor in live_cursors:
                window = cursor.pages_loaded * cursor.page_size
                if window <= 0:
                    continue
                rows = conn.execute(
                    """SELECT article_id FROM article_contexts
                       WHERE context = ?
                       ORDER BY published_at DESC, article_id ASC
                       LIMIT ?""",
                    (cursor.context, window)
                ).fetchall()
                protected.update(row["article_id"] for row in rows)

            stale = conn.execute(
                "SELECT id FROM articles WHERE published_at < ?", (cutoff,)
            ).fetchall()
            doomed = [(row["id"],) for row in stale if row["id"] not in protected]
            conn.executemany("DELETE FROM articles WHERE id = ?", doomed)
            return len(doomed)

    def search(self, keyword: str, limit: int = 50) -> list[Article]:
        """Find articles whose title contains the keyword, newest first."""
        escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._db.conn() as conn:
            rows = conn.execute(
                """SELECT * FROM articles
                   WHERE title LIKE ? ESCAPE '\\'
                   ORDER BY published_at DESC, id ASC
                   LIMIT ?""",
                (f"%{escaped}%", limit)
            ).fetchall()
            return [row_to_article(row) for row in rows]

    def update_content(self, article_id: str, body: str, summary: str | None = None) -> bool:
        """Store detail content. Leaves the content hash alone. Returns False if not found."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                "UPDATE articles SET body = ?, summary = COALESCE(?, summary) WHERE id = ?",
                (body, summary, article_id)
            )
            return cursor.rowcount > 0

    def mark_read(self, article_id: str, is_read: bool = True) -> bool:
        """Mark article as read/unread. Returns False if not found."""
        with self._db.conn() as conn:
            read_at = to_db_time(datetime.now(timezone.utc)) if is_read else None
            cursor = conn.execute(
                "UPDATE articles SET is_read = ?, read_at = ? WHERE id = ?",
                (is_read, read_at, article_id)
            )
            return cursor.rowcount > 0
