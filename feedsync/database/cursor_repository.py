"""
Cursor repository - pagination position per filter context.
"""

from .connection import DatabaseConnection
from .converters import row_to_cursor, to_db_time
from .models import PageCursor


class CursorRepository:
    """Repository for page cursors."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def get(self, context: str) -> PageCursor | None:
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT * FROM page_cursors WHERE context = ?", (context,)
            ).fetchone()
            return row_to_cursor(row) if row else None

    def get_all(self) -> list[PageCursor]:
        with self._db.conn() as conn:
            rows = conn.execute("SELECT * FROM page_cursors ORDER BY context").fetchall()
            return [row_to_cursor(row) for row in rows]

    def save(self, cursor: PageCursor):
        """Create or replace the cursor for its context."""
        with self._db.conn() as conn:
            conn.execute(
                """INSERT INTO page_cursors
                   (context, token, page_size, pages_loaded, end_of_feed, fetched_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(context) DO UPDATE SET
                   token = excluded.token,
                   page_size = excluded.page_size,
                   pages_loaded = excluded.pages_loaded,
                   end_of_feed = excluded.end_of_feed,
                   fetched_at = excluded.fetched_at,
                   expires_at = excluded.expires_at""",
                (cursor.context, cursor.token, cursor.page_size, cursor.pages_loaded,
                 cursor.end_of_feed, to_db_time(cursor.fetched_at), to_db_time(cursor.expires_at))
            )

    def delete(self, context: str):
        with self._db.conn() as conn:
            conn.execute("DELETE FROM page_cursors WHERE context = ?", (context,))
