"""
Database connection management and schema initialization.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..exceptions import StoreUnavailable


def _is_contention(error: sqlite3.Error) -> bool:
    """Lock/busy errors clear up on their own; everything else does not."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return "locked" in message or "busy" in message


def to_store_error(error: sqlite3.Error) -> StoreUnavailable:
    return StoreUnavailable(f"Article store error: {error}", transient=_is_contention(error))


class DatabaseConnection:
    """Manages database connection and schema."""

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create database directory: {e}") from e
        self._init_schema()

    @contextmanager
    def conn(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory. SQLite errors surface as StoreUnavailable."""
        try:
            connection = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise to_store_error(e) from e
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
            connection.commit()
        except sqlite3.Error as e:
            raise to_store_error(e) from e
        finally:
            connection.close()

    @contextmanager
    def transaction(self, connection: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run a block in its own write transaction, rolling back on any error."""
        connection.execute("BEGIN IMMEDIATE")
        try:
            yield connection
        except BaseException:
            connection.rollback()
            raise
        connection.commit()

    def _init_schema(self):
        """Initialize database schema."""
        with self.conn() as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.executescript("""
                CREATE TABLE IF NOT EXISTS articles (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    summary TEXT,
                    body TEXT,
                    category TEXT,
                    author TEXT,
                    source TEXT,
                    url TEXT,
                    image_url TEXT,
                    content_hash TEXT NOT NULL,
                    published_at TEXT NOT NULL,
                    fetched_at TEXT,
                    is_read BOOLEAN DEFAULT FALSE,
                    read_at TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS article_contexts (
                    context TEXT NOT NULL,
                    article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    published_at TEXT NOT NULL,
                    PRIMARY KEY (context, article_id)
                );

                CREATE TABLE IF NOT EXISTS page_cursors (
                    context TEXT PRIMARY KEY,
                    token TEXT,
                    page_size INTEGER NOT NULL,
                    pages_loaded INTEGER NOT NULL DEFAULT 0,
                    end_of_feed BOOLEAN DEFAULT FALSE,
                    fetched_at TEXT,
                    expires_at TEXT
                );

                CREATE TABLE IF NOT EXISTS categories (
                    key TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    enabled BOOLEAN DEFAULT TRUE
                );

                CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at);
                CREATE INDEX IF NOT EXISTS idx_articles_title ON articles(title);
                CREATE INDEX IF NOT EXISTS idx_article_contexts_page
                    ON article_contexts(context, published_at DESC, article_id);
                CREATE INDEX IF NOT EXISTS idx_article_contexts_article ON article_contexts(article_id);
            """)

            # Migrations
            self._migrate_add_column(connection, "articles", "version", "TEXT")

    def _migrate_add_column(
        self,
        conn: sqlite3.Connection,
        table: str,
        column: str,
        column_type: str
    ):
        """Add a column to a table if it doesn't exist."""
        cursor = conn.execute(f"PRAGMA table_info({table})")
        columns = [row[1] for row in cursor.fetchall()]
        if column not in columns:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
