"""
Database row converters - convert SQLite rows to dataclasses and back.
"""

import sqlite3
from datetime import datetime, timezone

from .models import Article, Category, PageCursor


def to_db_time(value: datetime | None) -> str | None:
    """
    Serialize a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexical order equal to chronological order, which the
    page queries rely on.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def row_to_article(row: sqlite3.Row) -> Article:
    """Convert a database row to an Article."""
    published_at = from_db_time(row["published_at"]) or datetime.fromtimestamp(0, timezone.utc)

    # Handle optional columns - may not exist in older databases during migration
    def safe_get(col: str) -> str | None:
        try:
            return row[col]
        except (IndexError, KeyError):
            return None

    return Article(
        id=row["id"],
        title=row["title"],
        published_at=published_at,
        summary=row["summary"],
        body=row["body"],
        category=row["category"],
        author=row["author"],
        source=row["source"],
        url=row["url"],
        image_url=row["image_url"],
        version=safe_get("version"),
        content_hash=row["content_hash"],
        fetched_at=from_db_time(row["fetched_at"]),
        is_read=bool(row["is_read"]),
        read_at=from_db_time(row["read_at"]),
    )


def row_to_cursor(row: sqlite3.Row) -> PageCursor:
    """Convert a database row to a PageCursor."""
    return PageCursor(
        context=row["context"],
        token=row["token"],
        page_size=row["page_size"],
        pages_loaded=row["pages_loaded"] or 0,
        end_of_feed=bool(row["end_of_feed"]),
        fetched_at=from_db_time(row["fetched_at"]),
        expires_at=from_db_time(row["expires_at"]),
    )


def row_to_category(row: sqlite3.Row) -> Category:
    """Convert a database row to a Category."""
    return Category(
        key=row["key"],
        name=row["name"],
        sort_order=row["sort_order"],
        enabled=bool(row["enabled"]),
    )
