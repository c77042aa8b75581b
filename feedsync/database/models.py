"""
Database models - dataclasses for stored entities.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Article:
    id: str
    title: str
    published_at: datetime
    summary: str | None = None
    body: str | None = None  # HTML, filled in by the detail endpoint
    category: str | None = None  # Category tag reported by the server
    author: str | None = None
    source: str | None = None
    url: str | None = None
    image_url: str | None = None
    version: str | None = None  # Server-side last-modified marker, if any
    content_hash: str | None = None
    fetched_at: datetime | None = None
    published_estimated: bool = False  # No date from the server; published_at is the fetch time

    # Local-only state, never overwritten by a sync
    is_read: bool = False
    read_at: datetime | None = None


@dataclass
class PageCursor:
    context: str
    token: str | None
    page_size: int
    pages_loaded: int = 0
    end_of_feed: bool = False
    fetched_at: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at <= now


@dataclass
class Category:
    key: str
    name: str
    sort_order: int
    enabled: bool = True


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    linked: int = 0  # New context memberships for already-stored articles

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.linked)

    def merge(self, other: "UpsertResult") -> "UpsertResult":
        return UpsertResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
            linked=self.linked + other.linked,
        )
