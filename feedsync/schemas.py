"""
Pydantic models for API request/response validation.
"""

from pydantic import BaseModel

from .database import Article, Category
from .sync_engine import SyncResult, SyncState
from .view_feed import PageSnapshot


# ─────────────────────────────────────────────────────────────
# Article Schemas
# ─────────────────────────────────────────────────────────────

class ArticleResponse(BaseModel):
    """Article for list view."""
    id: str
    title: str
    summary: str | None
    category: str | None
    source: str | None
    author: str | None
    url: str | None
    image_url: str | None
    published_at: str
    is_read: bool

    @classmethod
    def from_db(cls, article: Article) -> "ArticleResponse":
        return cls(
            id=article.id,
            title=article.title,
            summary=article.summary,
            category=article.category,
            source=article.source,
            author=article.author,
            url=article.url,
            image_url=article.image_url,
            published_at=article.published_at.isoformat(),
            is_read=article.is_read,
        )


class ArticleDetailResponse(ArticleResponse):
    """Article with full body for detail view."""
    body: str | None
    fetched_at: str | None
    read_at: str | None

    @classmethod
    def from_db(cls, article: Article) -> "ArticleDetailResponse":
        return cls(
            **ArticleResponse.from_db(article).model_dump(),
            body=article.body,
            fetched_at=article.fetched_at.isoformat() if article.fetched_at else None,
            read_at=article.read_at.isoformat() if article.read_at else None,
        )


class MarkReadRequest(BaseModel):
    is_read: bool = True


# ─────────────────────────────────────────────────────────────
# Category Schemas
# ─────────────────────────────────────────────────────────────

class CategoryResponse(BaseModel):
    key: str
    name: str
    sort_order: int
    enabled: bool

    @classmethod
    def from_db(cls, category: Category) -> "CategoryResponse":
        return cls(
            key=category.key,
            name=category.name,
            sort_order=category.sort_order,
            enabled=category.enabled,
        )


class UpdateCategoryRequest(BaseModel):
    enabled: bool


class ReorderCategoriesRequest(BaseModel):
    keys: list[str]


# ─────────────────────────────────────────────────────────────
# Sync Schemas
# ─────────────────────────────────────────────────────────────

class SyncStateResponse(BaseModel):
    context: str
    status: str
    in_flight: bool
    last_synced_at: str | None
    last_error: str | None
    last_error_code: str | None
    retry_count: int
    disabled: bool

    @classmethod
    def from_state(cls, state: SyncState) -> "SyncStateResponse":
        return cls(
            context=state.context,
            status=state.status.value,
            in_flight=state.in_flight,
            last_synced_at=state.last_synced_at.isoformat() if state.last_synced_at else None,
            last_error=state.last_error,
            last_error_code=state.last_error_code,
            retry_count=state.retry_count,
            disabled=state.disabled,
        )


class SyncResultResponse(BaseModel):
    """Outcome of a refresh/load-more. Errors are reported here, not as HTTP failures."""
    context: str
    outcome: str
    inserted: int
    updated: int
    unchanged: int
    pages_fetched: int
    end_of_feed: bool
    from_cache: bool
    error: str | None = None
    error_code: str | None = None
    warning: str | None = None
    show_retry: bool = False

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultResponse":
        return cls(
            context=result.context,
            outcome=result.outcome.value,
            inserted=result.upsert.inserted,
            updated=result.upsert.updated,
            unchanged=result.upsert.unchanged,
            pages_fetched=result.pages_fetched,
            end_of_feed=result.end_of_feed,
            from_cache=result.from_cache,
            error=str(result.error) if result.error else None,
            error_code=result.error.code if result.error else None,
            warning=result.warning,
            show_retry=result.show_retry,
        )


class SnapshotResponse(BaseModel):
    context: str
    version: int
    pages_loaded: int
    end_of_feed: bool
    state: SyncStateResponse
    articles: list[ArticleResponse]

    @classmethod
    def from_snapshot(cls, snapshot: PageSnapshot) -> "SnapshotResponse":
        return cls(
            context=snapshot.context,
            version=snapshot.version,
            pages_loaded=snapshot.pages_loaded,
            end_of_feed=snapshot.end_of_feed,
            state=SyncStateResponse.from_state(snapshot.state),
            articles=[ArticleResponse.from_db(a) for a in snapshot.articles],
        )
