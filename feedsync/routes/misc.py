"""
Miscellaneous routes: health check, search, categories.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from .. import __version__
from ..config import state, get_db
from ..database import Database
from ..exceptions import require_category
from ..schemas import (
    ArticleResponse,
    CategoryResponse,
    ReorderCategoriesRequest,
    SyncStateResponse,
    UpdateCategoryRequest,
)

router = APIRouter(tags=["misc"])


# ─────────────────────────────────────────────────────────────
# Health Check
# ─────────────────────────────────────────────────────────────

@router.get("/status")
async def health_check() -> dict:
    """API health check, with the sync state of every context seen so far."""
    contexts = state.engine.states() if state.engine else {}
    return {
        "status": "ok",
        "version": __version__,
        "scheduler_running": bool(state.scheduler and state.scheduler.running),
        "contexts": {
            context: SyncStateResponse.from_state(sync_state).model_dump()
            for context, sync_state in contexts.items()
        },
    }


# ─────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────

@router.get("/search")
async def search(
    q: str,
    db: Annotated[Database, Depends(get_db)],
    limit: int = Query(default=20, le=100)
) -> list[ArticleResponse]:
    """Search cached article titles."""
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query is empty")

    articles = db.search(q.strip(), limit=limit)
    return [ArticleResponse.from_db(a) for a in articles]


# ─────────────────────────────────────────────────────────────
# Categories
# ─────────────────────────────────────────────────────────────

@router.get("/categories")
async def list_categories(
    db: Annotated[Database, Depends(get_db)],
    enabled_only: bool = False
) -> list[CategoryResponse]:
    """List news categories in display order."""
    return [CategoryResponse.from_db(c) for c in db.get_categories(enabled_only)]


@router.put("/categories/order")
async def reorder_categories(
    request: ReorderCategoriesRequest,
    db: Annotated[Database, Depends(get_db)]
) -> list[CategoryResponse]:
    """Set category display order."""
    db.reorder_categories(request.keys)
    return [CategoryResponse.from_db(c) for c in db.get_categories()]


@router.put("/categories/{key}")
async def update_category(
    key: str,
    request: UpdateCategoryRequest,
    db: Annotated[Database, Depends(get_db)]
) -> CategoryResponse:
    """Enable or disable a category."""
    require_category(db.get_category(key))
    db.set_category_enabled(key, request.enabled)
    return CategoryResponse.from_db(require_category(db.get_category(key)))
