"""
Article routes: detail and read state.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from ..config import get_db, get_engine
from ..database import Database
from ..exceptions import FetchError, require_article
from ..schemas import ArticleDetailResponse, MarkReadRequest
from ..sync_engine import SyncEngine

router = APIRouter(prefix="/articles", tags=["articles"])


@router.get("/{article_id}")
async def get_article(
    article_id: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> ArticleDetailResponse:
    """Get article with full content, fetching the body on first open."""
    try:
        article = await engine.fetch_detail(article_id)
    except FetchError as e:
        raise HTTPException(status_code=502, detail=f"Could not fetch article: {e}")
    return ArticleDetailResponse.from_db(require_article(article))


@router.post("/{article_id}/read")
async def mark_read(
    article_id: str,
    request: MarkReadRequest,
    db: Annotated[Database, Depends(get_db)]
) -> dict:
    """Mark article as read/unread."""
    require_article(db.get_article(article_id))
    db.mark_read(article_id, request.is_read)
    return {"success": True, "is_read": request.is_read}
