"""
Feed routes: paged reads, refresh, load-more, sync state and snapshot streaming.
"""

import json
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ..config import get_db, get_engine, get_view
from ..database import Database
from ..schemas import (
    ArticleResponse,
    SnapshotResponse,
    SyncResultResponse,
    SyncStateResponse,
)
from ..sync_engine import SyncEngine
from ..view_feed import ViewFeed

router = APIRouter(prefix="/feeds", tags=["feeds"])


# ─────────────────────────────────────────────────────────────
# Reads (cache only)
# ─────────────────────────────────────────────────────────────

@router.get("/{context}")
async def get_page(
    context: str,
    db: Annotated[Database, Depends(get_db)],
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=200)
) -> list[ArticleResponse]:
    """Get one page of cached articles for a context."""
    return [ArticleResponse.from_db(a) for a in db.page_by_context(context, offset, limit)]


@router.get("/{context}/snapshot")
async def get_snapshot(
    context: str,
    view: Annotated[ViewFeed, Depends(get_view)]
) -> SnapshotResponse:
    """Get the pages fetched so far together with the sync state."""
    return SnapshotResponse.from_snapshot(view.snapshot(context))


@router.get("/{context}/stream")
async def stream_snapshots(
    context: str,
    view: Annotated[ViewFeed, Depends(get_view)],
    max_events: int | None = Query(default=None, ge=1)
) -> StreamingResponse:
    """Stream snapshots as newline-delimited JSON, one per change."""

    async def events() -> AsyncIterator[str]:
        sent = 0
        snapshots = view.observe(context)
        try:
            async for snapshot in snapshots:
                payload = SnapshotResponse.from_snapshot(snapshot).model_dump()
                yield json.dumps(payload, ensure_ascii=False) + "\n"
                sent += 1
                if max_events is not None and sent >= max_events:
                    break
        finally:
            await snapshots.aclose()

    return StreamingResponse(events(), media_type="application/x-ndjson")


# ─────────────────────────────────────────────────────────────
# Sync
# ─────────────────────────────────────────────────────────────

@router.post("/{context}/refresh")
async def refresh(
    context: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> SyncResultResponse:
    """Pull-to-refresh: restart the context from its first page."""
    return SyncResultResponse.from_result(await engine.refresh(context))


@router.post("/{context}/more")
async def load_more(
    context: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> SyncResultResponse:
    """Fetch the next page of the context."""
    return SyncResultResponse.from_result(await engine.load_more(context))


@router.post("/{context}/ensure-fresh")
async def ensure_fresh(
    context: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> SyncResultResponse:
    """Refresh only if the cached pages are stale."""
    return SyncResultResponse.from_result(await engine.ensure_fresh(context))


@router.get("/{context}/state")
async def get_state(
    context: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> SyncStateResponse:
    """Get the context's sync state."""
    return SyncStateResponse.from_state(engine.state(context))


@router.post("/{context}/reset")
async def reset_state(
    context: str,
    engine: Annotated[SyncEngine, Depends(get_engine)]
) -> SyncStateResponse:
    """Clear a recorded error and re-enable syncing for the context."""
    engine.reset(context)
    return SyncStateResponse.from_state(engine.state(context))
