"""On-demand catch-up sync."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends, HTTPException

from blog.dependencies import get_post_service
from mirror.service import PostService

router = APIRouter(prefix="/sync", tags=["sync"])

_SYNC_COOLDOWN = 30  # seconds between sync calls
_last_sync_time: float = 0.0


@router.post("", status_code=202)
async def start_sync(service: PostService = Depends(get_post_service)):
    """Start a catch-up sync in the background."""
    global _last_sync_time
    now = time.monotonic()
    if _last_sync_time and now - _last_sync_time < _SYNC_COOLDOWN:
        remaining = int(_SYNC_COOLDOWN - (now - _last_sync_time))
        raise HTTPException(status_code=429, detail=f"Sync cooldown: retry in {remaining}s")

    task = service.start_catch_up()
    if task is None:
        raise HTTPException(status_code=503, detail="Post service is shutting down")
    _last_sync_time = now
    return {"status": "started", "pending": service.pending}
