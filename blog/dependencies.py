"""FastAPI dependencies for the content store and the post service."""

from __future__ import annotations

from fastapi import HTTPException, Request

from blog.database import async_session
from blog.persistence.post_repository import PostRepository
from mirror.service import PostService


def get_post_repository() -> PostRepository:
    return PostRepository(async_session)


def get_post_service(request: Request) -> PostService:
    service = getattr(request.app.state, "post_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Post sync is not configured")
    return service
