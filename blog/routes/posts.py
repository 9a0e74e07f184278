"""Post read endpoints. Only published posts are visible."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from blog.dependencies import get_post_repository
from blog.domain import PostNotFoundError
from blog.persistence.post_repository import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PostRepository
from blog.schemas.posts import PostDetailResponse, PostSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/posts", tags=["posts"])


@router.get("", response_model=list[PostSummaryResponse])
async def list_posts(
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    posts: PostRepository = Depends(get_post_repository),
):
    """List published posts, newest first."""
    items = await posts.list_published_posts(limit=limit, offset=offset)
    return [PostSummaryResponse.model_validate(post) for post in items]


@router.get("/{post_id}", response_model=PostDetailResponse)
async def get_post(
    post_id: str,
    posts: PostRepository = Depends(get_post_repository),
):
    """Get a single published post with its rendered HTML."""
    try:
        post = await posts.get_post(post_id)
    except PostNotFoundError:
        raise HTTPException(status_code=404, detail=f"Post {post_id} not found")
    if not post.is_published:
        raise HTTPException(status_code=404, detail=f"Post {post_id} not found")

    try:
        html = await posts.read_html(post)
    except FileNotFoundError:
        logger.error("Rendered HTML for post %s missing at %s", post_id, post.html_path)
        raise HTTPException(status_code=404, detail=f"Post {post_id} not found")

    return PostDetailResponse(
        id=post.id,
        title=post.title,
        snippet=post.snippet,
        created_at=post.created_at,
        updated_at=post.updated_at,
        published_at=post.published_at,
        html=html.decode("utf-8"),
    )
