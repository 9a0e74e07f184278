"""Blog Core: serves posts mirrored from a Markdown content repository."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from blog.config import settings
from blog.database import close_db, init_db
from blog.middleware.api_key_auth import ApiKeyAuthMiddleware
from blog.routes import posts, sync, webhooks
from mirror.service import create_post_service

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    app.state.post_service = None
    source = None
    if settings.github_repo:
        try:
            app.state.post_service, source = await create_post_service()
        except Exception:
            logger.exception("Post sync disabled: could not reach %s", settings.github_repo)
    else:
        logger.warning("BLOG_CORE_GITHUB_REPO not set, post sync disabled")

    # Catch up on pushes missed while the server was down
    if app.state.post_service is not None and settings.sync_on_startup:
        app.state.post_service.start_catch_up()
    yield

    if app.state.post_service is not None:
        await app.state.post_service.close()
    if source is not None:
        await source.close()
    await close_db()


app = FastAPI(
    title="Blog Core",
    description="Blog backend that mirrors Markdown posts and images from a git repository",
    version=settings.api_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ApiKeyAuthMiddleware)

app.include_router(posts.router, prefix=settings.api_prefix)
app.include_router(sync.router, prefix=settings.api_prefix)
app.include_router(webhooks.router)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "blog-core", "version": settings.api_version}
