"""Per-file units of work dispatched by the post service.

Each unit logs and swallows its own failures so sibling units in the same
batch are unaffected. Every unit checks the shared stop signal before each
fetch or write and returns early once it is set.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timezone

from blog.domain import Image, ImageNotFoundError, Post, PostNotFoundError
from blog.persistence.image_repository import ImageRepository
from blog.persistence.post_repository import PostRepository
from mirror.analyzer import FileChange
from mirror.paths import extract_post_id, html_filename
from mirror.render import Renderer
from mirror.source import SourceRepository

logger = logging.getLogger(__name__)


def calculate_hash(content: bytes) -> str:
    """SHA-256 of ``content`` as lowercase hex."""
    return hashlib.sha256(content).hexdigest()


class ContentWorker:
    def __init__(
        self,
        posts: PostRepository,
        images: ImageRepository,
        source: SourceRepository,
        renderer: Renderer,
        stopping: asyncio.Event,
    ):
        self.posts = posts
        self.images = images
        self.source = source
        self.renderer = renderer
        self.stopping = stopping

    def _stopped(self, what: str, key: str) -> bool:
        if self.stopping.is_set():
            logger.debug("Shutting down, skipping %s for %s", what, key)
            return True
        return False

    async def process_post(self, change: FileChange, is_main_branch: bool) -> bool:
        """Fetch, render and store one post; publish it when on the main branch.

        Returns True when the post was stored.
        """
        post_id = extract_post_id(change.path)
        if not post_id:
            return False
        sha = change.content_sha

        if self._stopped("fetch", change.path):
            return False
        try:
            source = await self.source.get_file_contents(change.path, sha)
        except Exception:
            logger.exception("Failed to get file contents for %s at %s", change.path, sha)
            return False

        try:
            # Markdown conversion is CPU-bound; keep it off the event loop.
            result = await asyncio.to_thread(self.renderer.render, source)
        except Exception:
            logger.exception("Failed to render markdown for %s", change.path)
            return False

        modified_at = change.latest.author_date or datetime.now(timezone.utc)

        if self._stopped("lookup", post_id):
            return False
        try:
            existing = await self.posts.get_post(post_id)
            created_at = existing.created_at or change.commit.author_date or modified_at
        except PostNotFoundError:
            created_at = change.commit.author_date or modified_at
        except Exception:
            logger.exception("Failed to look up post %s", post_id)
            return False

        post = Post(
            id=post_id,
            title=result.title,
            snippet=result.snippet,
            html_path=html_filename(post_id),
            html_content=result.html_content,
            created_at=created_at,
            updated_at=modified_at,
        )

        if self._stopped("save", post_id):
            return False
        try:
            await self.posts.save_post(post)
        except Exception:
            logger.exception("Failed to save post %s", post_id)
            return False

        if is_main_branch:
            if self._stopped("publish", post_id):
                return True
            try:
                await self.posts.publish(post_id)
            except Exception:
                logger.exception("Failed to publish post %s", post_id)
                return True

        logger.info("Post %s processed from %s at %s", post_id, change.path, sha)
        return True

    async def unpublish_post(self, path: str) -> bool:
        post_id = extract_post_id(path)
        if not post_id or self._stopped("unpublish", path):
            return False
        try:
            await self.posts.unpublish(post_id)
        except PostNotFoundError:
            logger.debug("Post %s was never stored, nothing to unpublish", post_id)
            return False
        except Exception:
            logger.exception("Failed to unpublish post %s (%s)", post_id, path)
            return False
        return True

    async def process_image(self, change: FileChange) -> bool:
        """Fetch one image and store it unless the stored hash already matches.

        Returns True when bytes were written.
        """
        path, sha = change.path, change.content_sha

        if self._stopped("fetch", path):
            return False
        try:
            content = await self.source.get_file_contents(path, sha)
        except Exception:
            logger.exception("Failed to get image contents for %s at %s", path, sha)
            return False

        digest = calculate_hash(content)

        if self._stopped("lookup", path):
            return False
        try:
            existing = await self.images.get_image(path)
        except ImageNotFoundError:
            existing = None
        except Exception:
            logger.exception("Failed to look up image %s", path)
            return False
        if existing is not None and existing.hash == digest:
            logger.debug("Image %s unchanged (%s), skipping", path, digest)
            return False

        now = datetime.now(timezone.utc)
        image = Image(path=path, hash=digest, content=content, created_at=now, updated_at=now)

        if self._stopped("save", path):
            return False
        try:
            written = await self.images.save_image(image)
        except Exception:
            logger.exception("Failed to save image %s", path)
            return False

        if written:
            logger.info("Image %s processed (%s)", path, digest)
        return written

    async def remove_image(self, path: str) -> bool:
        if self._stopped("delete", path):
            return False
        try:
            await self.images.delete_image(path)
        except Exception:
            logger.exception("Failed to remove image %s", path)
            return False
        logger.info("Image %s removed", path)
        return True
