"""Post store: database row plus rendered HTML file, written as one unit."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from blog.config import settings
from blog.domain import Post, PostNotFoundError
from blog.entities.post import PostRow
from blog.persistence.artifacts import read_artifact, resolve_artifact_path, write_artifact
from blog.persistence.common import as_utc, dialect_insert, utcnow
from blog.persistence.tx import transaction

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _to_domain(row: PostRow) -> Post:
    return Post(
        id=row.id,
        title=row.title,
        snippet=row.snippet,
        html_path=row.html_path,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        published_at=as_utc(row.published_at),
    )


class PostRepository:
    """Transactional dual-write store for posts.

    ``save_post`` upserts the row and then writes ``<content_dir>/posts/<html_path>``
    inside the same transaction; a failed file write rolls the row back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        content_dir: str | Path | None = None,
    ):
        self.session_factory = session_factory
        self.post_dir = Path(content_dir or settings.content_dir) / "posts"

    def html_file(self, html_path: str) -> Path:
        return resolve_artifact_path(self.post_dir, html_path)

    async def save_post(self, post: Post, session: AsyncSession | None = None) -> None:
        """Upsert ``post`` and mirror its HTML to disk atomically.

        ``created_at`` of an existing row is never replaced, and an existing
        ``published_at`` is kept unless the post carries its own.
        """
        if post is None:
            raise ValueError("post cannot be None")
        if not post.id:
            raise ValueError("post ID cannot be empty")
        html_path = post.html_path or f"{post.id}.html"
        target = self.html_file(html_path)

        async with transaction(self.session_factory, session) as db:
            table = PostRow.__table__
            stmt = dialect_insert(db, table).values(
                id=post.id,
                title=post.title,
                snippet=post.snippet,
                html_path=html_path,
                updated_at=post.updated_at,
                published_at=post.published_at,
                created_at=post.created_at or post.updated_at or utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.id],
                set_={
                    "title": stmt.excluded.title,
                    "snippet": stmt.excluded.snippet,
                    "html_path": stmt.excluded.html_path,
                    "updated_at": stmt.excluded.updated_at,
                    "published_at": func.coalesce(stmt.excluded.published_at, table.c.published_at),
                    "created_at": func.coalesce(table.c.created_at, stmt.excluded.created_at),
                },
            )
            await db.execute(stmt)

            # Only after the row is in place; raising here rolls it back.
            await write_artifact(target, post.html_content)

        logger.debug("Saved post %s (%s)", post.id, target)

    async def get_post(self, post_id: str, session: AsyncSession | None = None) -> Post:
        if not post_id:
            raise ValueError("post ID cannot be empty")
        if session is not None:
            row = await session.get(PostRow, post_id)
        else:
            async with self.session_factory() as db:
                row = await db.get(PostRow, post_id)
        if row is None:
            raise PostNotFoundError(post_id)
        return _to_domain(row)

    async def get_latest_updated_time(self) -> datetime | None:
        """High-water mark for catch-up sync; ``None`` when no post has been stored."""
        async with self.session_factory() as db:
            result = await db.execute(select(func.max(PostRow.updated_at)))
            return as_utc(result.scalar())

    async def list_published_posts(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Post]:
        """Published posts, most recently published first."""
        if limit <= 0:
            limit = DEFAULT_PAGE_SIZE
        limit = min(limit, MAX_PAGE_SIZE)
        offset = max(offset, 0)
        async with self.session_factory() as db:
            result = await db.execute(
                select(PostRow)
                .where(PostRow.published_at.isnot(None))
                .order_by(PostRow.published_at.desc(), PostRow.id)
                .limit(limit)
                .offset(offset)
            )
            return [_to_domain(row) for row in result.scalars().all()]

    async def read_html(self, post: Post) -> bytes:
        return await read_artifact(self.html_file(post.html_path or f"{post.id}.html"))

    async def publish(self, post_id: str, session: AsyncSession | None = None) -> None:
        """Set ``published_at`` and bump ``updated_at``; no file is touched."""
        now = utcnow()
        await self._set_published(post_id, now, now, session)
        logger.info("Published post %s", post_id)

    async def unpublish(self, post_id: str, session: AsyncSession | None = None) -> None:
        """Clear ``published_at`` and bump ``updated_at``; the row is kept."""
        await self._set_published(post_id, None, utcnow(), session)
        logger.info("Unpublished post %s", post_id)

    async def _set_published(
        self,
        post_id: str,
        published_at: datetime | None,
        updated_at: datetime,
        session: AsyncSession | None,
    ) -> None:
        if not post_id:
            raise ValueError("post ID cannot be empty")
        async with transaction(self.session_factory, session) as db:
            result = await db.execute(
                update(PostRow)
                .where(PostRow.id == post_id)
                .values(published_at=published_at, updated_at=updated_at)
            )
            if result.rowcount == 0:
                raise PostNotFoundError(post_id)
