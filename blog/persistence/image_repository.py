"""Image store: hash row plus image file, written and deleted as one unit."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from blog.config import settings
from blog.domain import Image, ImageNotFoundError
from blog.entities.image import ImageRow
from blog.persistence.artifacts import remove_artifact, resolve_artifact_path, write_artifact
from blog.persistence.common import as_utc, dialect_insert, utcnow
from blog.persistence.tx import transaction

logger = logging.getLogger(__name__)


class ImageRepository:
    """Images live at ``<content_dir>/<repository path>``, e.g. ``content/images/a/b.png``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        content_dir: str | Path | None = None,
    ):
        self.session_factory = session_factory
        self.content_dir = Path(content_dir or settings.content_dir)

    def image_file(self, path: str) -> Path:
        return resolve_artifact_path(self.content_dir, path)

    async def save_image(self, img: Image, session: AsyncSession | None = None) -> bool:
        """Upsert the image row, then write the bytes; a failed write rolls back the row.

        Returns False without writing anything when the stored hash already
        matches and the file is on disk.
        """
        if img is None:
            raise ValueError("image cannot be None")
        if not img.path:
            raise ValueError("image path cannot be empty")
        target = self.image_file(img.path)

        async with transaction(self.session_factory, session) as db:
            existing = await db.get(ImageRow, img.path)
            if existing is not None and existing.hash == img.hash and target.exists():
                logger.debug("Image %s unchanged (%s), skipping write", img.path, img.hash)
                return False

            table = ImageRow.__table__
            now = utcnow()
            stmt = dialect_insert(db, table).values(
                path=img.path,
                hash=img.hash,
                updated_at=img.updated_at or now,
                created_at=img.created_at or now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.path],
                set_={
                    "hash": stmt.excluded.hash,
                    "updated_at": stmt.excluded.updated_at,
                    "created_at": func.coalesce(table.c.created_at, stmt.excluded.created_at),
                },
            )
            await db.execute(stmt)

            await write_artifact(target, img.content)

        logger.debug("Saved image %s (%s)", img.path, img.hash)
        return True

    async def get_image(self, path: str, session: AsyncSession | None = None) -> Image:
        if not path:
            raise ValueError("image path cannot be empty")
        if session is not None:
            row = await session.get(ImageRow, path)
        else:
            async with self.session_factory() as db:
                row = await db.get(ImageRow, path)
        if row is None:
            raise ImageNotFoundError(path)
        return Image(
            path=row.path,
            hash=row.hash,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    async def delete_image(self, path: str, session: AsyncSession | None = None) -> None:
        """Delete the row, then the file. Deleting a missing image is a no-op."""
        if not path:
            raise ValueError("image path cannot be empty")
        target = self.image_file(path)

        async with transaction(self.session_factory, session) as db:
            await db.execute(delete(ImageRow).where(ImageRow.path == path))
            await remove_artifact(target)

        logger.debug("Deleted image %s", path)
