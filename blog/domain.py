"""Domain objects shared by the content store and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Post:
    """A blog post rendered from ``posts/<id>-<slug>.md``.

    ``published_at`` is set only while the post is live on the main branch.
    ``html_content`` is not stored in the database; it is mirrored to
    ``html_path`` under the content directory.
    """

    id: str
    title: str = ""
    snippet: str = ""
    html_path: str = ""
    html_content: bytes = b""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    published_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.published_at is not None


@dataclass
class Image:
    """An image mirrored from ``images/``; identified by its repository path."""

    path: str
    hash: str = ""
    content: bytes = b""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NotFoundError(Exception):
    """Raised when a stored post or image does not exist."""


class PostNotFoundError(NotFoundError):
    def __init__(self, post_id: str):
        super().__init__(f"post not found: {post_id}")
        self.post_id = post_id


class ImageNotFoundError(NotFoundError):
    def __init__(self, path: str):
        super().__init__(f"image not found: {path}")
        self.path = path
