"""Filesystem side of the dual write: rendered HTML and image files."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def resolve_artifact_path(root: Path, relative: str) -> Path:
    """Join ``relative`` onto ``root``, refusing paths that escape it."""
    root = root.resolve()
    target = (root / relative).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"artifact path escapes content directory: {relative}")
    return target


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # The old file stays in place until the new bytes are fully on disk.
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


async def write_artifact(path: Path, data: bytes) -> None:
    await asyncio.to_thread(_write_file, path, data)


async def remove_artifact(path: Path) -> None:
    """Delete ``path``; a file that is already gone is not an error."""
    removed = await asyncio.to_thread(_remove_file, path)
    if not removed:
        logger.debug("Artifact %s already absent", path)


async def read_artifact(path: Path) -> bytes:
    return await asyncio.to_thread(path.read_bytes)
