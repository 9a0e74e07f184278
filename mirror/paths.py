"""Classify repository paths as post sources or images."""

from __future__ import annotations

import re

POST_PATH_RE = re.compile(r"^posts/(\d+)-.*\.md$")
IMAGE_PATH_RE = re.compile(r"^images/.*\.(jpg|jpeg|png|gif|svg|webp|avif)$")


def is_post_file(path: str | None) -> bool:
    """True for ``posts/<digits>-<anything>.md``."""
    return bool(path) and POST_PATH_RE.match(path) is not None


def is_image_file(path: str | None) -> bool:
    """True for ``images/**.<ext>`` with a supported, lower-case extension."""
    return bool(path) and IMAGE_PATH_RE.match(path) is not None


def extract_post_id(path: str | None) -> str:
    """Return the numeric prefix of a post filename, e.g. ``posts/001-x.md`` -> ``"001"``.

    Returns an empty string for anything that is not a post file.
    """
    if not path:
        return ""
    match = POST_PATH_RE.match(path)
    return match.group(1) if match else ""


def html_filename(post_id: str) -> str:
    return f"{post_id}.html"
