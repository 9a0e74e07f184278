"""Markdown rendering for post sources."""

from __future__ import annotations

import re
from dataclasses import dataclass
from html import unescape
from typing import Protocol

import frontmatter
import markdown
import yaml

SNIPPET_LENGTH = 200
DEFAULT_TITLE = "Untitled"
MARKDOWN_EXTENSIONS = ["fenced_code", "tables"]

_H1_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$")
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass
class RenderResult:
    title: str
    snippet: str
    html_content: bytes


class RenderError(Exception):
    """Raised when a post source cannot be rendered."""


class Renderer(Protocol):
    def render(self, source: bytes) -> RenderResult: ...


def _split_title(body: str) -> tuple[str | None, str]:
    """Pull a leading ``# Title`` line out of the body."""
    lines = body.lstrip("\n").splitlines()
    if lines:
        match = _H1_RE.match(lines[0])
        if match:
            return match.group(1).strip(), "\n".join(lines[1:])
    return None, body


def _first_paragraph(body: str) -> str:
    for block in re.split(r"\n\s*\n", body):
        text = block.strip()
        if not text or text.startswith(("#", "```", "|", "<", "!")):
            continue
        plain = unescape(_TAG_RE.sub("", markdown.markdown(text)))
        return " ".join(plain.split())
    return ""


def _truncate(text: str, limit: int = SNIPPET_LENGTH) -> str:
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return cut.rstrip(" ,.;:") + "…"


class MarkdownRenderer:
    """Front matter + Markdown to HTML.

    Title comes from front matter ``title``, else a leading level-1 heading.
    Snippet comes from ``snippet`` or ``description``, else the first paragraph.
    """

    def __init__(self, extensions: list[str] | None = None):
        self.extensions = extensions or MARKDOWN_EXTENSIONS

    def render(self, source: bytes) -> RenderResult:
        try:
            text = source.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RenderError(f"post source is not valid UTF-8: {exc}") from exc

        try:
            doc = frontmatter.loads(text)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            raise RenderError(f"invalid front matter: {exc}") from exc

        heading, body = _split_title(doc.content)
        title = str(doc.metadata.get("title") or heading or DEFAULT_TITLE)
        snippet = doc.metadata.get("snippet") or doc.metadata.get("description")
        snippet = _truncate(str(snippet) if snippet else _first_paragraph(body))

        html = markdown.markdown(body, extensions=self.extensions)
        return RenderResult(title=title, snippet=snippet, html_content=html.encode("utf-8"))
