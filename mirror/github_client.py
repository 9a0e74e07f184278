"""GitHub REST client implementing the source repository the sync engine reads."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from blog.config import settings
from mirror.source import (
    BranchRef,
    CommitDetail,
    CommitFile,
    CommitSummary,
    SourceRepositoryError,
)

logger = logging.getLogger(__name__)

# Errors worth retrying (transient)
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}
_MAX_RETRIES = 3
_BASE_DELAY = 1.0  # seconds
_PER_PAGE = 100
_MAX_COMMIT_FILES = 3000  # GitHub stops listing files of a single commit here


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


def _author_date(payload: dict) -> datetime | None:
    commit = payload.get("commit") or {}
    author = commit.get("author") or {}
    return _parse_timestamp(author.get("date"))


def _summary(payload: dict) -> CommitSummary:
    return CommitSummary(sha=payload["sha"], author_date=_author_date(payload))


class GitHubSourceRepository:
    """Read access to one GitHub repository (``owner/name``)."""

    def __init__(
        self,
        repo: str | None = None,
        token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        full_name = repo or settings.github_repo
        if not full_name or full_name.count("/") != 1:
            raise ValueError(
                "GitHub repository is required as owner/name. "
                "Set BLOG_CORE_GITHUB_REPO as an environment variable."
            )
        self.owner, self.repo = full_name.split("/")
        self.token = token if token is not None else settings.github_token
        self.base_url = (base_url or settings.github_api_base).rstrip("/")
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"
        self._client = client or httpx.AsyncClient(timeout=30.0)

    @property
    def repo_url(self) -> str:
        return f"{self.base_url}/repos/{self.owner}/{self.repo}"

    async def close(self):
        await self._client.aclose()

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        operation: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry on transient errors."""
        headers = {**self.headers, **kwargs.pop("headers", {})}
        for attempt in range(_MAX_RETRIES + 1):
            try:
                resp = await self._client.request(method, url, headers=headers, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as exc:
                if attempt < _MAX_RETRIES:
                    delay = _BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "%s on %s %s, retrying in %.1fs (attempt %d/%d)",
                        type(exc).__name__, method, url,
                        delay, attempt + 1, _MAX_RETRIES,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise SourceRepositoryError(
                    operation,
                    f"{type(exc).__name__} after {_MAX_RETRIES + 1} attempts",
                ) from exc
            except httpx.HTTPError as exc:
                raise SourceRepositoryError(operation, str(exc)) from exc

            if resp.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRIES:
                delay = _BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Retryable %d from %s %s, retrying in %.1fs (attempt %d/%d)",
                    resp.status_code, method, url,
                    delay, attempt + 1, _MAX_RETRIES,
                )
                await asyncio.sleep(delay)
                continue
            if resp.status_code in (401, 403):
                raise SourceRepositoryError(
                    operation,
                    f"authentication failed ({resp.status_code}); "
                    "check that BLOG_CORE_GITHUB_TOKEN is set correctly",
                    status_code=resp.status_code,
                )
            if resp.is_error:
                message = resp.reason_phrase
                try:
                    body = resp.json()
                except ValueError:
                    body = None
                if isinstance(body, dict):
                    message = body.get("message", message)
                raise SourceRepositoryError(
                    operation,
                    f"status {resp.status_code}: {message}",
                    status_code=resp.status_code,
                )
            return resp
        raise SourceRepositoryError(operation, f"gave up after {_MAX_RETRIES + 1} attempts")

    async def _paginate(
        self,
        url: str,
        operation: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict]:
        """Follow ``Link: rel="next"`` headers and concatenate list pages."""
        items: list[dict] = []
        next_url: str | None = url
        next_params = {"per_page": _PER_PAGE, **(params or {})}
        while next_url:
            resp = await self._request_with_retry("GET", next_url, operation, params=next_params)
            page = resp.json()
            if not isinstance(page, list):
                raise SourceRepositoryError(operation, "expected a JSON list")
            items.extend(page)
            next_url = resp.links.get("next", {}).get("url")
            # The next link already carries the query string.
            next_params = None
        return items

    async def list_branches(self) -> list[BranchRef]:
        op = f"listing branches for {self.get_repo_full_name()}"
        payload = await self._paginate(f"{self.repo_url}/branches", op)
        return [BranchRef(name=item["name"]) for item in payload]

    async def get_commits_since(self, branch: str, since: datetime | None) -> list[CommitSummary]:
        """Commits on ``branch`` since ``since`` (all history when ``None``), oldest first."""
        op = f"listing commits for branch {branch}"
        params: dict[str, Any] = {"sha": branch}
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            params["since"] = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        payload = await self._paginate(f"{self.repo_url}/commits", op, params)
        # GitHub lists newest first.
        return [_summary(item) for item in reversed(payload)]

    async def get_commits_in_range(self, before: str, after: str) -> list[CommitSummary]:
        """Commits reachable from ``after`` but not ``before``, oldest first.

        The compare endpoint pages its commit list; every page is read.
        """
        op = f"comparing {before}...{after}"
        commits: list[dict] = []
        total = None
        next_url: str | None = f"{self.repo_url}/compare/{before}...{after}"
        params: dict[str, Any] | None = {"per_page": _PER_PAGE}
        while next_url:
            resp = await self._request_with_retry("GET", next_url, op, params=params)
            payload = resp.json()
            if total is None:
                total = payload.get("total_commits")
            commits.extend(payload.get("commits") or [])
            next_url = resp.links.get("next", {}).get("url")
            params = None
        if total is not None and len(commits) < total:
            logger.warning(
                "Compare %s...%s returned %d of %d commits; older commits are skipped",
                before[:7], after[:7], len(commits), total,
            )
        return [_summary(item) for item in commits]

    async def get_commit(self, sha: str) -> CommitDetail:
        op = f"getting commit {sha}"
        resp = await self._request_with_retry(
            "GET", f"{self.repo_url}/commits/{sha}", op, params={"per_page": _PER_PAGE}
        )
        payload = resp.json()
        raw_files = list(payload.get("files") or [])
        # Large commits page their file list.
        next_url = resp.links.get("next", {}).get("url")
        while next_url:
            resp = await self._request_with_retry("GET", next_url, op)
            raw_files.extend(resp.json().get("files") or [])
            next_url = resp.links.get("next", {}).get("url")
        if len(raw_files) >= _MAX_COMMIT_FILES:
            logger.warning(
                "Commit %s lists %d files, the API maximum; later files may be missing",
                sha, len(raw_files),
            )
        files = [
            CommitFile(
                filename=item["filename"],
                status=item.get("status", ""),
                previous_filename=item.get("previous_filename"),
            )
            for item in raw_files
        ]
        return CommitDetail(sha=payload["sha"], author_date=_author_date(payload), files=files)

    async def get_file_contents(self, path: str, ref: str) -> bytes:
        op = f"getting contents of {path} at {ref}"
        resp = await self._request_with_retry(
            "GET",
            f"{self.repo_url}/contents/{quote(path)}",
            op,
            params={"ref": ref},
            headers={"Accept": "application/vnd.github.raw+json"},
        )
        return resp.content

    async def get_default_branch_name(self) -> str:
        op = f"getting repository info for {self.get_repo_full_name()}"
        resp = await self._request_with_retry("GET", self.repo_url, op)
        return resp.json()["default_branch"]

    def get_repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"
