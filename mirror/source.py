"""Source repository collaborator: the types the sync engine consumes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

ZERO_SHA = "0" * 40


@dataclass
class BranchRef:
    name: str

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.name}"

    def is_main(self, main_branch: str) -> bool:
        return self.name == main_branch


@dataclass
class CommitFile:
    filename: str
    status: str  # added, modified, removed, renamed, copied, changed, unchanged
    previous_filename: str | None = None


@dataclass
class CommitSummary:
    sha: str
    author_date: datetime | None = None


@dataclass
class CommitDetail:
    sha: str
    author_date: datetime | None = None
    files: list[CommitFile] = field(default_factory=list)


class SourceRepositoryError(Exception):
    """A source-control call failed (transport, auth, not found)."""

    def __init__(self, operation: str, message: str, status_code: int | None = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class SourceRepository(Protocol):
    """Read-only view of the content repository.

    Commit lists are returned oldest first.
    """

    async def list_branches(self) -> list[BranchRef]: ...

    async def get_commits_since(
        self, branch: str, since: datetime | None
    ) -> list[CommitSummary]: ...

    async def get_commits_in_range(self, before: str, after: str) -> list[CommitSummary]: ...

    async def get_commit(self, sha: str) -> CommitDetail: ...

    async def get_file_contents(self, path: str, ref: str) -> bytes: ...

    async def get_default_branch_name(self) -> str: ...

    def get_repo_full_name(self) -> str: ...
