"""Reduce a batch of commits to the posts and images to upsert or remove."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from mirror.paths import is_image_file, is_post_file
from mirror.source import CommitDetail, CommitFile, CommitSummary, SourceRepository

logger = logging.getLogger(__name__)

_ADDED_STATUSES = {"added", "modified", "copied", "changed"}


@dataclass
class FileChange:
    """Representative commits for one path in a batch.

    ``commit`` is the first commit in the batch that added or modified the
    path and stays fixed once set. ``latest`` follows the most recent such
    commit and is the ref the file bytes are fetched at.
    """

    path: str
    commit: CommitDetail
    latest: CommitDetail

    @property
    def content_sha(self) -> str:
        return self.latest.sha


@dataclass
class CommitAnalysis:
    posts: dict[str, FileChange] = field(default_factory=dict)
    images: dict[str, FileChange] = field(default_factory=dict)
    posts_to_remove: set[str] = field(default_factory=set)
    images_to_remove: set[str] = field(default_factory=set)
    # Post paths renamed away within the batch and not present again at its end.
    renamed_from: set[str] = field(default_factory=set)

    def is_empty(self) -> bool:
        return not (
            self.posts or self.images or self.posts_to_remove
            or self.images_to_remove or self.renamed_from
        )


def _mark_added(
    to_process: dict[str, FileChange],
    to_remove: set[str],
    path: str,
    commit: CommitDetail,
) -> None:
    existing = to_process.get(path)
    if existing is None:
        to_process[path] = FileChange(path=path, commit=commit, latest=commit)
    else:
        existing.latest = commit
    to_remove.discard(path)


def _mark_removed(to_process: dict[str, FileChange], to_remove: set[str], path: str) -> None:
    to_process.pop(path, None)
    to_remove.add(path)


def apply_file_change(analysis: CommitAnalysis, file: CommitFile, commit: CommitDetail) -> None:
    """Fold one changelist entry into ``analysis``.

    Entries are applied in commit order, so the last transition for a path wins.
    """
    path = file.filename
    previous = file.previous_filename or ""
    status = file.status

    if not (is_post_file(path) or is_image_file(path) or is_post_file(previous) or is_image_file(previous)):
        return

    if status in _ADDED_STATUSES:
        if is_post_file(path):
            _mark_added(analysis.posts, analysis.posts_to_remove, path, commit)
            analysis.renamed_from.discard(path)
        if is_image_file(path):
            _mark_added(analysis.images, analysis.images_to_remove, path, commit)
    elif status == "removed":
        if is_post_file(path):
            _mark_removed(analysis.posts, analysis.posts_to_remove, path)
            analysis.renamed_from.discard(path)
        if is_image_file(path):
            _mark_removed(analysis.images, analysis.images_to_remove, path)
    elif status == "renamed":
        if is_post_file(previous):
            _mark_removed(analysis.posts, analysis.posts_to_remove, previous)
        if is_post_file(path):
            _mark_added(analysis.posts, analysis.posts_to_remove, path, commit)
            analysis.renamed_from.discard(path)
            if is_post_file(previous):
                # The renamed post supersedes its old path; the old ID is
                # still taken down unless the new path keeps it.
                analysis.posts_to_remove.discard(previous)
                analysis.renamed_from.add(previous)
        if is_image_file(previous):
            _mark_removed(analysis.images, analysis.images_to_remove, previous)
        if is_image_file(path):
            _mark_added(analysis.images, analysis.images_to_remove, path, commit)
    else:
        logger.debug("Ignoring %s with status %s in %s", path, status, commit.sha)


def fold_commits(commits: list[CommitDetail]) -> CommitAnalysis:
    """Analyze already-resolved commits, oldest first."""
    analysis = CommitAnalysis()
    for commit in commits:
        for file in commit.files:
            apply_file_change(analysis, file, commit)
    return analysis


async def analyze_commits(
    source: SourceRepository,
    commits: list[CommitSummary | CommitDetail],
) -> CommitAnalysis:
    """Resolve each commit's changelist and fold the batch.

    Commits that are already resolved are used as they are.

    Any failure resolving a commit aborts the whole analysis.
    """
    details: list[CommitDetail] = []
    for summary in commits:
        if isinstance(summary, CommitDetail):
            details.append(summary)
        else:
            details.append(await source.get_commit(summary.sha))
    analysis = fold_commits(details)
    logger.debug(
        "Analyzed %d commit(s): %d post(s), %d image(s) to upsert; %d post(s), %d image(s) to remove",
        len(details),
        len(analysis.posts),
        len(analysis.images),
        len(analysis.posts_to_remove),
        len(analysis.images_to_remove),
    )
    return analysis
