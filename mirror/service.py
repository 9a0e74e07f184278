"""Post service: mirrors the content repository into the post and image stores.

Provides:
- sync_repository_changes()  -- catch-up over every branch since the stored high-water mark
- handle_push_event()        -- webhook entry point; dispatches workers in the background
- close()                    -- stop signal plus wait for every dispatched worker
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from blog.config import settings
from blog.database import async_session
from blog.persistence.image_repository import ImageRepository
from blog.persistence.post_repository import PostRepository
from mirror.analyzer import CommitAnalysis, analyze_commits
from mirror.paths import extract_post_id
from mirror.github_client import GitHubSourceRepository
from mirror.render import MarkdownRenderer, Renderer
from mirror.source import ZERO_SHA, BranchRef, SourceRepository
from mirror.workers import ContentWorker

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class ServiceClosedError(RuntimeError):
    """Raised when work is requested from a closed post service."""


@dataclass
class SyncReport:
    branches: int = 0
    failed_branches: list[str] = field(default_factory=list)
    posts_saved: int = 0
    posts_unpublished: int = 0
    images_saved: int = 0
    images_removed: int = 0

    def as_dict(self) -> dict:
        return {
            "branches": self.branches,
            "failed_branches": self.failed_branches,
            "posts_saved": self.posts_saved,
            "posts_unpublished": self.posts_unpublished,
            "images_saved": self.images_saved,
            "images_removed": self.images_removed,
        }


def _removed_post_paths(analysis: CommitAnalysis) -> list[str]:
    """Removed or renamed-away paths whose post ID is not re-saved in the same batch."""
    kept_ids = {extract_post_id(path) for path in analysis.posts}
    return sorted(
        path for path in analysis.posts_to_remove | analysis.renamed_from
        if extract_post_id(path) not in kept_ids
    )


class PostService:
    """Branch-aware sync orchestrator.

    Catch-up sync runs branch by branch and awaits every unit in turn.
    Push events fan out one task per changed file, bounded by ``max_workers``,
    and return before the tasks finish. Only changes on ``main_branch``
    publish posts, unpublish removed posts, or delete images.
    """

    def __init__(
        self,
        posts: PostRepository,
        images: ImageRepository,
        source: SourceRepository,
        renderer: Renderer,
        main_branch: str,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        if not main_branch:
            raise ValueError("main branch name is required")
        self.posts = posts
        self.images = images
        self.source = source
        self.main_branch = main_branch
        self._stopping = asyncio.Event()
        self._slots = asyncio.Semaphore(max(1, max_workers))
        self._tasks: set[asyncio.Task] = set()
        self.worker = ContentWorker(posts, images, source, renderer, self._stopping)

    @property
    def closed(self) -> bool:
        return self._stopping.is_set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def is_main_ref(self, ref: str) -> bool:
        return ref == f"refs/heads/{self.main_branch}"

    # -- lifecycle ---------------------------------------------------------

    def spawn(
        self,
        fn: Callable[..., Awaitable[object]],
        *args,
        bounded: bool = True,
    ) -> asyncio.Task | None:
        """Run ``fn(*args)`` in the background, tracked until it finishes.

        Bounded units share the ``max_workers`` slots; unbounded ones do not.
        """
        if self.closed:
            logger.warning("Post service is closed, dropping %s", getattr(fn, "__name__", fn))
            return None
        task = asyncio.create_task(self._run_unit(fn, *args, bounded=bounded))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_unit(
        self,
        fn: Callable[..., Awaitable[object]],
        *args,
        bounded: bool = True,
    ) -> None:
        if not bounded:
            await self._call(fn, *args)
            return
        async with self._slots:
            await self._call(fn, *args)

    async def _call(self, fn: Callable[..., Awaitable[object]], *args) -> None:
        if self.closed:
            return
        try:
            await fn(*args)
        except Exception:
            logger.exception("Background unit %s failed", getattr(fn, "__name__", fn))

    async def wait_idle(self) -> None:
        """Wait for every dispatched unit without signalling shutdown."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Signal shutdown and block until every dispatched unit has exited."""
        self._stopping.set()
        await self.wait_idle()

    # -- catch-up sync -----------------------------------------------------

    async def sync_repository_changes(self) -> SyncReport:
        """Replay every branch's commits since the newest stored post update.

        Failing to read the high-water mark or the branch list aborts the sync;
        a failure on one branch is logged and the next branch is attempted.
        """
        if self.closed:
            raise ServiceClosedError("post service is closed")

        since = await self.posts.get_latest_updated_time()
        branches = await self.source.list_branches()
        logger.info(
            "Catch-up sync over %d branch(es) since %s",
            len(branches), since.isoformat() if since else "the beginning",
        )

        report = SyncReport()
        # Branches run one at a time to keep source API usage low.
        for branch in branches:
            if self.closed:
                logger.info("Post service closing, stopping catch-up sync")
                break
            report.branches += 1
            try:
                await self._sync_branch(branch, since, report)
            except Exception:
                logger.exception("Failed to process branch %s", branch.name)
                report.failed_branches.append(branch.name)

        logger.info("Catch-up sync finished: %s", report.as_dict())
        return report

    async def _sync_branch(
        self,
        branch: BranchRef,
        since: datetime | None,
        report: SyncReport,
    ) -> None:
        commits = await self.source.get_commits_since(branch.name, since)
        if not commits:
            logger.debug("No new commits on %s", branch.name)
            return

        analysis = await analyze_commits(self.source, commits)
        is_main = branch.is_main(self.main_branch)

        if is_main:
            for path in _removed_post_paths(analysis):
                report.posts_unpublished += await self.worker.unpublish_post(path)
            for path in sorted(analysis.images_to_remove):
                report.images_removed += await self.worker.remove_image(path)

        for change in analysis.posts.values():
            report.posts_saved += await self.worker.process_post(change, is_main)
        for change in analysis.images.values():
            report.images_saved += await self.worker.process_image(change)

    # -- push events -------------------------------------------------------

    async def handle_push_event(self, before: str, after: str, ref: str) -> CommitAnalysis:
        """Analyze a pushed commit range and dispatch its workers in the background.

        Errors resolving or analyzing the range propagate to the caller. Once
        workers are dispatched their outcome is only logged.
        """
        if self.closed:
            raise ServiceClosedError("post service is closed")
        if not ref.startswith("refs/heads/"):
            logger.debug("Ignoring push to non-branch ref %s", ref)
            return CommitAnalysis()
        if not after or after == ZERO_SHA:
            logger.info("Branch %s deleted, nothing to mirror", ref)
            return CommitAnalysis()

        if before and before != ZERO_SHA:
            commits = await self.source.get_commits_in_range(before, after)
        else:
            # New branch: only the head commit is new to us.
            commits = [await self.source.get_commit(after)]

        analysis = await analyze_commits(self.source, commits)
        is_main = self.is_main_ref(ref)

        units: list[tuple] = []
        if is_main:
            units += [(self.worker.unpublish_post, path) for path in _removed_post_paths(analysis)]
            units += [(self.worker.remove_image, path) for path in sorted(analysis.images_to_remove)]
        units += [(self.worker.process_post, change, is_main) for change in analysis.posts.values()]
        units += [(self.worker.process_image, change) for change in analysis.images.values()]
        for fn, *args in units:
            self.spawn(fn, *args)

        logger.info(
            "Push to %s (%s...%s): dispatched %d unit(s)",
            ref, before[:7] if before else "", after[:7], len(units),
        )
        return analysis

    def start_catch_up(self) -> asyncio.Task | None:
        """Run :meth:`sync_repository_changes` as a tracked background task.

        The sync does not take a worker slot, so pushes keep full concurrency.
        """
        return self.spawn(self.sync_repository_changes, bounded=False)


async def create_post_service(
    session_factory=None,
    content_dir: str | None = None,
) -> tuple[PostService, GitHubSourceRepository]:
    """Wire a :class:`PostService` against GitHub using ``settings``.

    The caller owns both returned objects and must close them.
    """
    factory = session_factory or async_session
    source = GitHubSourceRepository()
    try:
        main_branch = settings.main_branch or await source.get_default_branch_name()
    except Exception:
        await source.close()
        raise
    logger.info(
        "Mirroring %s (main branch %s)", source.get_repo_full_name(), main_branch
    )
    service = PostService(
        posts=PostRepository(factory, content_dir),
        images=ImageRepository(factory, content_dir),
        source=source,
        renderer=MarkdownRenderer(),
        main_branch=main_branch,
        max_workers=settings.sync_max_workers,
    )
    return service, source
