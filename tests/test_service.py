"""Tests for the post service: catch-up sync, push handling and shutdown."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from blog.domain import ImageNotFoundError, Post, PostNotFoundError
from blog.persistence.image_repository import ImageRepository
from blog.persistence.post_repository import PostRepository
from mirror.render import MarkdownRenderer
from mirror.service import PostService, ServiceClosedError
from mirror.source import (
    ZERO_SHA,
    BranchRef,
    CommitDetail,
    CommitFile,
    CommitSummary,
    SourceRepositoryError,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeSource:
    """In-memory content repository."""

    def __init__(self):
        self.branches: list[str] = ["main"]
        self.history: dict[str, list[str]] = {}
        self.commits: dict[str, CommitDetail] = {}
        self.files: dict[tuple[str, str], bytes] = {}
        self.ranges: dict[tuple[str, str], list[str]] = {}
        self.failing_branches: set[str] = set()
        self.fetches: list[tuple[str, str]] = []
        self.since_seen: list[datetime | None] = []
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    def add_commit(self, branch, sha, files, contents=None, days=0):
        self.commits[sha] = CommitDetail(
            sha=sha,
            author_date=T0 + timedelta(days=days),
            files=[CommitFile(*f) for f in files],
        )
        self.history.setdefault(branch, []).append(sha)
        for path, data in (contents or {}).items():
            self.files[(path, sha)] = data

    def _summary(self, sha):
        return CommitSummary(sha=sha, author_date=self.commits[sha].author_date)

    async def list_branches(self):
        return [BranchRef(name=name) for name in self.branches]

    async def get_commits_since(self, branch, since):
        self.since_seen.append(since)
        if branch in self.failing_branches:
            raise SourceRepositoryError(f"listing commits for branch {branch}", "status 500")
        return [self._summary(sha) for sha in self.history.get(branch, [])]

    async def get_commits_in_range(self, before, after):
        return [self._summary(sha) for sha in self.ranges[(before, after)]]

    async def get_commit(self, sha):
        return self.commits[sha]

    async def get_file_contents(self, path, ref):
        self.fetches.append((path, ref))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            return self.files[(path, ref)]
        finally:
            self.active -= 1

    async def get_default_branch_name(self):
        return "main"

    def get_repo_full_name(self):
        return "octo/blog"


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def posts(session_factory, tmp_path):
    return PostRepository(session_factory, content_dir=tmp_path / "content")


@pytest.fixture
def images(session_factory, tmp_path):
    return ImageRepository(session_factory, content_dir=tmp_path / "content")


@pytest.fixture
def service(posts, images, source):
    return PostService(posts, images, source, MarkdownRenderer(), main_branch="main", max_workers=4)


def _md(title: str) -> bytes:
    return f"# {title}\n\nAbout {title}.\n".encode()


class TestConstruction:
    def test_main_branch_required(self, posts, images, source):
        with pytest.raises(ValueError):
            PostService(posts, images, source, MarkdownRenderer(), main_branch="")

    def test_is_main_ref(self, service):
        assert service.is_main_ref("refs/heads/main")
        assert not service.is_main_ref("refs/heads/feature")


class TestCatchUp:
    @pytest.mark.asyncio
    async def test_main_branch_publishes_posts_and_stores_images(self, service, source, posts, images, tmp_path):
        source.add_commit(
            "main", "c1",
            [("posts/001-hello.md", "added"), ("images/cat.png", "added"), ("README.md", "added")],
            {"posts/001-hello.md": _md("Hello"), "images/cat.png": b"png"},
        )

        report = await service.sync_repository_changes()

        post = await posts.get_post("001")
        assert post.title == "Hello"
        assert post.is_published
        assert post.created_at == T0
        assert (tmp_path / "content" / "posts" / "001.html").exists()
        assert (await images.get_image("images/cat.png")).hash
        assert (tmp_path / "content" / "images" / "cat.png").read_bytes() == b"png"
        assert report.posts_saved == 1
        assert report.images_saved == 1
        assert source.since_seen == [None]

    @pytest.mark.asyncio
    async def test_feature_branch_saves_without_publishing(self, service, source, posts):
        source.branches = ["feature"]
        source.add_commit("feature", "f1", [("posts/002-draft.md", "added")], {"posts/002-draft.md": _md("Draft")})

        await service.sync_repository_changes()

        post = await posts.get_post("002")
        assert post.title == "Draft"
        assert not post.is_published

    @pytest.mark.asyncio
    async def test_uses_latest_commit_content_and_first_commit_date(self, service, source, posts):
        source.add_commit("main", "c1", [("posts/001-a.md", "added")], {"posts/001-a.md": _md("One")}, days=0)
        source.add_commit("main", "c2", [("posts/001-a.md", "modified")], {"posts/001-a.md": _md("Two")}, days=2)

        await service.sync_repository_changes()

        post = await posts.get_post("001")
        assert post.title == "Two"
        assert post.created_at == T0
        assert source.fetches == [("posts/001-a.md", "c2")]

    @pytest.mark.asyncio
    async def test_high_water_mark_is_passed_through(self, service, source, posts):
        await posts.save_post(Post(id="007", title="Old", html_content=b"x", created_at=T0, updated_at=T0))

        await service.sync_repository_changes()

        assert source.since_seen == [T0]

    @pytest.mark.asyncio
    async def test_failing_branch_does_not_abort_others(self, service, source, posts):
        source.branches = ["broken", "main"]
        source.failing_branches = {"broken"}
        source.add_commit("main", "c1", [("posts/001-a.md", "added")], {"posts/001-a.md": _md("A")})

        report = await service.sync_repository_changes()

        assert report.failed_branches == ["broken"]
        assert report.branches == 2
        assert (await posts.get_post("001")).is_published

    @pytest.mark.asyncio
    async def test_branch_list_failure_aborts(self, service, source):
        with patch.object(source, "list_branches", new=AsyncMock(side_effect=SourceRepositoryError("listing branches", "down"))):
            with pytest.raises(SourceRepositoryError):
                await service.sync_repository_changes()

    @pytest.mark.asyncio
    async def test_high_water_mark_failure_aborts(self, service, posts, source):
        with patch.object(posts, "get_latest_updated_time", new=AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                await service.sync_repository_changes()
        assert source.since_seen == []

    @pytest.mark.asyncio
    async def test_removals_only_applied_on_main(self, service, source, posts, images):
        await posts.save_post(Post(id="001", title="A", html_content=b"x", created_at=T0, updated_at=T0))
        await posts.publish("001")
        source.branches = ["feature", "main"]
        source.add_commit("feature", "f1", [("posts/001-a.md", "removed")])

        await service.sync_repository_changes()
        assert (await posts.get_post("001")).is_published

        source.add_commit("main", "c9", [("posts/001-a.md", "removed"), ("images/old.png", "removed")])
        source.history["feature"] = []

        report = await service.sync_repository_changes()
        assert not (await posts.get_post("001")).is_published
        assert report.posts_unpublished == 1
        with pytest.raises(ImageNotFoundError):
            await images.get_image("images/old.png")

    @pytest.mark.asyncio
    async def test_render_failure_is_isolated(self, service, source, posts):
        source.add_commit(
            "main", "c1",
            [("posts/001-bad.md", "added"), ("posts/002-good.md", "added")],
            {"posts/001-bad.md": b"\xff\xfe", "posts/002-good.md": _md("Good")},
        )

        report = await service.sync_repository_changes()

        assert report.posts_saved == 1
        with pytest.raises(PostNotFoundError):
            await posts.get_post("001")
        assert (await posts.get_post("002")).title == "Good"

    @pytest.mark.asyncio
    async def test_closed_service_refuses_sync(self, service):
        await service.close()
        with pytest.raises(ServiceClosedError):
            await service.sync_repository_changes()


class TestPushEvents:
    @pytest.mark.asyncio
    async def test_dispatches_in_background_with_bounded_concurrency(self, service, source, posts):
        n = 10
        paths = [f"posts/{i:03d}-p.md" for i in range(n)]
        source.add_commit("main", "c2", [(p, "added") for p in paths], {p: _md(p) for p in paths})
        source.ranges[("c1", "c2")] = ["c2"]
        source.gate = asyncio.Event()

        analysis = await service.handle_push_event("c1", "c2", "refs/heads/main")

        assert len(analysis.posts) == n
        assert service.pending == n
        # Let the first wave reach the gate before opening it.
        for _ in range(5):
            await asyncio.sleep(0)
        source.gate.set()
        await service.wait_idle()

        assert source.max_active <= 4
        assert len(await posts.list_published_posts(limit=100)) == n

    @pytest.mark.asyncio
    async def test_new_branch_uses_head_commit_only(self, service, source, posts):
        source.add_commit("feature", "f1", [("posts/003-new.md", "added")], {"posts/003-new.md": _md("New")})

        await service.handle_push_event(ZERO_SHA, "f1", "refs/heads/feature")
        await service.wait_idle()

        post = await posts.get_post("003")
        assert not post.is_published

    @pytest.mark.asyncio
    async def test_push_to_main_unpublishes_removed_posts(self, service, source, posts):
        await posts.save_post(Post(id="001", title="A", html_content=b"x", created_at=T0, updated_at=T0))
        await posts.publish("001")
        source.add_commit("main", "c2", [("posts/001-a.md", "removed")])
        source.ranges[("c1", "c2")] = ["c2"]

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        await service.wait_idle()

        assert not (await posts.get_post("001")).is_published

    @pytest.mark.asyncio
    async def test_readded_post_id_is_not_unpublished(self, service, source, posts):
        await posts.save_post(Post(id="001", title="A", html_content=b"x", created_at=T0, updated_at=T0))
        await posts.publish("001")
        source.add_commit(
            "main", "c2",
            [("posts/001-a.md", "removed"), ("posts/001-renamed.md", "added")],
            {"posts/001-renamed.md": _md("Renamed")},
        )
        source.ranges[("c1", "c2")] = ["c2"]

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        await service.wait_idle()

        post = await posts.get_post("001")
        assert post.title == "Renamed"
        assert post.is_published

    @pytest.mark.asyncio
    async def test_rename_to_new_id_unpublishes_old_post(self, service, source, posts):
        await posts.save_post(Post(id="001", title="A", html_content=b"x", created_at=T0, updated_at=T0))
        await posts.publish("001")
        source.add_commit(
            "main", "c2",
            [("posts/002-a.md", "renamed", "posts/001-a.md")],
            {"posts/002-a.md": _md("Moved")},
        )
        source.ranges[("c1", "c2")] = ["c2"]

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        await service.wait_idle()

        assert (await posts.get_post("001")).published_at is None
        moved = await posts.get_post("002")
        assert moved.title == "Moved"
        assert moved.is_published

    @pytest.mark.asyncio
    async def test_rename_keeping_id_stays_published(self, service, source, posts):
        await posts.save_post(Post(id="001", title="A", html_content=b"x", created_at=T0, updated_at=T0))
        await posts.publish("001")
        source.add_commit(
            "main", "c2",
            [("posts/001-b.md", "renamed", "posts/001-a.md")],
            {"posts/001-b.md": _md("B")},
        )
        source.ranges[("c1", "c2")] = ["c2"]

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        await service.wait_idle()

        post = await posts.get_post("001")
        assert post.title == "B"
        assert post.is_published

    @pytest.mark.asyncio
    async def test_ignores_tags_and_deleted_branches(self, service, source):
        analysis = await service.handle_push_event("a", "b", "refs/tags/v1")
        assert analysis.is_empty()

        analysis = await service.handle_push_event("a", ZERO_SHA, "refs/heads/feature")
        assert analysis.is_empty()
        assert service.pending == 0

    @pytest.mark.asyncio
    async def test_range_failure_propagates(self, service, source):
        with pytest.raises(KeyError):
            await service.handle_push_event("x", "y", "refs/heads/main")
        assert service.pending == 0

    @pytest.mark.asyncio
    async def test_close_before_units_start_does_no_work(self, service, source, posts):
        source.add_commit("main", "c2", [("posts/001-a.md", "added")], {"posts/001-a.md": _md("A")})
        source.ranges[("c1", "c2")] = ["c2"]

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        await service.close()

        assert source.fetches == []
        assert service.pending == 0
        with pytest.raises(PostNotFoundError):
            await posts.get_post("001")

    @pytest.mark.asyncio
    async def test_close_waits_for_running_units(self, service, source, posts):
        source.add_commit("main", "c2", [("posts/001-a.md", "added")], {"posts/001-a.md": _md("A")})
        source.ranges[("c1", "c2")] = ["c2"]
        source.gate = asyncio.Event()

        await service.handle_push_event("c1", "c2", "refs/heads/main")
        while not source.fetches:
            await asyncio.sleep(0)

        closing = asyncio.create_task(service.close())
        await asyncio.sleep(0)
        assert not closing.done()
        source.gate.set()
        await closing

        assert service.pending == 0
        # Stop was signalled mid-unit, so the save never happened.
        with pytest.raises(PostNotFoundError):
            await posts.get_post("001")

    @pytest.mark.asyncio
    async def test_closed_service_rejects_push(self, service):
        await service.close()
        with pytest.raises(ServiceClosedError):
            await service.handle_push_event("a", "b", "refs/heads/main")
        assert service.start_catch_up() is None


class TestCatchUpTask:
    @pytest.mark.asyncio
    async def test_catch_up_does_not_hold_a_worker_slot(self, posts, images, source):
        service = PostService(posts, images, source, MarkdownRenderer(), main_branch="main", max_workers=1)
        gate = asyncio.Event()

        async def slow_commits_since(branch, since):
            await gate.wait()
            return []

        source.add_commit("main", "c2", [("posts/001-a.md", "added")], {"posts/001-a.md": _md("A")})
        source.ranges[("c1", "c2")] = ["c2"]

        with patch.object(source, "get_commits_since", new=slow_commits_since):
            catch_up = service.start_catch_up()
            await service.handle_push_event("c1", "c2", "refs/heads/main")

            async def push_done():
                while service.pending > 1:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(push_done(), timeout=5)

            assert not catch_up.done()
            assert (await posts.get_post("001")).is_published
            gate.set()
            await service.close()
