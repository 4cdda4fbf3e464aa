"""Tests for artifact capture and retention."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from conftest import _git, make_ctx
from taskport.artifacts import (
    artifact_paths,
    capture_worktree_artifacts,
    collect_garbage,
    read_commit_refs,
    write_commit_refs,
    write_metadata,
)
from taskport.git_utils import _git_create_worktree
from taskport.models import RunAttempt, RunStatus, Task, TaskMode, TaskStatus


def _finished(status: TaskStatus, days_ago: float) -> Task:
    task = Task(title="t", status=status)
    task.runtime.finished_at = (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat()
    return task


class TestRetention:
    def test_orphan_directories_removed(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path)
        write_commit_refs(ctx, "task-orphan", [])

        assert collect_garbage(ctx, []) == ["task-orphan"]
        assert ctx.backend.list_dir(ctx.paths.artifacts_dir) == []

    def test_completed_and_failed_windows(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path)
        old_completed = _finished(TaskStatus.COMPLETED, 8)
        fresh_completed = _finished(TaskStatus.COMPLETED, 1)
        failed_mid = _finished(TaskStatus.FAILED, 8)
        failed_old = _finished(TaskStatus.TIMEOUT, 31)
        tasks = [old_completed, fresh_completed, failed_mid, failed_old]
        for task in tasks:
            write_metadata(ctx, task)

        removed = collect_garbage(ctx, tasks)

        assert sorted(removed) == sorted([old_completed.id, failed_old.id])

    def test_active_tasks_kept(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path)
        task = Task(title="running", status=TaskStatus.RUNNING)
        write_metadata(ctx, task)

        assert collect_garbage(ctx, [task]) == []

    def test_cleaned_task_measured_by_final_run(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path, {"task": {"retention_days": {"completed": 1, "failed": 100}}})
        task = _finished(TaskStatus.CLEANED, 2)
        task.runtime.runs.append(RunAttempt(attempt=1, run_id="r1", status=RunStatus.COMPLETED))
        write_metadata(ctx, task)

        assert collect_garbage(ctx, [task]) == [task.id]


class TestCapture:
    def _prepare(self, repo_ctx, mode: TaskMode = TaskMode.WRITE) -> tuple[Task, Path]:
        repo = repo_ctx.repo_root
        task = Task(title="capture", mode=mode)
        task.runtime.worktree_branch = f"taskport-task-{task.id}"
        task.runtime.base_ref = _git(repo, "rev-parse", "HEAD")
        worktree = repo_ctx.paths.trees_dir / task.runtime.worktree_branch
        _git_create_worktree(repo, worktree, task.runtime.worktree_branch, task.runtime.base_ref)
        return task, worktree

    def test_uncommitted_changes_become_patch(self, repo_ctx) -> None:
        task, worktree = self._prepare(repo_ctx)
        (worktree / "new.txt").write_text("hello\n")

        commits = capture_worktree_artifacts(repo_ctx, task, worktree)

        paths = artifact_paths(repo_ctx, task.id)
        assert commits == []
        assert "new.txt" in paths.patch.read_text()
        assert not paths.bundle.exists()
        assert read_commit_refs(repo_ctx, task.id) == []

    def test_commits_recorded_and_bundled(self, repo_ctx) -> None:
        task, worktree = self._prepare(repo_ctx)
        (worktree / "a.txt").write_text("a\n")
        _git(worktree, "add", "a.txt")
        _git(worktree, "commit", "-m", "add a")
        (worktree / "b.txt").write_text("b\n")
        _git(worktree, "add", "b.txt")
        _git(worktree, "commit", "-m", "add b")

        commits = capture_worktree_artifacts(repo_ctx, task, worktree)

        assert len(commits) == 2
        assert commits[-1] == _git(worktree, "rev-parse", "HEAD")
        assert read_commit_refs(repo_ctx, task.id) == commits
        paths = artifact_paths(repo_ctx, task.id)
        assert paths.bundle.exists()
        assert "a.txt" in paths.patch.read_text()
        assert "b.txt" in paths.patch.read_text()
