"""Durable per-task outputs stored under ``.taskport/jobs/artifacts/<task>/``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from .context import RepoContext
from .git_utils import _git_rev_list, _run_git
from .io_utils import _append_text
from .models import CheckpointRef, Task, TaskStatus, is_terminal
from .utils import _now_iso, _parse_iso


@dataclass(frozen=True)
class ArtifactPaths:
    root: Path

    @property
    def metadata(self) -> Path:
        return self.root / "metadata.json"

    @property
    def commit_refs(self) -> Path:
        return self.root / "commit-refs.json"

    @property
    def patch(self) -> Path:
        return self.root / "changes.patch"

    @property
    def bundle(self) -> Path:
        return self.root / "changes.bundle"

    @property
    def stdout(self) -> Path:
        return self.root / "stdout.log"

    @property
    def stderr(self) -> Path:
        return self.root / "stderr.log"

    @property
    def summary(self) -> Path:
        return self.root / "summary.txt"

    @property
    def attach_context(self) -> Path:
        return self.root / "attach" / "context.json"

    def checkpoint(self, run_id: str) -> Path:
        return self.root / "checkpoints" / f"{run_id}.json"


def artifact_paths(ctx: RepoContext, task_id: str) -> ArtifactPaths:
    return ArtifactPaths(ctx.paths.task_artifacts(task_id))


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------

def append_stdout(ctx: RepoContext, task_id: str, text: str) -> None:
    _append_text(artifact_paths(ctx, task_id).stdout, text)


def append_stderr(ctx: RepoContext, task_id: str, text: str) -> None:
    _append_text(artifact_paths(ctx, task_id).stderr, text)


def write_metadata(ctx: RepoContext, task: Task, **extra: Any) -> dict[str, Any]:
    paths = artifact_paths(ctx, task.id)
    metadata: dict[str, Any] = {
        "task_id": task.id,
        "display_id": task.display_id,
        "title": task.title,
        "mode": task.mode.value,
        "branch": task.branch,
        "adapter": task.adapter,
        "worker": task.worker,
        "status": task.status.value,
        "run_attempt": task.runtime.run_attempt,
        "base_ref": task.runtime.base_ref,
        "worktree_branch": task.runtime.worktree_branch,
        "written_at": _now_iso(),
    }
    metadata.update(extra)
    ctx.backend.write_json(paths.metadata, metadata)
    return metadata


def read_metadata(ctx: RepoContext, task_id: str) -> Optional[dict[str, Any]]:
    return ctx.backend.read_json(artifact_paths(ctx, task_id).metadata)


def write_commit_refs(ctx: RepoContext, task_id: str, commits: list[str]) -> None:
    ctx.backend.write_json(artifact_paths(ctx, task_id).commit_refs, {"commits": list(commits)})


def read_commit_refs(ctx: RepoContext, task_id: str) -> list[str]:
    data = ctx.backend.read_json(artifact_paths(ctx, task_id).commit_refs) or {}
    commits = data.get("commits")
    return [str(c) for c in commits] if isinstance(commits, list) else []


def write_summary(ctx: RepoContext, task_id: str, summary: str) -> None:
    path = artifact_paths(ctx, task_id).summary
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(summary.rstrip("\n") + "\n", encoding="utf-8")


def write_attach_context(ctx: RepoContext, task_id: str, context: dict[str, Any]) -> Path:
    path = artifact_paths(ctx, task_id).attach_context
    ctx.backend.write_json(path, context)
    return path


def write_checkpoint(ctx: RepoContext, checkpoint: CheckpointRef) -> Path:
    path = artifact_paths(ctx, checkpoint.task_id).checkpoint(checkpoint.run_id)
    ctx.backend.write_json(path, checkpoint.to_dict())
    return path


# ---------------------------------------------------------------------------
# Worktree capture
# ---------------------------------------------------------------------------

def capture_worktree_artifacts(ctx: RepoContext, task: Task, worktree: Path) -> list[str]:
    """Persist commit refs, patch and bundle for a write task's worktree.

    Returns:
        The commits made on top of the task's base ref, oldest first.
    """
    paths = artifact_paths(ctx, task.id)
    paths.root.mkdir(parents=True, exist_ok=True)
    base = task.runtime.base_ref or "HEAD"
    commits = _git_rev_list(worktree, base) if task.runtime.base_ref else []
    write_commit_refs(ctx, task.id, commits)

    # Intent-to-add makes untracked files show up in the diff.
    _run_git(worktree, ["add", "-A", "-N"], check=False)
    diff = _run_git(worktree, ["diff", "--binary", base], check=False)
    if diff.returncode == 0:
        paths.patch.write_text(diff.stdout, encoding="utf-8")
    else:
        logger.warning("Unable to diff task {} worktree: {}", task.id, diff.stderr.strip())
        paths.patch.write_text("", encoding="utf-8")

    if commits and task.runtime.worktree_branch:
        refspec = f"{base}..refs/heads/{task.runtime.worktree_branch}"
        bundle = _run_git(worktree, ["bundle", "create", str(paths.bundle), refspec], check=False)
        if bundle.returncode != 0:
            logger.warning("Unable to bundle task {} commits: {}", task.id, bundle.stderr.strip())
            paths.bundle.unlink(missing_ok=True)
    else:
        paths.bundle.unlink(missing_ok=True)
    return commits


def list_artifact_files(ctx: RepoContext, task_id: str) -> list[Path]:
    root = artifact_paths(ctx, task_id).root
    if not root.is_dir():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file())


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def _retention_days(ctx: RepoContext, status: TaskStatus) -> float:
    retention = ctx.config.task.retention_days
    return retention.completed if status == TaskStatus.COMPLETED else retention.failed


def collect_garbage(
    ctx: RepoContext,
    tasks: Iterable[Task],
    now: Optional[datetime] = None,
) -> list[str]:
    """Remove orphaned artifact directories and those past their retention window.

    Completed tasks keep artifacts for ``retention_days.completed``; failed,
    timed out and cancelled ones for ``retention_days.failed``. Cleaned tasks
    are measured by the status they finished with.

    Returns:
        Task ids whose artifact directories were removed.
    """
    now = now or datetime.now(timezone.utc)
    by_id = {t.id: t for t in tasks}
    removed: list[str] = []
    for name in ctx.backend.list_dir(ctx.paths.artifacts_dir):
        task = by_id.get(name)
        expired = task is None
        if task is not None:
            finished_status = _finished_status(task)
            finished_at = _parse_iso(task.runtime.finished_at)
            if finished_status is not None and finished_at is not None:
                window = timedelta(days=_retention_days(ctx, finished_status))
                expired = now - finished_at >= window
        if expired:
            ctx.backend.remove_tree(ctx.paths.task_artifacts(name))
            removed.append(name)
            logger.debug("Removed artifacts for {}", name)
    return removed


def _finished_status(task: Task) -> Optional[TaskStatus]:
    if is_terminal(task.status):
        return task.status
    if task.status == TaskStatus.CLEANED:
        last = task.runtime.runs[-1] if task.runtime.runs else None
        if last is not None and last.status.value == "completed":
            return TaskStatus.COMPLETED
        return TaskStatus.FAILED
    return None
