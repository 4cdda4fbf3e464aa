"""Bring a task's output into the operator's working tree.

Three methods are tried in order under ``auto``: cherry-pick of the recorded
commit refs, the same commits imported from the task's git bundle, and
finally a three-way apply of the captured patch. A conflict stops the chain
and is left in place for the operator to resolve or abort.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from loguru import logger

from .artifacts import artifact_paths, read_commit_refs
from .context import RepoContext
from .errors import ApplyConflictError, ApplyError, DirtyWorkingTreeError, TaskValidationError
from .git_utils import _git_commit_exists, _git_has_changes, _run_git
from .models import Task
from .task_ref import resolve_task_ref
from .task_store import TaskStore

ApplyMethod = Literal["auto", "cherry-pick", "bundle", "patch"]
APPLY_METHODS: tuple[str, ...] = ("auto", "cherry-pick", "bundle", "patch")


@dataclass
class ApplyResult:
    method: str
    commits: list[str] = field(default_factory=list)


def _cherry_pick(target: Path, task: Task, commits: list[str], *, method: str, squash: bool) -> None:
    for commit in commits:
        args = ["cherry-pick", "--no-commit", commit] if squash else ["cherry-pick", commit]
        result = _run_git(target, args, check=False)
        if result.returncode != 0:
            raise ApplyConflictError(method, (result.stderr or result.stdout).strip(), ref=commit)
    if squash:
        _run_git(target, ["commit", "-m", f"Apply task {task.id}"])


def _apply_cherry_pick(ctx: RepoContext, target: Path, task: Task, squash: bool) -> Optional[ApplyResult]:
    commits = read_commit_refs(ctx, task.id)
    if not commits or not all(_git_commit_exists(target, c) for c in commits):
        return None
    _cherry_pick(target, task, commits, method="cherry-pick", squash=squash)
    return ApplyResult(method="cherry-pick", commits=commits)


def _apply_bundle(ctx: RepoContext, target: Path, task: Task, squash: bool) -> Optional[ApplyResult]:
    bundle = artifact_paths(ctx, task.id).bundle
    commits = read_commit_refs(ctx, task.id)
    if not bundle.exists() or not commits:
        return None
    verify = _run_git(target, ["bundle", "verify", str(bundle)], check=False)
    if verify.returncode != 0:
        raise ApplyError(f"Bundle for {task.id} is not usable: {verify.stderr.strip()}")
    # Import the bundle's objects without touching any ref.
    _run_git(target, ["bundle", "unbundle", str(bundle)])
    _cherry_pick(target, task, commits, method="bundle", squash=squash)
    return ApplyResult(method="bundle", commits=commits)


def _apply_patch(ctx: RepoContext, target: Path, task: Task) -> Optional[ApplyResult]:
    patch = artifact_paths(ctx, task.id).patch
    if not patch.exists() or not patch.read_text(encoding="utf-8").strip():
        return None
    result = _run_git(target, ["apply", "--3way", str(patch)], check=False)
    if result.returncode != 0:
        raise ApplyConflictError("patch", (result.stderr or result.stdout).strip())
    return ApplyResult(method="patch")


def apply_task(
    ctx: RepoContext,
    ref: str,
    method: Optional[str] = None,
    squash: bool = False,
    allow_dirty: bool = False,
    target: Optional[Path] = None,
) -> ApplyResult:
    """Apply the output of task *ref* to *target* (the repository root by default).

    Raises:
        DirtyWorkingTreeError: If the target has local changes and clean
            applies are required.
        ApplyConflictError: If git reports a conflict; the conflict stays
            in the target for the operator.
        ApplyError: If the requested method has nothing to apply.
    """
    method = method or ctx.config.task.apply_method
    if method not in APPLY_METHODS:
        raise TaskValidationError(f"Unknown apply method: {method} (expected one of {', '.join(APPLY_METHODS)})")
    target = Path(target) if target else ctx.repo_root
    task = resolve_task_ref(TaskStore(ctx), ref)

    if ctx.config.task.require_clean_apply and not allow_dirty and _git_has_changes(target):
        raise DirtyWorkingTreeError(
            "Working tree is not clean. Commit or stash changes before applying task output."
        )

    if method == "cherry-pick":
        result = _apply_cherry_pick(ctx, target, task, squash)
        if result is None:
            raise ApplyError(f"No commit refs available for task {task.id}")
    elif method == "bundle":
        result = _apply_bundle(ctx, target, task, squash)
        if result is None:
            raise ApplyError(f"No bundle-backed commit refs available for task {task.id}")
    elif method == "patch":
        result = _apply_patch(ctx, target, task)
        if result is None:
            raise ApplyError(f"No patch available for task {task.id}")
    else:
        result = (
            _apply_cherry_pick(ctx, target, task, squash)
            or _apply_bundle(ctx, target, task, squash)
            or _apply_patch(ctx, target, task)
        )
        if result is None:
            raise ApplyError(f"Task {task.id} has no output to apply")

    logger.info("Applied task {} via {} ({} commit(s))", task.id, result.method, len(result.commits))
    return result
