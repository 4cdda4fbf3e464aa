"""Provide small git helpers used by the task engine."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .errors import GitError


def _run_git(
    cwd: Path,
    args: Sequence[str],
    *,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        raise GitError(args, result.returncode, result.stderr)
    return result


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _append_ignore_entry(path: Path, ignore_entry: str) -> None:
    contents = ""
    if path.exists():
        contents = path.read_text()
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += ignore_entry + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents)


def _git_common_dir(project_dir: Path) -> Optional[Path]:
    result = _run_git(project_dir, ["rev-parse", "--git-common-dir"], check=False)
    if result.returncode != 0:
        return None
    raw = Path(result.stdout.strip())
    return (raw if raw.is_absolute() else project_dir / raw).resolve()


def _git_repo_root(project_dir: Path) -> Optional[Path]:
    """Return the main worktree root, even when called from a linked worktree."""
    common = _git_common_dir(project_dir)
    if common is not None and common.name == ".git":
        return common.parent
    result = _run_git(project_dir, ["rev-parse", "--show-toplevel"], check=False)
    if result.returncode != 0:
        return None
    return Path(result.stdout.strip()).resolve()


def _ensure_git_exclude(repo_root: Path, entry: str) -> None:
    common = _git_common_dir(repo_root)
    if common is None:
        return
    exclude_path = common / "info" / "exclude"
    try:
        if not _ignore_file_has_entry(exclude_path, entry):
            _append_ignore_entry(exclude_path, entry)
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, ["rev-parse", "HEAD"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, ["rev-parse", "--abbrev-ref", "HEAD"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
    return result.returncode == 0


def _git_commit_exists(project_dir: Path, sha: str) -> bool:
    result = _run_git(project_dir, ["cat-file", "-e", f"{sha}^{{commit}}"], check=False)
    return result.returncode == 0


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, ["status", "--porcelain"], check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_rev_list(project_dir: Path, base: str, head: str = "HEAD") -> list[str]:
    """Commits reachable from *head* but not *base*, oldest first."""
    result = _run_git(project_dir, ["rev-list", "--reverse", f"{base}..{head}"], check=False)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_create_worktree(repo_root: Path, path: Path, branch: str, start_point: Optional[str] = None) -> None:
    """Add a worktree at *path*; without *start_point* the existing *branch* is checked out."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if start_point is None:
        _run_git(repo_root, ["worktree", "add", str(path), branch])
    else:
        _run_git(repo_root, ["worktree", "add", "-b", branch, str(path), start_point])


def _git_remove_worktree(repo_root: Path, path: Path) -> None:
    result = _run_git(repo_root, ["worktree", "remove", "--force", str(path)], check=False)
    if result.returncode != 0:
        stderr = result.stderr.lower()
        if path.exists() and "not a working tree" not in stderr and "is not a valid" not in stderr:
            raise GitError(["worktree", "remove", "--force", str(path)], result.returncode, result.stderr)
        logger.debug("Worktree {} already removed", path)
    _run_git(repo_root, ["worktree", "prune"], check=False)


def _git_delete_branch(repo_root: Path, branch: str) -> None:
    if not _git_branch_exists(repo_root, branch):
        logger.debug("Branch {} already deleted", branch)
        return
    _run_git(repo_root, ["branch", "-D", branch])
