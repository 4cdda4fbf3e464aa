"""Shared fixtures: throwaway git repositories and repository contexts."""
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from taskport.adapters.base import (  # noqa: E402
    AttachContext,
    AttachHandoff,
    ExecutionAdapter,
    PreparedExecution,
    TaskRunHandle,
)
from taskport.config import parse_config  # noqa: E402
from taskport.context import RepoContext  # noqa: E402
from taskport.models import Capabilities, CheckpointRef, Task  # noqa: E402
from taskport.storage import MemoryStateBackend  # noqa: E402


def _git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    subprocess.run(["git", "init", "-b", "main"], cwd=path, check=True, capture_output=True, text=True)
    _git(path, "config", "user.email", "test@test.com")
    _git(path, "config", "user.name", "Test")
    _git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# init\n")
    _git(path, "add", "-A")
    _git(path, "commit", "-m", "initial")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git_init(repo)
    return repo


@pytest.fixture
def repo_ctx(git_repo: Path) -> RepoContext:
    return RepoContext.open(git_repo)


@pytest.fixture
def memory_ctx(tmp_path: Path) -> RepoContext:
    return RepoContext(repo_root=tmp_path, backend=MemoryStateBackend())


def make_ctx(root: Path, config: dict | None = None, *, memory: bool = True) -> RepoContext:
    """Context with an explicit config mapping."""
    if memory:
        return RepoContext(repo_root=root, backend=MemoryStateBackend(), config=parse_config(config or {}))
    ctx = RepoContext.open(root)
    ctx.config = parse_config(config or {})
    return ctx


class FakeAdapter(ExecutionAdapter):
    """In-process adapter whose "workers" are pids in a set."""

    id = "local"
    kind = "local"
    description = "Fake adapter for tests"
    capabilities = Capabilities(checkpoint=True, restore=True, attach_handoff=True)

    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.started: list[str] = []
        self.restored: list[str] = []
        self.cancelled: list[str] = []
        self.cleaned: list[str] = []
        self.resumed: list[str] = []
        self.fail_start = False
        self.fail_cleanup = False
        self._next_pid = 5_000_000

    def prepare(self, ctx: RepoContext, task: Task) -> PreparedExecution:
        return PreparedExecution(
            task_id=task.id,
            run_id=task.runtime.active_run_id or "",
            worktree_path=None,
            branch=f"fake-{task.id}",
            base_ref="base",
        )

    def start(self, ctx: RepoContext, task: Task, prepared: PreparedExecution) -> TaskRunHandle:
        if self.fail_start:
            raise RuntimeError("spawn failed")
        self._next_pid += 1
        self.alive.add(self._next_pid)
        self.started.append(task.id)
        return TaskRunHandle(task.id, prepared.run_id, self._next_pid, None, prepared.branch)

    def status(self, handle: TaskRunHandle) -> str:
        return "running" if handle.worker_pid in self.alive else "exited"

    def cancel(self, handle: TaskRunHandle, force: bool = False) -> None:
        self.cancelled.append(handle.task_id)
        self.alive.discard(handle.worker_pid)

    def cleanup(self, ctx: RepoContext, handle: TaskRunHandle) -> None:
        if self.fail_cleanup:
            raise RuntimeError("worktree busy")
        self.cleaned.append(handle.task_id)

    def checkpoint(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> CheckpointRef:
        return CheckpointRef(adapter_id=self.id, task_id=task.id, run_id=handle.run_id, payload={"session": None})

    def restore(self, ctx: RepoContext, task: Task, checkpoint: CheckpointRef) -> TaskRunHandle:
        self.restored.append(task.id)
        return self.start(ctx, task, self.prepare(ctx, task))

    def request_handoff(self, handle: TaskRunHandle) -> AttachHandoff:
        return AttachHandoff(boundary="immediate", session_handle=handle.run_id)

    def attach_context(self, ctx: RepoContext, task: Task, handle: TaskRunHandle) -> AttachContext:
        return AttachContext(session_handle=handle.run_id, restore_strategy="fallback_summary", summary="resume here")

    def resume_from_attach(self, handle: TaskRunHandle) -> None:
        self.resumed.append(handle.task_id)

    def kill_all(self) -> None:
        self.alive.clear()

    def factory(self, ctx: RepoContext, task: Task) -> "FakeAdapter":
        return self


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()
