"""Tests for the adapter registry, the local worktree adapter and the remote stub."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import _git, make_ctx
from taskport.adapters.base import TaskRunHandle, require_capability
from taskport.adapters.local import LocalExecutionAdapter, build_continue_plan, worktree_branch_for
from taskport.adapters.registry import (
    configured_adapter_id,
    create_task_adapter,
    list_task_adapters,
    resolve_task_adapter,
)
from taskport.adapters.stub_remote import StubRemoteExecutionAdapter
from taskport.artifacts import write_summary
from taskport.errors import AdapterUnsupportedError, ConfigError, TaskportError
from taskport.models import CheckpointRef, Task


class TestRegistry:
    def test_lists_builtin_adapters(self) -> None:
        ids = {d.id: d for d in list_task_adapters()}

        assert set(ids) == {"local", "stub-remote"}
        assert ids["local"].kind == "local"
        assert ids["local"].capabilities.attach_handoff is True
        assert ids["stub-remote"].kind == "remote"

    def test_unknown_adapter_id(self) -> None:
        with pytest.raises(ConfigError, match="Unknown task adapter"):
            create_task_adapter("ssh")

    def test_resolution_falls_back_to_local(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path, {"remote": {"adapter": "k8s"}})

        resolution = resolve_task_adapter(ctx)

        assert resolution.configured_id == "k8s"
        assert resolution.resolved_id == "local"
        assert resolution.fallback_used is True
        assert isinstance(resolution.adapter, LocalExecutionAdapter)

    def test_resolution_uses_remote_setting(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path, {"remote": {"adapter": "stub-remote"}})

        resolution = resolve_task_adapter(ctx)

        assert resolution.resolved_id == "stub-remote"
        assert resolution.fallback_used is False

    def test_worker_definition_adapter_wins(self, tmp_path: Path) -> None:
        ctx = make_ctx(
            tmp_path,
            {
                "task": {"workers": {"remote-sim": {"type": "mock", "adapter": "stub-remote"}}},
                "remote": {"adapter": "local"},
            },
        )

        assert configured_adapter_id(ctx, "remote-sim") == "stub-remote"
        assert configured_adapter_id(ctx, None) == "local"


class TestCapabilities:
    def test_require_capability(self) -> None:
        require_capability(LocalExecutionAdapter(), "checkpoint")
        with pytest.raises(AdapterUnsupportedError, match="attach handoff"):
            require_capability(StubRemoteExecutionAdapter(), "attach_handoff")

    def test_base_optional_methods_raise(self) -> None:
        adapter = StubRemoteExecutionAdapter()
        handle = TaskRunHandle(task_id="task-a", run_id="r", worker_pid=None)

        with pytest.raises(AdapterUnsupportedError):
            adapter.request_handoff(handle)
        with pytest.raises(AdapterUnsupportedError):
            adapter.resume_from_attach(handle)


class TestStubRemote:
    def test_every_execution_call_raises(self, memory_ctx) -> None:
        adapter = StubRemoteExecutionAdapter()
        task = Task(title="remote")
        prepared = adapter.prepare(memory_ctx, task)

        assert prepared.branch == f"stub-{task.id}"
        with pytest.raises(TaskportError, match="does not execute"):
            adapter.start(memory_ctx, task, prepared)
        with pytest.raises(AdapterUnsupportedError):
            adapter.checkpoint(memory_ctx, task, TaskRunHandle(task.id, "r", None))
        handle = TaskRunHandle(task.id, "r", None)
        assert adapter.status(handle) == "exited"
        adapter.cancel(handle)
        adapter.cleanup(memory_ctx, handle)


class TestLocalAdapter:
    def test_prepare_creates_worktree_from_head(self, repo_ctx) -> None:
        adapter = LocalExecutionAdapter()
        task = Task(title="local")

        prepared = adapter.prepare(repo_ctx, task)

        assert prepared.branch == worktree_branch_for(task)
        assert prepared.worktree_path == repo_ctx.paths.trees_dir / prepared.branch
        assert (prepared.worktree_path / "README.md").exists()
        assert prepared.base_ref == _git(repo_ctx.repo_root, "rev-parse", "HEAD")

    def test_prepare_starts_from_logical_branch_when_present(self, repo_ctx) -> None:
        repo = repo_ctx.repo_root
        _git(repo, "checkout", "-b", "feature")
        (repo / "feature.txt").write_text("f\n")
        _git(repo, "add", "feature.txt")
        _git(repo, "commit", "-m", "feature")
        feature_sha = _git(repo, "rev-parse", "HEAD")
        _git(repo, "checkout", "main")

        prepared = LocalExecutionAdapter().prepare(repo_ctx, Task(title="on feature", branch="feature"))

        assert prepared.base_ref == feature_sha
        assert (prepared.worktree_path / "feature.txt").exists()

    def test_prepare_reuses_existing_worktree(self, repo_ctx) -> None:
        adapter = LocalExecutionAdapter()
        task = Task(title="again")
        first = adapter.prepare(repo_ctx, task)
        task.runtime.base_ref = first.base_ref

        second = adapter.prepare(repo_ctx, task)

        assert second.worktree_path == first.worktree_path
        assert second.base_ref == first.base_ref

    def test_cleanup_removes_worktree_and_branch_idempotently(self, repo_ctx) -> None:
        adapter = LocalExecutionAdapter()
        task = Task(title="cleanup")
        prepared = adapter.prepare(repo_ctx, task)
        handle = TaskRunHandle(task.id, "r", None, prepared.worktree_path, prepared.branch)

        adapter.cleanup(repo_ctx, handle)
        adapter.cleanup(repo_ctx, handle)

        assert not prepared.worktree_path.exists()
        assert _git(repo_ctx.repo_root, "branch", "--list", prepared.branch) == ""

    def test_status_of_missing_process(self) -> None:
        adapter = LocalExecutionAdapter()
        assert adapter.status(TaskRunHandle("task-a", "r", None)) == "exited"

    def test_checkpoint_records_workspace(self, repo_ctx) -> None:
        adapter = LocalExecutionAdapter()
        task = Task(title="cp")
        prepared = adapter.prepare(repo_ctx, task)
        task.runtime.base_ref = prepared.base_ref
        handle = TaskRunHandle(task.id, "run-1", 123, prepared.worktree_path, prepared.branch, session="ses_1")

        ref = adapter.checkpoint(repo_ctx, task, handle)

        assert ref.adapter_id == "local"
        assert ref.run_id == "run-1"
        assert ref.payload["worktree_path"] == str(prepared.worktree_path)
        assert ref.payload["head"] == prepared.base_ref
        assert ref.payload["session"] == "ses_1"

    def test_attach_context_reports_fallback_summary(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path)
        adapter = LocalExecutionAdapter()
        task = Task(title="attach")
        task.runtime.session = "ses_1"
        task.runtime.checkpoint = CheckpointRef(
            adapter_id="local", task_id=task.id, run_id="run-1", payload={"session": "ses_1"}
        )
        write_summary(ctx, task.id, "Halfway there")
        handle = TaskRunHandle(task.id, "run-2", 123, tmp_path / "tree", "b", session="ses_1")

        context = adapter.attach_context(ctx, task, handle)

        assert context.restore_strategy == "fallback_summary"
        assert context.resume_token is None
        assert context.checkpoint_run_id == "run-1"
        assert context.summary is not None
        assert context.summary.startswith(f"Continue task {task.id} from run run-1.")
        assert "Halfway there" in context.summary
        assert adapter.capabilities.resume_token is False


class TestContinuePlan:
    def test_worker_continues_native_session_when_captured(self, memory_ctx) -> None:
        task = Task(title="t")
        checkpoint = CheckpointRef(adapter_id="local", task_id=task.id, run_id="r1", payload={"session": "ses_9"})

        plan = build_continue_plan(memory_ctx, task, checkpoint)

        assert plan.strategy == "native_session"
        assert plan.command == ["opencode", "--continue", "ses_9"]

    def test_fallback_summary_includes_previous_summary(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path)
        task = Task(title="t")
        write_summary(ctx, task.id, "Did half the work")
        checkpoint = CheckpointRef(adapter_id="local", task_id=task.id, run_id="r1", payload={})

        plan = build_continue_plan(ctx, task, checkpoint)

        assert plan.strategy == "fallback_summary"
        assert plan.summary is not None
        assert plan.summary.startswith(f"Continue task {task.id} from run r1.")
        assert "Did half the work" in plan.summary
