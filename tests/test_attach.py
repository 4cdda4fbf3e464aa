"""Tests for attach handoff and attach-driven revival."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeAdapter, make_ctx
from taskport.adapters.stub_remote import StubRemoteExecutionAdapter
from taskport.attach import attach_task
from taskport.daemon import EnsureResult, TaskDaemon
from taskport.errors import AdapterUnsupportedError, TaskportError, TaskValidationError
from taskport.models import AttachState, TaskStatus
from taskport.task_store import TaskStore


@pytest.fixture
def daemon_starts(monkeypatch) -> list[str]:
    calls: list[str] = []

    def _ensure(ctx) -> EnsureResult:
        calls.append(str(ctx.repo_root))
        return EnsureResult(started=True, pid=1)

    monkeypatch.setattr("taskport.attach.ensure_task_daemon", _ensure)
    return calls


def _running_task(ctx, adapter: FakeAdapter) -> str:
    store = TaskStore(ctx)
    task = store.create("interactive")
    daemon = TaskDaemon(ctx, poll_interval=0, adapter_factory=adapter.factory)
    daemon.tick()
    store.update_status(task.id, TaskStatus.RUNNING)
    return task.id


def test_attach_disabled(tmp_path: Path, fake_adapter) -> None:
    ctx = make_ctx(tmp_path, {"task": {"attach": {"enabled": False}}})
    task = TaskStore(ctx).create("t")

    with pytest.raises(TaskValidationError, match="disabled"):
        attach_task(ctx, task.id, adapter_factory=fake_adapter.factory)


def test_attach_requires_started_task(memory_ctx, fake_adapter) -> None:
    task = TaskStore(memory_ctx).create("t")

    with pytest.raises(TaskValidationError, match="has not started"):
        attach_task(memory_ctx, task.id, adapter_factory=fake_adapter.factory)


def test_attach_requires_handoff_capability(memory_ctx) -> None:
    store = TaskStore(memory_ctx)
    task = store.create("t")
    store.update_status(task.id, TaskStatus.CANCELLED)

    with pytest.raises(AdapterUnsupportedError):
        attach_task(memory_ctx, task.id, adapter_factory=lambda ctx, t: StubRemoteExecutionAdapter())


def test_attach_to_live_worker_pauses_task(memory_ctx, fake_adapter, daemon_starts) -> None:
    task_id = _running_task(memory_ctx, fake_adapter)

    result = attach_task(memory_ctx, task_id, client="opencode", adapter_factory=fake_adapter.factory)

    assert result.revived is False
    assert result.task.status == TaskStatus.PAUSED_FOR_ATTACH
    assert result.task.attach.state == AttachState.HANDOFF_READY
    assert result.task.attach.client == "opencode"
    assert result.context.summary == "resume here"
    assert memory_ctx.backend.read_json(result.context_path)["restore_strategy"] == "fallback_summary"
    assert daemon_starts == []
    types = [e.type for e in TaskStore(memory_ctx).read_events(task_id)]
    assert "task.attach.requested" in types
    assert types[-1] == "task.attach.handoff_ready"


def test_attach_revives_finished_task(memory_ctx, fake_adapter, daemon_starts) -> None:
    task_id = _running_task(memory_ctx, fake_adapter)
    store = TaskStore(memory_ctx)
    store.update_status(task_id, TaskStatus.COMPLETED)
    fake_adapter.kill_all()

    result = attach_task(memory_ctx, task_id, adapter_factory=fake_adapter.factory)

    assert result.revived is True
    assert result.task.status == TaskStatus.PAUSED_FOR_ATTACH
    assert result.task.runtime.run_attempt == 2
    assert fake_adapter.started == [task_id, task_id]
    assert len(daemon_starts) == 1
    events = store.read_events(task_id)
    started = [e for e in events if e.type == "task.attach.revive_started"]
    assert started[0].message == "Reviving completed task for attach"
    assert _revival_events(store, task_id) == [
        "task.attach.revive_started",
        "task.attach.revive_succeeded",
        "task.attach.handoff_ready",
    ]


def test_failed_revival_is_resume_failed(memory_ctx, fake_adapter, daemon_starts) -> None:
    store = TaskStore(memory_ctx)
    task = store.create("t")
    store.update_status(task.id, TaskStatus.CANCELLED)
    fake_adapter.fail_start = True

    with pytest.raises(TaskportError, match="Attach revival failed"):
        attach_task(memory_ctx, task.id, adapter_factory=fake_adapter.factory)

    current = store.require(task.id)
    assert current.status == TaskStatus.RESUME_FAILED
    assert current.attach.state is None
    assert current.runtime.retained_for_debug is True
    assert "task.attach.revive_failed" in [e.type for e in store.read_events(task.id)]
    assert daemon_starts == []


def _revival_events(store: TaskStore, task_id: str) -> list[str]:
    wanted = ("task.attach.revive_started", "task.attach.revive_succeeded", "task.attach.handoff_ready")
    return [e.type for e in store.read_events(task_id) if e.type in wanted]


def test_attach_revives_killed_worker(memory_ctx, fake_adapter, daemon_starts) -> None:
    task_id = _running_task(memory_ctx, fake_adapter)
    store = TaskStore(memory_ctx)
    before = store.require(task_id).runtime.run_attempt
    fake_adapter.kill_all()

    result = attach_task(memory_ctx, task_id, adapter_factory=fake_adapter.factory)

    assert result.revived is True
    assert result.task.status == TaskStatus.PAUSED_FOR_ATTACH
    assert result.task.runtime.run_attempt > before
    assert result.task.runtime.active_run_id is not None
    assert _revival_events(store, task_id) == [
        "task.attach.revive_started",
        "task.attach.revive_succeeded",
        "task.attach.handoff_ready",
    ]


class _TickDuringStart(FakeAdapter):
    """Runs a daemon tick just before the revived worker is started."""

    def __init__(self, ctx) -> None:
        super().__init__()
        self.daemon = TaskDaemon(ctx, poll_interval=0, adapter_factory=self.factory)
        self.tick_on_start = False

    def start(self, ctx, task, prepared):
        if self.tick_on_start:
            self.tick_on_start = False
            self.daemon.tick()
        return super().start(ctx, task, prepared)


def test_daemon_tick_during_revival_leaves_task_alone(memory_ctx, daemon_starts) -> None:
    adapter = _TickDuringStart(memory_ctx)
    task_id = _running_task(memory_ctx, adapter)
    store = TaskStore(memory_ctx)
    adapter.kill_all()
    adapter.tick_on_start = True

    result = attach_task(memory_ctx, task_id, adapter_factory=adapter.factory)

    current = store.require(task_id)
    assert result.revived is True
    assert current.status == TaskStatus.PAUSED_FOR_ATTACH
    assert current.runtime.active_run_id is not None
    assert current.runtime.worker_pid in adapter.alive
    assert "task.worker.crashed" not in [e.type for e in store.read_events(task_id)]
    assert _revival_events(store, task_id)[-1] == "task.attach.handoff_ready"
