"""Tests for the lock-guarded task store."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import make_ctx
from taskport.errors import InvalidTransitionError, NotFoundError, TaskValidationError
from taskport.models import RunStatus, TaskMode, TaskStatus
from taskport.task_store import TaskStore, _normalize_index


class TestCreate:
    def test_assigns_sequential_display_ids(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        first = store.create("first")
        second = store.create("second")

        assert first.display_id == 1
        assert second.display_id == 2
        assert first.id.startswith("task-")
        assert first.status == TaskStatus.QUEUED
        assert first.mode == TaskMode.WRITE

    def test_records_created_event(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("hello", mode="read")

        events = store.read_events(task.id)
        assert [e.type for e in events] == ["task.created"]
        assert "read task: hello" in (events[0].message or "")

    def test_rejects_empty_title(self, memory_ctx) -> None:
        with pytest.raises(TaskValidationError):
            TaskStore(memory_ctx).create("   ")

    def test_rejects_unknown_mode(self, memory_ctx) -> None:
        with pytest.raises(TaskValidationError, match="Invalid task mode"):
            TaskStore(memory_ctx).create("x", mode="exclusive")

    def test_rejects_unknown_worker_when_workers_configured(self, tmp_path: Path) -> None:
        ctx = make_ctx(tmp_path, {"task": {"workers": {"sim": {"type": "mock"}}}})
        store = TaskStore(ctx)

        with pytest.raises(TaskValidationError, match="Unknown worker"):
            store.create("x", worker="codex")
        assert store.create("x", worker="sim").worker == "sim"

    def test_builtin_worker_names_allowed_without_config(self, memory_ctx) -> None:
        task = TaskStore(memory_ctx).create("x", worker="opencode")
        assert task.worker == "opencode"

    def test_links_parent_and_child(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        parent = store.create("parent")
        child = store.create("child", parent_id=parent.id)

        assert child.parent_id == parent.id
        assert store.require(parent.id).children_ids == [child.id]

    def test_missing_parent_is_not_found(self, memory_ctx) -> None:
        with pytest.raises(NotFoundError):
            TaskStore(memory_ctx).create("child", parent_id="task-nope")


class TestQueries:
    def test_list_is_newest_first(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        ids = [store.create(f"t{i}").id for i in range(3)]

        assert [t.id for t in store.list()] == list(reversed(ids))

    def test_count_active_excludes_parked_on_request(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("t")
        store.update_status(task.id, TaskStatus.PREPARING)
        store.update_status(task.id, TaskStatus.RUNNING)
        store.update_status(task.id, TaskStatus.RESUMABLE)

        assert store.count_active() == 1
        assert store.count_active(include_parked=False) == 0

    def test_list_runnable_skips_blocked(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        first = store.create("a", branch="main")
        store.create("b", branch="main")
        other = store.create("c", branch="feature")

        runnable = [t.id for t in store.list_runnable()]
        assert runnable == [first.id, other.id]


class TestTransitions:
    def test_invalid_transition_raises(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("t")

        with pytest.raises(InvalidTransitionError):
            store.update_status(task.id, TaskStatus.COMPLETED)
        assert store.require(task.id).status == TaskStatus.QUEUED

    def test_terminal_status_finishes_active_run(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("t")
        store.patch(task.id, lambda t: t.begin_run())
        store.update_status(task.id, TaskStatus.PREPARING)
        store.update_status(task.id, TaskStatus.FAILED, "boom")

        final = store.require(task.id)
        assert final.runtime.active_run_id is None
        assert final.runtime.runs[0].status == RunStatus.FAILED
        assert final.runtime.runs[0].reason == "boom"
        assert final.runtime.last_error == "boom"
        assert final.runtime.finished_at is not None

    def test_status_change_emits_event(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("t")
        store.update_status(task.id, TaskStatus.CANCELLED, "Cancelled by user command")

        types = [e.type for e in store.read_events(task.id)]
        assert types == ["task.created", "task.cancelled"]

    def test_begin_run_supersedes_previous(self, memory_ctx) -> None:
        store = TaskStore(memory_ctx)
        task = store.create("t")
        store.patch(task.id, lambda t: t.begin_run())
        store.patch(task.id, lambda t: t.begin_run(RunStatus.RESTORED))

        runs = store.require(task.id).runtime.runs
        assert [r.attempt for r in runs] == [1, 2]
        assert runs[0].status == RunStatus.FAILED
        assert runs[0].reason == "Superseded by a new run attempt"
        assert runs[1].status == RunStatus.RESTORED


class TestNormalization:
    def test_repairs_duplicate_and_missing_display_ids(self) -> None:
        raw = {
            "version": 1,
            "next_display_id": 1,
            "tasks": [
                {"id": "task-a", "display_id": 1, "title": "a"},
                {"id": "task-b", "display_id": 1, "title": "b"},
                {"id": "task-c", "title": "c"},
                {"id": "task-a", "display_id": 5, "title": "dup"},
            ],
        }
        tasks, next_display_id, repaired = _normalize_index(raw)

        assert repaired is True
        assert [t.id for t in tasks] == ["task-a", "task-b", "task-c"]
        display_ids = [t.display_id for t in tasks]
        assert len(set(display_ids)) == 3
        assert next_display_id > max(display_ids)

    def test_empty_index(self) -> None:
        tasks, next_display_id, _ = _normalize_index(None)
        assert tasks == []
        assert next_display_id == 1


class TestFileBackend:
    def test_concurrent_creates_keep_unique_display_ids(self, repo_ctx) -> None:
        store = TaskStore(repo_ctx)
        errors: list[Exception] = []

        def _worker() -> None:
            try:
                for _ in range(5):
                    TaskStore(repo_ctx).create("parallel")
            except Exception as exc:  # pragma: no cover - surfaced by assert below
                errors.append(exc)

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        display_ids = [t.display_id for t in store.list()]
        assert sorted(display_ids) == list(range(1, 21))

    def test_index_written_under_state_dir(self, repo_ctx) -> None:
        TaskStore(repo_ctx).create("persisted")

        assert repo_ctx.paths.index_path.exists()
        assert repo_ctx.paths.global_events.exists()
