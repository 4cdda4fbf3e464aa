"""Tests for resolving operator task references."""
from __future__ import annotations

import pytest

from taskport.errors import AmbiguousRefError, NotFoundError
from taskport.models import Task
from taskport.task_ref import match_task_ref, resolve_task_ref
from taskport.task_store import TaskStore


def _tasks() -> list[Task]:
    return [
        Task(id="task-abc12345", display_id=1, title="one"),
        Task(id="task-abd99999", display_id=2, title="two"),
        Task(id="task-ffff0000", display_id=3, title="three"),
    ]


def test_numeric_display_id() -> None:
    assert match_task_ref(_tasks(), "2").id == "task-abd99999"


def test_exact_id() -> None:
    assert match_task_ref(_tasks(), "task-ffff0000").display_id == 3


def test_unique_prefix_with_and_without_task_prefix() -> None:
    assert match_task_ref(_tasks(), "task-abc").id == "task-abc12345"
    assert match_task_ref(_tasks(), "ffff").id == "task-ffff0000"


def test_ambiguous_prefix_lists_candidates() -> None:
    with pytest.raises(AmbiguousRefError) as excinfo:
        match_task_ref(_tasks(), "ab")

    err = excinfo.value
    assert err.candidates == ["task-abc12345", "task-abd99999"]
    assert "use a longer prefix or numeric id" in str(err)


def test_exact_id_wins_over_prefix() -> None:
    tasks = [Task(id="task-ab", display_id=1), Task(id="task-abc", display_id=2)]
    assert match_task_ref(tasks, "task-ab").display_id == 1


def test_unknown_reference() -> None:
    with pytest.raises(NotFoundError):
        match_task_ref(_tasks(), "zzz")
    with pytest.raises(NotFoundError):
        match_task_ref(_tasks(), "42")
    with pytest.raises(NotFoundError):
        match_task_ref(_tasks(), "  ")


def test_resolve_against_store(memory_ctx) -> None:
    store = TaskStore(memory_ctx)
    task = store.create("stored")
    assert resolve_task_ref(store, "1").id == task.id
    assert resolve_task_ref(store, task.id[len("task-"):]).id == task.id
