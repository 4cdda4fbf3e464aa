"""Tests for the task status transition table."""
from __future__ import annotations

import pytest

from taskport.errors import InvalidTransitionError
from taskport.models import TERMINAL_STATUSES, RunStatus, TaskStatus
from taskport.state_machine import TRANSITIONS, can_transition, ensure_transition, run_status_for

S = TaskStatus


def test_every_status_has_a_row() -> None:
    assert set(TRANSITIONS) == set(TaskStatus)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.QUEUED, S.PREPARING),
        (S.PREPARING, S.RUNNING),
        (S.RUNNING, S.COMPLETED),
        (S.RUNNING, S.WAITING_ON_CHILDREN),
        (S.RUNNING, S.RESUMABLE),
        (S.RESUMABLE, S.RESUMING),
        (S.RESUMING, S.RUNNING),
        (S.RESUMING, S.RESUME_FAILED),
        (S.COMPLETED, S.REVIVING_FOR_ATTACH),
        (S.CLEANED, S.REVIVING_FOR_ATTACH),
        (S.REVIVING_FOR_ATTACH, S.PAUSED_FOR_ATTACH),
        (S.PAUSED_FOR_ATTACH, S.RUNNING),
        (S.FAILED, S.CLEANED),
    ],
)
def test_allowed(current: TaskStatus, target: TaskStatus) -> None:
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.QUEUED, S.RUNNING),
        (S.QUEUED, S.COMPLETED),
        (S.COMPLETED, S.RUNNING),
        (S.CLEANED, S.QUEUED),
        (S.RESUMABLE, S.RUNNING),
        (S.WAITING_ON_CHILDREN, S.RUNNING),
    ],
)
def test_rejected(current: TaskStatus, target: TaskStatus) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError, match=f"from {current.value} to {target.value}"):
        ensure_transition("task-x", current, target)


def test_self_transition_allowed() -> None:
    for status in TaskStatus:
        assert can_transition(status, status)


def test_terminal_statuses_only_leave_via_cleanup_or_attach() -> None:
    for status in TERMINAL_STATUSES:
        assert TRANSITIONS[status] == frozenset({S.CLEANED, S.REVIVING_FOR_ATTACH})


def test_run_status_for_terminal() -> None:
    assert run_status_for(S.COMPLETED) == RunStatus.COMPLETED
    assert run_status_for(S.TIMEOUT) == RunStatus.TIMEOUT
    with pytest.raises(ValueError):
        run_status_for(S.RUNNING)
