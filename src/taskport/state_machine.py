"""Allowed task status transitions."""

from __future__ import annotations

from .errors import InvalidTransitionError
from .models import TERMINAL_STATUSES, RunStatus, TaskStatus

S = TaskStatus

_REVIVE = {S.REVIVING_FOR_ATTACH}
_ENDINGS = {S.COMPLETED, S.FAILED, S.TIMEOUT, S.CANCELLED}

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.QUEUED: frozenset({S.PREPARING, S.FAILED, S.CANCELLED}),
    S.PREPARING: frozenset({S.RUNNING, S.RESUMABLE} | _ENDINGS),
    S.RUNNING: frozenset(
        {S.WAITING_ON_CHILDREN, S.RESUMABLE, S.RESUMING, S.PAUSED_FOR_ATTACH} | _REVIVE | _ENDINGS
    ),
    S.WAITING_ON_CHILDREN: frozenset(_ENDINGS),
    S.RESUMABLE: frozenset({S.RESUMING, S.FAILED, S.CANCELLED} | _REVIVE),
    S.RESUMING: frozenset({S.RUNNING, S.RESUME_FAILED, S.RESUMABLE} | _ENDINGS),
    S.REVIVING_FOR_ATTACH: frozenset({S.RUNNING, S.PAUSED_FOR_ATTACH, S.RESUME_FAILED} | _ENDINGS),
    S.PAUSED_FOR_ATTACH: frozenset(
        {S.RUNNING, S.RESUMABLE, S.RESUMING, S.WAITING_ON_CHILDREN} | _REVIVE | _ENDINGS
    ),
    S.RESUME_FAILED: frozenset({S.RESUMING, S.FAILED, S.CANCELLED} | _REVIVE),
    S.COMPLETED: frozenset({S.CLEANED} | _REVIVE),
    S.FAILED: frozenset({S.CLEANED} | _REVIVE),
    S.TIMEOUT: frozenset({S.CLEANED} | _REVIVE),
    S.CANCELLED: frozenset({S.CLEANED} | _REVIVE),
    S.CLEANED: frozenset(_REVIVE),
}

_RUN_STATUS = {
    S.COMPLETED: RunStatus.COMPLETED,
    S.FAILED: RunStatus.FAILED,
    S.TIMEOUT: RunStatus.TIMEOUT,
    S.CANCELLED: RunStatus.CANCELLED,
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    if current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(task_id, current.value, target.value)


def run_status_for(status: TaskStatus) -> RunStatus:
    """Run attempt status recorded when a task reaches *status*."""
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"{status.value} is not a terminal status")
    return _RUN_STATUS[status]
