"""Derive branch lock holders from the task index.

Locks are never stored separately: every write task that names a branch gets
a lock key, and within one key each active task is blocked by the active task
queued immediately before it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Literal, Optional

from .constants import REPO_LOCK_KEY
from .models import Task, is_finished

LockMode = Literal["branch", "repo"]


def lock_key_for(task: Task, lock_mode: LockMode = "branch") -> Optional[str]:
    if not task.is_write:
        return None
    if lock_mode == "repo":
        return REPO_LOCK_KEY
    return task.branch or None


def reconcile_branch_queue(tasks: Iterable[Task], lock_mode: LockMode = "branch") -> bool:
    """Recompute ``queue`` metadata in place; return True when anything changed."""
    changed = False
    groups: dict[str, list[Task]] = defaultdict(list)
    for task in tasks:
        key = lock_key_for(task, lock_mode)
        if task.queue.lock_key != key:
            task.queue.lock_key = key
            changed = True
        if key is None:
            if task.queue.blocked_by_task_id is not None:
                task.queue.blocked_by_task_id = None
                changed = True
            continue
        groups[key].append(task)

    for group in groups.values():
        group.sort(key=lambda t: (t.created_at, t.display_id))
        previous_active: Optional[Task] = None
        for task in group:
            if is_finished(task.status):
                blocked_by = None
            else:
                blocked_by = previous_active.id if previous_active else None
                previous_active = task
            if task.queue.blocked_by_task_id != blocked_by:
                task.queue.blocked_by_task_id = blocked_by
                changed = True
    return changed


def lock_holders(tasks: Iterable[Task], lock_mode: LockMode = "branch") -> dict[str, str]:
    """Map each lock key to the id of the active task holding it."""
    holders: dict[str, str] = {}
    for task in sorted(tasks, key=lambda t: (t.created_at, t.display_id)):
        key = lock_key_for(task, lock_mode)
        if key is None or is_finished(task.status) or key in holders:
            continue
        holders[key] = task.id
    return holders
