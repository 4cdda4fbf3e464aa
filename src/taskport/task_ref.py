"""Resolve operator-supplied task references."""

from __future__ import annotations

from typing import Iterable

from .constants import TASK_ID_PREFIX
from .errors import AmbiguousRefError, NotFoundError
from .models import Task
from .task_store import TaskStore


def match_task_ref(tasks: Iterable[Task], ref: str) -> Task:
    """Match *ref* against display ids, then full ids, then id prefixes.

    Raises:
        NotFoundError: Nothing matches.
        AmbiguousRefError: More than one id starts with the prefix.
    """
    needle = (ref or "").strip()
    if not needle:
        raise NotFoundError("Task reference must not be empty")
    tasks = list(tasks)

    if needle.isdigit():
        for task in tasks:
            if task.display_id == int(needle):
                return task

    for task in tasks:
        if task.id == needle:
            return task

    prefixes = {needle}
    if not needle.startswith(TASK_ID_PREFIX):
        prefixes.add(TASK_ID_PREFIX + needle)
    matches = [t for t in tasks if any(t.id.startswith(p) for p in prefixes)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise AmbiguousRefError(needle, sorted(t.id for t in matches))
    raise NotFoundError(f"Task not found: {needle}")


def resolve_task_ref(store: TaskStore, ref: str) -> Task:
    return match_task_ref(store.read_snapshot(), ref)
