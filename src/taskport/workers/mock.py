"""Deterministic simulation worker driven by title directives.

Recognised directives:

- ``[sleep=N]``: sleep N milliseconds (default 750)
- ``[fail]``: raise after sleeping
- ``[edit]``: write files into the worktree without committing (write mode)
- ``[commit]``: like ``[edit]`` and commit the result (write mode)

``sleep_ms`` and ``should_fail`` in the worker config override the title.
"""

from __future__ import annotations

import re
import time
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_MOCK_SLEEP_MS
from ..errors import WorkerFailure
from ..git_utils import _git_rev_list, _run_git
from .base import TaskWorkerContext, TaskWorkerResult

_SLEEP_RE = re.compile(r"\[sleep=(\d+)\]")


def parse_sleep_hint(title: str) -> int:
    match = _SLEEP_RE.search(title or "")
    if not match:
        return DEFAULT_MOCK_SLEEP_MS
    return int(match.group(1))


def has_directive(title: str, name: str) -> bool:
    return f"[{name}]" in (title or "")


class MockTaskWorker:
    type = "mock"

    def __init__(self, name: str = "mock", config: Optional[dict[str, Any]] = None) -> None:
        self.name = name
        self.config = dict(config or {})

    def _sleep_ms(self, title: str) -> int:
        raw = self.config.get("sleep_ms")
        if raw is None:
            return parse_sleep_hint(title)
        return max(0, int(raw))

    def _should_fail(self, title: str) -> bool:
        raw = self.config.get("should_fail")
        if raw is None:
            return has_directive(title, "fail")
        return bool(raw)

    def execute(self, context: TaskWorkerContext) -> TaskWorkerResult:
        task = context.task
        title = task.title
        _run_git(context.worktree_path, ["status", "--short"])
        if context.continuation is not None:
            context.append_stdout(f"mock:continue from run {context.continuation.checkpoint_run_id}")

        sleep_ms = self._sleep_ms(title)
        context.append_stdout(f"mock:start task={task.id} sleep={sleep_ms}ms")
        time.sleep(sleep_ms / 1000.0)

        if self._should_fail(title):
            raise WorkerFailure("Task requested failure via [fail] marker")

        summary = f"Mock worker finished {task.id}"
        if task.is_write and (has_directive(title, "edit") or has_directive(title, "commit")):
            path = context.worktree_path / f"taskport-mock-{task.id}.txt"
            path.write_text(f"{title}\n", encoding="utf-8")
            context.append_stdout(f"mock:edit {path.name}")
            if has_directive(title, "commit"):
                _run_git(context.worktree_path, ["add", "--", path.name])
                _run_git(context.worktree_path, ["commit", "-m", f"Mock change for {task.id}"])
                context.append_stdout("mock:commit")
            summary += f" and wrote {path.name}"

        commits: list[str] = []
        if task.runtime.base_ref:
            commits = _git_rev_list(context.worktree_path, task.runtime.base_ref)
        logger.debug("Mock worker finished {} with {} commit(s)", task.id, len(commits))
        context.append_stdout(f"mock:done commits={len(commits)}")
        return TaskWorkerResult(commit_refs=commits, summary=summary)
