"""Exception taxonomy shared by the task engine and the CLI."""

from __future__ import annotations

from typing import Optional, Sequence

from .constants import AMBIGUOUS_REF_HINT


class TaskportError(Exception):
    """Base class for every error surfaced to the operator."""

    exit_code = 1


class NotFoundError(TaskportError):
    pass


class AmbiguousRefError(TaskportError):
    """Raised when a task reference matches more than one task."""

    def __init__(self, ref: str, candidates: Sequence[str]):
        self.ref = ref
        self.candidates = list(candidates)
        self.hint = AMBIGUOUS_REF_HINT
        super().__init__(
            f"Task reference '{ref}' is ambiguous ({', '.join(self.candidates)}); {self.hint}"
        )


class TaskValidationError(TaskportError):
    pass


class ConfigError(TaskportError):
    pass


class InvalidTransitionError(TaskportError):
    def __init__(self, task_id: str, current: str, target: str):
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Task {task_id} cannot move from {current} to {target}")


class AdapterUnsupportedError(TaskportError):
    """An optional adapter operation was invoked on an adapter that lacks it."""

    def __init__(self, adapter_id: str, operation: str):
        self.adapter_id = adapter_id
        self.operation = operation
        super().__init__(f"Adapter '{adapter_id}' does not support {operation}")


class DirtyWorkingTreeError(TaskportError):
    pass


class ApplyError(TaskportError):
    pass


class ApplyConflictError(ApplyError):
    def __init__(self, method: str, detail: str, ref: Optional[str] = None):
        self.method = method
        self.detail = detail
        self.ref = ref
        where = f" while applying {ref}" if ref else ""
        super().__init__(f"Apply conflict during {method}{where}: {detail}")


class WorkerFailure(TaskportError):
    """A worker failed; the message is preserved verbatim on the task."""


class DaemonUnavailableError(TaskportError):
    pass


class GitError(TaskportError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"git {' '.join(self.git_args)} failed: {detail}")
