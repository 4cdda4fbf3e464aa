"""Repository-scoped context passed to every engine operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import TaskportConfig, load_config
from .constants import (
    ARTIFACTS_DIR,
    DAEMON_LOG_FILE,
    DAEMON_START_LOCK_FILE,
    DAEMON_STATE_FILE,
    EVENTS_DIR,
    GLOBAL_EVENTS_FILE,
    INDEX_FILE,
    INDEX_LOCK_FILE,
    JOBS_DIR,
    RUNTIME_DIR,
    STATE_DIR_NAME,
    SUBSCRIBERS_DIR,
    TREES_DIR,
)
from .errors import NotFoundError
from .git_utils import _ensure_git_exclude, _git_repo_root
from .storage import FileStateBackend, StateBackend


@dataclass(frozen=True)
class StatePaths:
    """Resolved on-disk layout below ``<repo>/.taskport``."""

    state_dir: Path

    @property
    def jobs_dir(self) -> Path:
        return self.state_dir / JOBS_DIR

    @property
    def trees_dir(self) -> Path:
        return self.state_dir / TREES_DIR

    @property
    def index_path(self) -> Path:
        return self.jobs_dir / INDEX_FILE

    @property
    def index_lock(self) -> Path:
        return self.jobs_dir / INDEX_LOCK_FILE

    @property
    def events_dir(self) -> Path:
        return self.jobs_dir / EVENTS_DIR

    @property
    def global_events(self) -> Path:
        return self.events_dir / GLOBAL_EVENTS_FILE

    def task_events(self, task_id: str) -> Path:
        return self.events_dir / f"{task_id}.jsonl"

    @property
    def subscribers_dir(self) -> Path:
        return self.jobs_dir / SUBSCRIBERS_DIR

    @property
    def artifacts_dir(self) -> Path:
        return self.jobs_dir / ARTIFACTS_DIR

    def task_artifacts(self, task_id: str) -> Path:
        return self.artifacts_dir / task_id

    @property
    def runtime_dir(self) -> Path:
        return self.jobs_dir / RUNTIME_DIR

    @property
    def daemon_state(self) -> Path:
        return self.runtime_dir / DAEMON_STATE_FILE

    @property
    def daemon_start_lock(self) -> Path:
        return self.runtime_dir / DAEMON_START_LOCK_FILE

    @property
    def daemon_log(self) -> Path:
        return self.runtime_dir / DAEMON_LOG_FILE


@dataclass
class RepoContext:
    repo_root: Path
    backend: StateBackend = field(default_factory=FileStateBackend)
    config: TaskportConfig = field(default_factory=TaskportConfig)

    @property
    def paths(self) -> StatePaths:
        return StatePaths(self.repo_root / STATE_DIR_NAME)

    @classmethod
    def open(cls, start: Optional[Path] = None, *, backend: Optional[StateBackend] = None) -> "RepoContext":
        """Resolve the repository containing *start* and load its config.

        Raises:
            NotFoundError: If *start* is not inside a git repository.
            ConfigError: If the config file is invalid.
        """
        start = (start or Path.cwd()).expanduser().resolve()
        root = _git_repo_root(start)
        if root is None:
            raise NotFoundError(f"Not a git repository: {start}")
        _ensure_git_exclude(root, f"{STATE_DIR_NAME}/")
        return cls(repo_root=root, backend=backend or FileStateBackend(), config=load_config(root))
