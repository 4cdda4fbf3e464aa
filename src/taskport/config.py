"""Load and validate repository configuration from `.taskport/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .constants import (
    CONFIG_FILE,
    DEFAULT_ATTACH_IDLE_TIMEOUT_MINUTES,
    DEFAULT_ATTACH_RECONNECT_GRACE_SECONDS,
    DEFAULT_DAEMON_IDLE_STOP_MINUTES,
    DEFAULT_RETENTION_COMPLETED_DAYS,
    DEFAULT_RETENTION_FAILED_DAYS,
    DEFAULT_TIMEOUT_MINUTES,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_yaml_with_error


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RetentionConfig(_Strict):
    completed: float = Field(default=DEFAULT_RETENTION_COMPLETED_DAYS, gt=0)
    failed: float = Field(default=DEFAULT_RETENTION_FAILED_DAYS, gt=0)


class AttachConfig(_Strict):
    enabled: bool = True
    client: Optional[str] = Field(default=None, min_length=1)
    idle_timeout_minutes: float = Field(default=DEFAULT_ATTACH_IDLE_TIMEOUT_MINUTES, gt=0)
    reconnect_grace_seconds: float = Field(default=DEFAULT_ATTACH_RECONNECT_GRACE_SECONDS, gt=0)


class SubscriptionsConfig(_Strict):
    enabled: bool = False
    consumers: list[str] = Field(default_factory=lambda: ["opencode"])


class WorkerDefinition(_Strict):
    type: Literal["mock", "opencode"]
    adapter: Literal["local", "stub-remote"] = "local"
    config: dict[str, Any] = Field(default_factory=dict)


class TaskConfig(_Strict):
    timeout_minutes: float = Field(default=DEFAULT_TIMEOUT_MINUTES, gt=0)
    daemon_idle_stop_minutes: float = Field(default=DEFAULT_DAEMON_IDLE_STOP_MINUTES, gt=0)
    require_clean_apply: bool = True
    retention_days: RetentionConfig = Field(default_factory=RetentionConfig)
    lock_mode: Literal["branch", "repo"] = "branch"
    apply_method: Literal["auto", "cherry-pick", "bundle", "patch"] = "auto"
    attach: AttachConfig = Field(default_factory=AttachConfig)
    subscriptions: SubscriptionsConfig = Field(default_factory=SubscriptionsConfig)
    default_worker: Optional[str] = Field(default=None, min_length=1)
    workers: dict[str, WorkerDefinition] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_worker_is_defined(self) -> "TaskConfig":
        if self.default_worker and self.workers and self.default_worker not in self.workers:
            raise ValueError(
                f'default_worker "{self.default_worker}" does not match any key in workers'
            )
        return self


class RemoteConfig(_Strict):
    adapter: str = Field(default="local", min_length=1)


class TaskportConfig(_Strict):
    task: TaskConfig = Field(default_factory=TaskConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", ()) if item != "__root__")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(exc)


def parse_config(data: dict[str, Any]) -> TaskportConfig:
    """Validate a raw mapping, raising :class:`ConfigError` on bad input."""
    try:
        return TaskportConfig.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(exc)}") from exc


def config_path(repo_root: Path) -> Path:
    return repo_root / STATE_DIR_NAME / CONFIG_FILE


def load_config(repo_root: Path) -> TaskportConfig:
    """Load the optional config file.

    Args:
        repo_root: Repository root directory.

    Returns:
        The validated configuration; defaults when the file is missing.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation.
    """
    path = config_path(repo_root)
    data, err = _load_yaml_with_error(path)
    if err:
        raise ConfigError(f"Unable to read {path}: {err}")
    return parse_config(data)
