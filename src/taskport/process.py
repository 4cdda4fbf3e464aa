"""Detached subprocess helpers shared by the daemon and the local adapter."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger


def is_process_alive(pid: Optional[int]) -> bool:
    """OS-level liveness probe; reaps *pid* first when it is our own zombie child."""
    if not pid or pid <= 0:
        return False
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    except OSError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def signal_process(pid: Optional[int], sig: int = signal.SIGTERM) -> bool:
    """Signal a detached process group (falling back to the pid). Returns False if gone."""
    if not pid or pid <= 0:
        return False
    try:
        os.killpg(pid, sig)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        pass
    try:
        os.kill(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False


def taskport_command(*args: str) -> list[str]:
    return [sys.executable, "-m", "taskport", *args]


def spawn_detached(
    args: Sequence[str],
    *,
    cwd: Path,
    stderr_path: Optional[Path] = None,
    env: Optional[dict[str, str]] = None,
) -> int:
    """Start *args* in a new session without waiting; return its pid."""
    stderr_handle = None
    if stderr_path is not None:
        stderr_path.parent.mkdir(parents=True, exist_ok=True)
        stderr_handle = open(stderr_path, "a", encoding="utf-8")
    try:
        proc = subprocess.Popen(
            list(args),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=stderr_handle or subprocess.DEVNULL,
            start_new_session=True,
            env={**os.environ, **(env or {})},
        )
    finally:
        if stderr_handle is not None:
            stderr_handle.close()
    logger.debug("Spawned pid {}: {}", proc.pid, " ".join(args))
    return proc.pid
