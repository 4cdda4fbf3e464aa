"""Session-driving worker that runs ``opencode run --format json``.

The process writes NDJSON events to stdout. Each line is cleaned of terminal
control sequences and decoded; text and tool-use events go to the stdout log,
error events to the stderr log, and the first ``sessionID`` seen is reported
so later runs can continue the same session.
"""

from __future__ import annotations

import json
import re
import subprocess
import threading
from typing import Any, Callable, Optional

from loguru import logger

from ..errors import WorkerFailure
from ..git_utils import _git_rev_list
from .base import TaskWorkerContext, TaskWorkerResult

# OSC sequences (including iTerm2 ``]1337;`` payloads) and CSI sequences.
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?")
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")


def strip_control_sequences(line: str) -> str:
    line = _OSC_RE.sub("", line)
    line = _CSI_RE.sub("", line)
    return line.replace("\r", "")


def _stream_pipe(pipe: Any, sink: Callable[[str], None]) -> None:
    for line in iter(pipe.readline, ""):
        cleaned = strip_control_sequences(line).rstrip("\n")
        if cleaned.strip():
            sink(cleaned)
    try:
        pipe.close()
    except OSError:
        pass


class OpenCodeTaskWorker:
    type = "opencode"

    def __init__(self, name: str = "opencode", config: Optional[dict[str, Any]] = None) -> None:
        self.name = name
        self.config = dict(config or {})

    def build_command(self, title: str, session: Optional[str] = None) -> list[str]:
        binary = str(self.config.get("binary") or "opencode")
        args = [binary, "run", "--format", "json"]
        if self.config.get("model"):
            args += ["--model", str(self.config["model"])]
        args += [str(flag) for flag in self.config.get("flags") or []]
        if session:
            args += ["--session", session]
        args += ["--", title]
        return args

    def handle_line(self, line: str, context: TaskWorkerContext, state: dict[str, Optional[str]]) -> None:
        trimmed = strip_control_sequences(line).strip()
        if not trimmed or trimmed.startswith("]1337;"):
            return
        try:
            event = json.loads(trimmed)
        except json.JSONDecodeError:
            context.append_stdout(trimmed)
            return
        if not isinstance(event, dict):
            context.append_stdout(trimmed)
            return

        session = event.get("sessionID")
        if session and not state.get("session"):
            state["session"] = str(session)
            context.report_session(str(session))

        part = event.get("part") if isinstance(event.get("part"), dict) else {}
        kind = event.get("type")
        if kind == "text" and part.get("text"):
            context.append_stdout(str(part["text"]))
        elif kind == "tool_use":
            context.append_stdout(f"opencode:tool {part.get('name') or part.get('tool') or 'unknown'}")
        elif kind == "error":
            message = part.get("error") or event.get("message") or "unknown error"
            state["error"] = str(message)
            context.append_stderr(f"opencode:error {message}")

    def execute(self, context: TaskWorkerContext) -> TaskWorkerResult:
        task = context.task
        continuation = context.continuation
        session = continuation.session if continuation and continuation.strategy == "native_session" else None
        title = task.title
        if continuation is not None and session is None and continuation.summary:
            title = f"{continuation.summary}\n\n{task.title}"

        command = self.build_command(title, session)
        context.append_stdout(f"opencode:start binary={command[0]} model={self.config.get('model') or 'default'}")
        try:
            process = subprocess.Popen(
                command,
                cwd=context.worktree_path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise WorkerFailure(f"Unable to start {command[0]}: {exc}") from exc

        if process.stdout is None or process.stderr is None:
            process.kill()
            process.wait()
            raise WorkerFailure(f"{command[0]} started without output pipes")

        state: dict[str, Optional[str]] = {"session": session, "error": None}
        stderr_thread = threading.Thread(
            target=_stream_pipe,
            args=(process.stderr, context.append_stderr),
            daemon=True,
        )
        stderr_thread.start()
        for line in iter(process.stdout.readline, ""):
            self.handle_line(line, context, state)
        process.stdout.close()
        exit_code = process.wait()
        stderr_thread.join(timeout=5)

        if exit_code != 0:
            detail = f": {state['error']}" if state.get("error") else ""
            raise WorkerFailure(f"opencode exited with code {exit_code}{detail}")

        commits = _git_rev_list(context.worktree_path, task.runtime.base_ref) if task.runtime.base_ref else []
        context.append_stdout(f"opencode:done session={state.get('session') or 'none'} commits={len(commits)}")
        logger.debug("opencode session {} finished for {}", state.get("session"), task.id)
        return TaskWorkerResult(
            commit_refs=commits,
            session=state.get("session"),
            metadata={"opencode": {"session_id": state.get("session"), "workspace_ref": str(context.worktree_path)}},
        )
