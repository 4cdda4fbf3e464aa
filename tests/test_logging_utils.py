"""Tests for logging_utils module."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from taskport.logging_utils import configure_logging, pretty, summarize_task
from taskport.models import RunStatus, Task, TaskStatus


class TestSummarizeTask:
    """Test summarize_task function."""

    def test_none_task(self):
        assert summarize_task(None) == {"task": None}

    def test_queued_task(self):
        task = Task(id="task-00000001", display_id=1, title="Write docs")

        result = summarize_task(task)

        assert result == {
            "id": "task-00000001",
            "display_id": 1,
            "status": "queued",
            "mode": "write",
            "title": "Write docs",
        }

    def test_blocked_task_on_branch(self):
        task = Task(title="t", branch="main")
        task.queue.blocked_by_task_id = "task-aaaaaaaa"

        result = summarize_task(task)

        assert result["branch"] == "main"
        assert result["blocked_by"] == "task-aaaaaaaa"

    def test_running_task(self):
        task = Task(title="t", status=TaskStatus.RUNNING)
        run = task.begin_run(RunStatus.STARTED)
        task.runtime.worker_pid = 4242

        result = summarize_task(task)

        assert result["worker_pid"] == 4242
        assert result["runs_n"] == 1
        assert result["active_run_id"] == run.run_id

    def test_failed_task_truncates_error(self):
        task = Task(title="t", status=TaskStatus.FAILED)
        task.runtime.last_error = "x" * 300
        task.runtime.retained_for_debug = True
        task.runtime.worktree_path = "/tmp/tree"

        result = summarize_task(task)

        assert len(result["last_error"]) == 241
        assert result["last_error"].endswith("…")
        assert result["retained_worktree"] == "/tmp/tree"


class TestPretty:
    """Test pretty function."""

    def test_dict(self):
        assert json.loads(pretty({"a": 1, "b": [1, 2]})) == {"a": 1, "b": [1, 2]}

    def test_non_serializable_falls_back_to_str(self):
        assert json.loads(pretty({"path": Path("/tmp/x")})) == {"path": "/tmp/x"}

    def test_indent(self):
        assert pretty({"a": 1}, indent=4) == '{\n    "a": 1\n}'


class TestConfigureLogging:
    """Test configure_logging function."""

    def test_file_sink(self, tmp_path: Path):
        log_file = tmp_path / "runtime" / "daemon.log"

        configure_logging("INFO", log_file=log_file, console=False)
        logger.debug("hidden")
        logger.info("daemon tick")
        logger.remove()

        text = log_file.read_text()
        assert "daemon tick" in text
        assert "hidden" not in text
        assert "| INFO     |" in text
