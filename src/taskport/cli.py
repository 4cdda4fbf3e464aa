"""Command line entry point: ``taskport task ...`` and ``taskport remote ...``."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .adapters.base import TaskRunHandle
from .adapters.registry import create_task_adapter, list_task_adapters, resolve_task_adapter
from .apply import APPLY_METHODS, apply_task
from .artifacts import artifact_paths, list_artifact_files, read_commit_refs, read_metadata
from .attach import attach_task, resume_task
from .constants import DEFAULT_POLL_INTERVAL_SECONDS
from .context import RepoContext
from .daemon import (
    cleanup_finished_tasks,
    cleanup_task_runtime,
    daemon_is_running,
    ensure_task_daemon,
    read_daemon_state,
    run_task_daemon,
    stop_task_daemon,
)
from .errors import ConfigError, TaskportError
from .event_stream import consume_global_events, read_global_events
from .execution import adapter_for_task
from .io_utils import _read_text_from
from .logging_utils import configure_logging, pretty, summarize_task
from .models import Task, TaskStatus, is_finished
from .subscribers import SUBSCRIBERS
from .task_ref import resolve_task_ref
from .task_store import TaskStore
from .workers.harness import run_task_worker

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    TaskStatus.QUEUED: "dim",
    TaskStatus.PREPARING: "cyan",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.WAITING_ON_CHILDREN: "cyan",
    TaskStatus.RESUMABLE: "yellow",
    TaskStatus.RESUMING: "cyan",
    TaskStatus.REVIVING_FOR_ATTACH: "magenta",
    TaskStatus.PAUSED_FOR_ATTACH: "magenta",
    TaskStatus.RESUME_FAILED: "red",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.TIMEOUT: "red",
    TaskStatus.CANCELLED: "yellow",
    TaskStatus.CLEANED: "dim",
}


def _ctx(args: argparse.Namespace) -> RepoContext:
    repo = getattr(args, "repo", None)
    return RepoContext.open(Path(repo) if repo else None)


def _status_text(status: TaskStatus) -> str:
    style = _STATUS_STYLES.get(status, "")
    return f"[{style}]{status.value}[/{style}]" if style else status.value


def _task_table(tasks: list[Task], title: Optional[str] = None) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("Branch")
    table.add_column("Title")
    table.add_column("Blocked by", style="dim")
    for task in tasks:
        table.add_row(
            str(task.display_id),
            task.id,
            _status_text(task.status),
            task.mode.value,
            task.branch or "-",
            escape(task.title),
            task.queue.blocked_by_task_id or "",
        )
    return table


# ---------------------------------------------------------------------------
# task commands
# ---------------------------------------------------------------------------

def _task_start(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    parent_id = resolve_task_ref(store, args.parent).id if args.parent else None
    resolution = resolve_task_adapter(ctx, args.worker)
    task = store.create(
        args.title,
        mode=args.mode,
        branch=args.branch,
        worker=args.worker,
        parent_id=parent_id,
        adapter_id=resolution.resolved_id,
        capabilities=resolution.adapter.capabilities,
    )
    console.print(f"Queued task [cyan]{task.id}[/cyan] (#{task.display_id}): {escape(task.title)}")
    if task.queue.blocked_by_task_id:
        console.print(f"[dim]Waiting for {task.queue.blocked_by_task_id} to release {task.queue.lock_key}[/dim]")
    if not args.no_daemon:
        ensure_task_daemon(ctx)
    return 0


def _task_list(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    tasks = TaskStore(ctx).list()
    if args.status:
        tasks = [t for t in tasks if t.status.value == args.status]
    if args.json:
        sys.stdout.write(pretty({"tasks": [summarize_task(t) for t in tasks]}) + "\n")
        return 0
    if not tasks:
        console.print("No tasks.")
        return 0
    console.print(_task_table(tasks))
    return 0


def _task_read(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    task = resolve_task_ref(store, args.ref)
    if args.json:
        sys.stdout.write(pretty(task.to_dict()) + "\n")
        return 0
    runtime = task.runtime
    console.print(f"[bold]{escape(task.title)}[/bold]")
    console.print(f"ID:       {task.id} (#{task.display_id})")
    console.print(f"Status:   {_status_text(task.status)}")
    console.print(f"Mode:     {task.mode.value}")
    console.print(f"Branch:   {task.branch or '-'}")
    console.print(f"Worker:   {task.worker or ctx.config.task.default_worker or 'mock'}")
    console.print(f"Adapter:  {task.adapter}")
    if task.parent_id:
        console.print(f"Parent:   {task.parent_id}")
    if task.children_ids:
        console.print(f"Children: {', '.join(task.children_ids)}")
    if task.queue.blocked_by_task_id:
        console.print(f"Blocked:  by {task.queue.blocked_by_task_id}")
    if runtime.worktree_path:
        retained = " (retained)" if runtime.retained_for_debug else ""
        console.print(f"Worktree: {runtime.worktree_path}{retained}")
    if runtime.last_error:
        console.print(f"Error:    [red]{escape(runtime.last_error)}[/red]")
    if runtime.runs:
        runs = Table(title="Runs", show_header=True)
        runs.add_column("#", justify="right")
        runs.add_column("Run ID", style="cyan")
        runs.add_column("Status")
        runs.add_column("Started")
        runs.add_column("Finished")
        runs.add_column("Reason", style="dim")
        for run in runtime.runs:
            runs.add_row(
                str(run.attempt),
                run.run_id,
                run.status.value,
                run.started_at,
                run.finished_at or "",
                run.reason or "",
            )
        console.print(runs)
    events = store.read_events(task.id, limit=args.events)
    if events:
        console.print("[bold]Recent events[/bold]")
        for event in events:
            console.print(event.render(), markup=False)
    return 0


def _follow_file(path: Path, interval: float, until_finished=None) -> None:
    offset = 0
    while True:
        text, offset = _read_text_from(path, offset)
        if text:
            sys.stdout.write(text)
            sys.stdout.flush()
        if until_finished is not None and until_finished():
            text, offset = _read_text_from(path, offset)
            if text:
                sys.stdout.write(text)
            return
        time.sleep(interval)


def _task_logs(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    task = resolve_task_ref(store, args.ref)
    paths = artifact_paths(ctx, task.id)
    path = paths.stderr if args.stderr else paths.stdout
    if not args.follow:
        text, _ = _read_text_from(path, 0)
        sys.stdout.write(text)
        return 0
    try:
        _follow_file(path, DEFAULT_POLL_INTERVAL_SECONDS, lambda: is_finished(store.require(task.id).status))
    except KeyboardInterrupt:
        return 130
    return 0


def _task_watch(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    if args.logs:
        task = resolve_task_ref(store, args.logs)
        try:
            _follow_file(artifact_paths(ctx, task.id).stdout, args.interval, lambda: is_finished(store.require(task.id).status))
        except KeyboardInterrupt:
            return 130
        return 0
    try:
        while True:
            tasks = [t for t in store.list() if t.status != TaskStatus.CLEANED]
            if not args.once:
                console.clear()
            running = "running" if daemon_is_running(ctx) else "stopped"
            console.print(_task_table(tasks, title=f"Tasks (daemon {running})"))
            if args.once:
                return 0
            time.sleep(args.interval)
    except KeyboardInterrupt:
        return 130


def _task_artifacts(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    task = resolve_task_ref(TaskStore(ctx), args.ref)
    files = list_artifact_files(ctx, task.id)
    if args.json:
        payload = {
            "task_id": task.id,
            "root": str(artifact_paths(ctx, task.id).root),
            "files": [str(p) for p in files],
            "commits": read_commit_refs(ctx, task.id),
            "metadata": read_metadata(ctx, task.id),
        }
        sys.stdout.write(pretty(payload) + "\n")
        return 0
    if not files:
        console.print(f"No artifacts for {task.id}.")
        return 0
    table = Table(title=f"Artifacts for {task.id}", show_header=True)
    table.add_column("File", style="cyan")
    table.add_column("Bytes", justify="right")
    root = artifact_paths(ctx, task.id).root
    for path in files:
        table.add_row(str(path.relative_to(root)), str(path.stat().st_size))
    console.print(table)
    commits = read_commit_refs(ctx, task.id)
    if commits:
        console.print(f"Commits: {', '.join(c[:12] for c in commits)}")
    return 0


def _task_wait(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    task = resolve_task_ref(store, args.ref)
    deadline = time.monotonic() + args.timeout_seconds if args.timeout_seconds else None
    while not is_finished(task.status):
        if deadline is not None and time.monotonic() >= deadline:
            raise TaskportError(f"Timed out waiting for {task.id} (status {task.status.value})")
        time.sleep(DEFAULT_POLL_INTERVAL_SECONDS)
        task = store.require(task.id)
    console.print(f"Task {task.id} finished: {_status_text(task.status)}")
    if task.status != TaskStatus.COMPLETED:
        if task.runtime.last_error:
            err_console.print(f"[red]{escape(task.runtime.last_error)}[/red]")
        return 1
    return 0


def _task_cancel(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    store = TaskStore(ctx)
    task = resolve_task_ref(store, args.ref)
    if is_finished(task.status):
        console.print(f"Task {task.id} is already {task.status.value}.")
        return 0
    if task.runtime.worker_pid is not None:
        adapter = adapter_for_task(ctx, task)
        adapter.cancel(TaskRunHandle.from_task(task), force=args.force)
    with store.transaction() as tx:
        current = tx.require(task.id)
        if not is_finished(current.status):
            current.runtime.retained_for_debug = current.runtime.worktree_path is not None
            tx.set_status(current, TaskStatus.CANCELLED, "Cancelled by user command")
    console.print(f"Cancelled task [cyan]{task.id}[/cyan]")
    return 0


def _task_resume(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    outcome = resume_task(ctx, args.ref)
    if outcome.requested:
        console.print(f"Resume requested for [cyan]{outcome.task.id}[/cyan]")
    else:
        console.print(outcome.guidance or f"Nothing to resume for {outcome.task.id}")
    return 0


def _task_attach(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    result = attach_task(ctx, args.ref, client=args.client)
    context = result.context
    verb = "Revived" if result.revived else "Attached to"
    console.print(f"{verb} task [cyan]{result.task.id}[/cyan] ({context.restore_strategy})")
    console.print(f"Session:  {context.session_handle}")
    if context.workspace_ref:
        console.print(f"Worktree: {context.workspace_ref}")
    console.print(f"Context:  {result.context_path}")
    if context.summary:
        console.print(context.summary, markup=False)
    return 0


def _task_apply(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    result = apply_task(ctx, args.ref, method=args.method, squash=args.squash, allow_dirty=args.allow_dirty)
    suffix = f" ({len(result.commits)} commit(s))" if result.commits else ""
    console.print(f"[green]Applied task {args.ref} via {result.method}{suffix}[/green]")
    return 0


def _task_cleanup(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    stop = stop_task_daemon(ctx)
    cleaned = cleanup_finished_tasks(ctx)
    if stop.reason == "active_tasks":
        err_console.print("[yellow]Daemon has active tasks; runtime state left in place[/yellow]")
    else:
        cleanup_task_runtime(ctx)
        if stop.stopped:
            console.print("Stopped idle task daemon")
    console.print(f"Cleaned {len(cleaned)} task(s) and garbage-collected orphan artifacts")
    return 0


def _task_daemon(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    if args.stop:
        result = stop_task_daemon(ctx, force=args.force)
        if result.reason == "active_tasks":
            err_console.print("[yellow]Daemon has active tasks; use --force to stop anyway[/yellow]")
            return 1
        console.print("Daemon stopped" if result.stopped else "Daemon is not running")
        return 0
    if args.serve:
        configure_logging(args.log_level, log_file=ctx.paths.daemon_log, console=sys.stderr.isatty())
        run_task_daemon(ctx, idle_stop_ms=args.idle_stop_ms)
        return 0
    result = ensure_task_daemon(ctx)
    state = read_daemon_state(ctx)
    status = state.status.value if state else "unknown"
    console.print(f"Daemon pid {result.pid} ({'started' if result.started else status})")
    return 0


def _task_worker(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    return run_task_worker(ctx, args.task_id, Path(args.worktree))


def _task_events(args: argparse.Namespace) -> int:
    ctx = _ctx(args)

    def _print(event) -> None:
        render = SUBSCRIBERS.get(args.consumer) if args.consumer else None
        line = render(event) if render else event.render()
        sys.stdout.write(line + "\n")
        sys.stdout.flush()

    line_no = args.from_line
    try:
        while True:
            if args.consumer:
                consume_global_events(ctx, args.consumer, _print, limit=args.limit)
            else:
                batch = read_global_events(ctx, from_line=line_no, limit=args.limit)
                for event in batch.events:
                    _print(event)
                line_no = batch.next_line
            if not args.follow:
                return 0
            time.sleep(DEFAULT_POLL_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        return 130


# ---------------------------------------------------------------------------
# remote commands
# ---------------------------------------------------------------------------

def _remote_adapters(args: argparse.Namespace) -> int:
    table = Table(title="Task adapters", show_header=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Capabilities")
    table.add_column("Description", style="dim")
    for desc in list_task_adapters():
        caps = [name for name, enabled in desc.capabilities.to_dict().items() if enabled]
        table.add_row(desc.id, desc.kind, ", ".join(caps) or "-", desc.description)
    console.print(table)
    return 0


def _remote_status(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    resolution = resolve_task_adapter(ctx)
    console.print(f"Configured adapter: {resolution.configured_id}")
    console.print(f"Resolved adapter: {resolution.resolved_id}")
    console.print(f"Fallback used: {'yes' if resolution.fallback_used else 'no'}")
    return 0


def _remote_doctor(args: argparse.Namespace) -> int:
    ctx = _ctx(args)
    configured = ctx.config.remote.adapter
    try:
        adapter = create_task_adapter(configured)
    except ConfigError as exc:
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        return 1
    if adapter.kind == "remote" and adapter.id == "stub-remote":
        err_console.print(
            "[yellow]Warning: stub-remote is a contract stub and will not execute task workers yet[/yellow]"
        )
    for name, definition in ctx.config.task.workers.items():
        try:
            create_task_adapter(definition.adapter)
        except ConfigError as exc:
            err_console.print(f"[red]Worker {name}: {escape(str(exc))}[/red]")
            return 1
    console.print("Remote configuration looks healthy")
    return 0


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--repo", default=argparse.SUPPRESS, help="Repository path (default: current directory)")
    common.add_argument(
        "--log-level",
        default=argparse.SUPPRESS,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: WARNING)",
    )

    parser = argparse.ArgumentParser(prog="taskport", description="Background task orchestration for git repositories")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--repo", default=None, help="Repository path (default: current directory)")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    task = subparsers.add_parser("task", help="Queue, inspect and control background tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)

    tstart = task_sub.add_parser("start", parents=[common], help="Queue a task and make sure the daemon runs")
    tstart.add_argument("title")
    tstart.add_argument("--mode", choices=["read", "write"], default="write")
    tstart.add_argument("--branch", default=None, help="Logical branch the task works on")
    tstart.add_argument("--worker", default=None, help="Worker name from task.workers")
    tstart.add_argument("--parent", default=None, help="Parent task reference")
    tstart.add_argument("--no-daemon", action="store_true", help="Queue without starting the daemon")
    tstart.set_defaults(func=_task_start)

    tlist = task_sub.add_parser("list", parents=[common], help="List tasks, newest first")
    tlist.add_argument("--status", default=None, choices=[s.value for s in TaskStatus])
    tlist.add_argument("--json", action="store_true")
    tlist.set_defaults(func=_task_list)

    tread = task_sub.add_parser("read", parents=[common], help="Show one task")
    tread.add_argument("ref")
    tread.add_argument("--events", type=int, default=10, help="Number of recent events to show")
    tread.add_argument("--json", action="store_true")
    tread.set_defaults(func=_task_read)

    tlogs = task_sub.add_parser("logs", parents=[common], help="Print a task's worker output")
    tlogs.add_argument("ref")
    tlogs.add_argument("--stderr", action="store_true")
    tlogs.add_argument("--follow", "-f", action="store_true")
    tlogs.set_defaults(func=_task_logs)

    twatch = task_sub.add_parser("watch", parents=[common], help="Live task table")
    twatch.add_argument("--once", action="store_true")
    twatch.add_argument("--logs", default=None, metavar="REF", help="Follow one task's output instead")
    twatch.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL_SECONDS)
    twatch.set_defaults(func=_task_watch)

    tart = task_sub.add_parser("artifacts", parents=[common], help="List a task's artifacts")
    tart.add_argument("ref")
    tart.add_argument("--json", action="store_true")
    tart.set_defaults(func=_task_artifacts)

    twait = task_sub.add_parser("wait", parents=[common], help="Block until a task finishes")
    twait.add_argument("ref")
    twait.add_argument("--timeout-seconds", type=float, default=None)
    twait.set_defaults(func=_task_wait)

    tcancel = task_sub.add_parser("cancel", parents=[common], help="Cancel a task")
    tcancel.add_argument("ref")
    tcancel.add_argument("--force", action="store_true", help="Kill the worker instead of terminating it")
    tcancel.set_defaults(func=_task_cancel)

    tresume = task_sub.add_parser("resume", parents=[common], help="Resume a task from its checkpoint")
    tresume.add_argument("ref")
    tresume.set_defaults(func=_task_resume)

    tattach = task_sub.add_parser("attach", parents=[common], help="Hand a task over to an interactive client")
    tattach.add_argument("ref")
    tattach.add_argument("--client", default=None)
    tattach.set_defaults(func=_task_attach)

    tapply = task_sub.add_parser("apply", parents=[common], help="Apply a task's output to the working tree")
    tapply.add_argument("ref")
    tapply.add_argument("--method", choices=list(APPLY_METHODS), default=None)
    tapply.add_argument("--squash", action="store_true")
    tapply.add_argument("--allow-dirty", action="store_true")
    tapply.set_defaults(func=_task_apply)

    tclean = task_sub.add_parser("cleanup", parents=[common], help="Remove finished task state")
    tclean.set_defaults(func=_task_cleanup)

    tdaemon = task_sub.add_parser("daemon", parents=[common], help="Start, serve or stop the task daemon")
    tdaemon.add_argument("--serve", action="store_true", help=argparse.SUPPRESS)
    tdaemon.add_argument("--idle-stop-ms", type=int, default=None, help=argparse.SUPPRESS)
    tdaemon.add_argument("--stop", action="store_true")
    tdaemon.add_argument("--force", action="store_true")
    tdaemon.set_defaults(func=_task_daemon)

    tworker = task_sub.add_parser("worker", parents=[common], help=argparse.SUPPRESS)
    tworker.add_argument("--task-id", required=True)
    tworker.add_argument("--worktree", required=True)
    tworker.set_defaults(func=_task_worker)

    tevents = task_sub.add_parser("events", parents=[common], help="Print the global event stream")
    tevents.add_argument("--consumer", default=None, help="Consume with a persistent cursor")
    tevents.add_argument("--follow", "-f", action="store_true")
    tevents.add_argument("--from-line", type=int, default=0)
    tevents.add_argument("--limit", type=int, default=500)
    tevents.set_defaults(func=_task_events)

    remote = subparsers.add_parser("remote", help="Inspect execution adapters")
    remote_sub = remote.add_subparsers(dest="remote_cmd", required=True)
    radapters = remote_sub.add_parser("adapters", parents=[common], help="List available adapters")
    radapters.set_defaults(func=_remote_adapters)
    rstatus = remote_sub.add_parser("status", parents=[common], help="Show adapter resolution")
    rstatus.set_defaults(func=_remote_status)
    rdoctor = remote_sub.add_parser("doctor", parents=[common], help="Validate adapter configuration")
    rdoctor.set_defaults(func=_remote_doctor)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except TaskportError as exc:
        logger.debug("Command failed: {!r}", exc)
        err_console.print(f"[red]Error:[/red] {escape(str(exc))}", highlight=False)
        return exc.exit_code
