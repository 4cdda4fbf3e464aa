"""Fan global task events out to configured notification consumers."""

from __future__ import annotations

from html import escape
from pathlib import Path
from typing import Callable

from loguru import logger

from .context import RepoContext
from .event_stream import consume_global_events
from .models import TaskEvent

Renderer = Callable[[TaskEvent], str]


def render_task_notification(event: TaskEvent) -> str:
    message = event.message or event.type
    return (
        f'<task-notification task-id="{escape(event.task_id)}" event="{escape(event.type)}">'
        f"{escape(message, quote=False)}</task-notification>"
    )


SUBSCRIBERS: dict[str, Renderer] = {
    "opencode": render_task_notification,
}


def outbox_path(ctx: RepoContext, consumer: str) -> Path:
    return ctx.paths.subscribers_dir / f"{consumer}.notifications.log"


def configured_consumers(ctx: RepoContext) -> list[str]:
    subs = ctx.config.task.subscriptions
    if not subs.enabled:
        return []
    return list(subs.consumers) or ["opencode"]


def dispatch_task_subscribers(ctx: RepoContext) -> int:
    """Deliver pending events to every configured consumer; return the count delivered."""
    delivered = 0
    for consumer in configured_consumers(ctx):
        render = SUBSCRIBERS.get(consumer)
        if render is None:
            logger.warning("Unknown task subscriber '{}'; skipping", consumer)
            continue
        path = outbox_path(ctx, consumer)
        delivered += consume_global_events(
            ctx,
            consumer,
            lambda event, render=render, path=path: ctx.backend.append_line(path, render(event)),
        )
    return delivered
