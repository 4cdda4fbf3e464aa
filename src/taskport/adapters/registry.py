"""Adapter catalogue and configuration-driven resolution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from ..context import RepoContext
from ..errors import ConfigError
from ..models import Capabilities
from .base import ExecutionAdapter
from .local import LocalExecutionAdapter
from .stub_remote import StubRemoteExecutionAdapter

DEFAULT_ADAPTER_ID = "local"

_FACTORIES: dict[str, Callable[[], ExecutionAdapter]] = {
    LocalExecutionAdapter.id: LocalExecutionAdapter,
    StubRemoteExecutionAdapter.id: StubRemoteExecutionAdapter,
}


@dataclass(frozen=True)
class AdapterDescriptor:
    id: str
    kind: str
    description: str
    capabilities: Capabilities


@dataclass
class AdapterResolution:
    adapter: ExecutionAdapter
    configured_id: str
    resolved_id: str
    fallback_used: bool


def list_task_adapters() -> list[AdapterDescriptor]:
    out = []
    for factory in _FACTORIES.values():
        adapter = factory()
        out.append(AdapterDescriptor(adapter.id, adapter.kind, adapter.description, adapter.capabilities))
    return out


def create_task_adapter(adapter_id: str) -> ExecutionAdapter:
    factory = _FACTORIES.get(adapter_id)
    if factory is None:
        raise ConfigError(f"Unknown task adapter: {adapter_id}")
    return factory()


def configured_adapter_id(ctx: RepoContext, worker: Optional[str] = None) -> str:
    """A worker definition's adapter wins over ``remote.adapter``."""
    definition = ctx.config.task.workers.get(worker) if worker else None
    if definition is not None:
        return definition.adapter
    return ctx.config.remote.adapter or DEFAULT_ADAPTER_ID


def resolve_task_adapter(ctx: RepoContext, worker: Optional[str] = None) -> AdapterResolution:
    configured_id = configured_adapter_id(ctx, worker)
    try:
        adapter = create_task_adapter(configured_id)
    except ConfigError:
        logger.warning("Unknown adapter '{}'; falling back to {}", configured_id, DEFAULT_ADAPTER_ID)
        return AdapterResolution(
            adapter=create_task_adapter(DEFAULT_ADAPTER_ID),
            configured_id=configured_id,
            resolved_id=DEFAULT_ADAPTER_ID,
            fallback_used=True,
        )
    return AdapterResolution(adapter=adapter, configured_id=configured_id, resolved_id=adapter.id, fallback_used=False)
