"""Collaborator contracts consumed by the stage handlers.

The engine never generates, reviews, caches or deploys content itself. Those
concerns live behind the narrow protocols below and are injected into the
orchestrator. Implementations may be sync or async; handlers await results
when needed.
"""

from __future__ import annotations

import importlib
import time
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from contentflow.workflow.events import NotificationGateway
from contentflow.workflow.exceptions import ConfigurationError
from contentflow.workflow.models import ExecutionMetrics, WorkflowExecution

__all__ = [
    "CacheProvider",
    "ContentGenerationProvider",
    "ContentReview",
    "ContentReviewer",
    "DeploymentTarget",
    "InMemoryCache",
    "MetricsSink",
    "NotificationGateway",
    "load_object",
]


class ContentReview(BaseModel):
    """Assessment returned by a ContentReviewer."""

    quality_score: float
    compliant: bool = True
    issues: list[str] = []
    suggestions: list[str] = []


@runtime_checkable
class ContentGenerationProvider(Protocol):
    """Produces the artifact for an ``ai_generation`` stage."""

    async def generate(self, stage_config: dict[str, Any], execution_input: dict[str, Any]) -> Any:
        ...


@runtime_checkable
class ContentReviewer(Protocol):
    """Scores content. Used by ``ai_score`` criteria and compliance checks."""

    async def review(self, content: Any, content_type: str) -> ContentReview:
        ...


@runtime_checkable
class CacheProvider(Protocol):
    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...


@runtime_checkable
class MetricsSink(Protocol):
    """Receives the final metrics of every terminal execution."""

    def record(self, execution_id: str, metrics: ExecutionMetrics) -> Any:
        ...


@runtime_checkable
class DeploymentTarget(Protocol):
    async def deploy(self, execution: WorkflowExecution, config: dict[str, Any]) -> dict[str, Any]:
        ...


class InMemoryCache:
    """Process-local CacheProvider with per-entry TTL (seconds)."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Any, float | None]] = {}

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._entries[key] = (value, expires_at)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def load_object(spec: str) -> Any:
    """Import ``package.module:attribute`` and return the attribute.

    A class is instantiated with no arguments; anything else is returned as is.
    """
    module_path, _, attr = spec.partition(":")
    if not module_path or not attr:
        msg = f"Invalid collaborator reference '{spec}': expected 'module:attribute'"
        raise ConfigurationError(msg)
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        msg = f"Cannot import collaborator module '{module_path}': {exc}"
        raise ConfigurationError(msg) from exc
    try:
        obj = getattr(module, attr)
    except AttributeError as exc:
        msg = f"Module '{module_path}' has no attribute '{attr}'"
        raise ConfigurationError(msg) from exc
    return obj() if isinstance(obj, type) else obj
