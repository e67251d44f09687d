# Copyright (c) Microsoft. All rights reserved.

"""Contracts for the pluggable tracing and metrics backends.

Every backend method is optional. Consumers look each one up when they need it
and treat a missing method as a silent no-op, so a backend may implement only
the calls it cares about.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from ._types import Usage

__all__ = [
    "AgentInvocationRecord",
    "CycleRecord",
    "MetricsBackend",
    "ModelCallRecord",
    "SpanBackend",
    "SpanEnd",
    "SpanEvent",
    "SpanStatus",
    "ToolExecutionRecord",
    "get_backend_method",
]


class SpanStatus(str, Enum):
    UNSET = "unset"
    OK = "ok"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SpanEvent:
    """A timestamped annotation added to a span right before it closes."""

    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SpanEnd:
    """Everything needed to close a span."""

    status: SpanStatus = SpanStatus.UNSET
    error: BaseException | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    events: Sequence[SpanEvent] = ()


class SpanBackend(Protocol):
    def start_span(self, name: str, parent: Any, attributes: Mapping[str, Any]) -> Any:
        """Open a span under ``parent`` (None for a root span) and return an opaque handle."""
        ...

    def end_span(self, span: Any, end: SpanEnd) -> None:
        """Close a span previously returned by ``start_span``."""
        ...


@dataclass(frozen=True)
class ModelCallRecord:
    model_id: str | None
    usage: Usage
    latency_ms: float
    time_to_first_token_ms: float | None = None
    success: bool = True
    error: BaseException | None = None


@dataclass(frozen=True)
class ToolExecutionRecord:
    tool_name: str
    tool_use_id: str
    duration_seconds: float
    success: bool = True
    error: BaseException | None = None


@dataclass(frozen=True)
class AgentInvocationRecord:
    agent_name: str
    agent_id: str | None
    model_id: str | None
    duration_seconds: float
    cycle_count: int
    usage: Usage
    success: bool = True
    error: BaseException | None = None


@dataclass(frozen=True)
class CycleRecord:
    cycle_id: str
    duration_seconds: float
    usage: Usage


class MetricsBackend(Protocol):
    def record_model_call(self, record: ModelCallRecord) -> None: ...

    def record_tool_execution(self, record: ToolExecutionRecord) -> None: ...

    def record_agent_invocation(self, record: AgentInvocationRecord) -> None: ...

    def record_cycle(self, record: CycleRecord) -> None: ...


def get_backend_method(backend: Any, name: str) -> Any:
    """Return ``backend.name`` if it is callable, otherwise None."""
    if backend is None:
        return None
    method = getattr(backend, name, None)
    return method if callable(method) else None
