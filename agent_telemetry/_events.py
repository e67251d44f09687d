# Copyright (c) Microsoft. All rights reserved.

"""Lifecycle events emitted by an agent loop.

The events are immutable. Anything a subscriber needs to hand back to the
orchestrator travels through :class:`~agent_telemetry._hooks.HookContext`.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ._types import Metrics, StopReason, ToolResultStatus, Usage

__all__ = [
    "AfterInvocationEvent",
    "AfterModelCallEvent",
    "AfterToolCallEvent",
    "AfterToolsEvent",
    "BeforeInvocationEvent",
    "BeforeModelCallEvent",
    "BeforeToolCallEvent",
    "HookEvent",
    "InvocationResult",
]


@dataclass(frozen=True)
class HookEvent:
    """Base class for all lifecycle events."""


@dataclass(frozen=True)
class BeforeInvocationEvent(HookEvent):
    """A top-level agent call is starting."""

    agent_name: str
    agent_id: str | None = None
    model_id: str | None = None
    tools: Sequence[Any] = ()
    input_messages: Sequence[Any] = ()
    system_prompt: str | None = None


@dataclass(frozen=True)
class InvocationResult:
    """Final outcome of an agent call."""

    message: Any = None
    stop_reason: StopReason | str | None = None


@dataclass(frozen=True)
class AfterInvocationEvent(HookEvent):
    """A top-level agent call has finished, successfully or not."""

    result: InvocationResult | None = None
    accumulated_usage: Usage | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class BeforeModelCallEvent(HookEvent):
    """The loop is about to call the model."""

    messages: Sequence[Any] = ()


@dataclass(frozen=True)
class AfterModelCallEvent(HookEvent):
    """The model call returned or failed."""

    stop_reason: StopReason | str | None = None
    message: Any = None
    usage: Usage | Mapping[str, Any] | None = None
    metrics: Metrics | Mapping[str, Any] | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class BeforeToolCallEvent(HookEvent):
    """A tool requested by the model is about to run."""

    tool_name: str | None
    tool_use_id: str | None
    input: Any = None


@dataclass(frozen=True)
class AfterToolCallEvent(HookEvent):
    """A tool finished running."""

    tool_use_id: str | None
    status: ToolResultStatus | str = ToolResultStatus.SUCCESS
    content: Any = None
    error: BaseException | None = None
    tool_name: str | None = None


@dataclass(frozen=True)
class AfterToolsEvent(HookEvent):
    """All tool calls of a model turn have completed."""

    message: Any = None
