# Copyright (c) Microsoft. All rights reserved.

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ._backends import (
    AgentInvocationRecord,
    CycleRecord,
    ModelCallRecord,
    ToolExecutionRecord,
    get_backend_method,
)
from ._events import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
)
from ._hooks import HookContext, HookRegistry, guarded_callback
from ._logging import get_logger
from ._metrics import UNKNOWN_TOOL_NAME, UNKNOWN_TOOL_USE_ID, AgentInvocation, Cycle, EventLoopMetrics
from ._trace_tree import TraceNode
from ._types import Metrics, StopReason, ToolResultStatus, ToolUse, Usage

if TYPE_CHECKING:  # pragma: no cover
    from ._backends import MetricsBackend

__all__ = ["MetricsHookProvider"]

logger = get_logger("agent_telemetry.metrics")

MODEL_CALL_NODE_NAME = "Model call"


def _coerce_reported(model: "type[Usage] | type[Metrics]", value: Any) -> Any:
    try:
        return model.coerce(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s reported by the agent loop.", model.__name__, exc_info=True)
        return None


@dataclass
class _OpenToolCall:
    tool: ToolUse
    started: float
    node: TraceNode


class MetricsHookProvider:
    """Feeds agent lifecycle events into :class:`EventLoopMetrics` and a metrics backend.

    This is independent from :class:`~agent_telemetry.TracingHookProvider` and
    infers cycle boundaries the same way: a cycle starts with the first model
    call of a loop iteration and ends on a final answer or once all tools of the
    turn have completed.

    Each cycle gets a ``Cycle {n}`` node in the execution trace with a child node
    per model call and per tool call.

    Args:
        backend: Optional sink for per-call records; each of its methods is optional.

    Keyword Args:
        event_loop_metrics: The aggregate to update. A new one is created when omitted.
        enable_cycle_metrics: Track cycles. When False, model and tool nodes are trace roots.
    """

    def __init__(
        self,
        backend: "MetricsBackend | None" = None,
        *,
        event_loop_metrics: EventLoopMetrics | None = None,
        enable_cycle_metrics: bool = True,
    ) -> None:
        self.backend = backend
        self.event_loop_metrics = event_loop_metrics if event_loop_metrics is not None else EventLoopMetrics()
        self.enable_cycle_metrics = enable_cycle_metrics
        self._record_model_call = get_backend_method(backend, "record_model_call")
        self._record_tool_execution = get_backend_method(backend, "record_tool_execution")
        self._record_agent_invocation = get_backend_method(backend, "record_agent_invocation")
        self._record_cycle = get_backend_method(backend, "record_cycle")
        self._reset_state()

    def _reset_state(self) -> None:
        self._invocation_started: float | None = None
        self._agent_name = ""
        self._agent_id: str | None = None
        self._model_id: str | None = None
        self._invocation: AgentInvocation | None = None
        self._accumulated_usage = Usage.empty()
        self._cycle_count = 0
        self._cycle_started: float | None = None
        self._cycle_wall_start = 0.0
        self._cycle_node: TraceNode | None = None
        self._cycle_usage = Usage.empty()
        self._cycle_record: Cycle | None = None
        self._model_started: float | None = None
        self._model_node: TraceNode | None = None
        self._tool_calls: dict[str, _OpenToolCall] = {}

    def register_hooks(self, registry: HookRegistry) -> None:
        """Subscribe the lifecycle handlers to ``registry``."""
        registry.add_callback(BeforeInvocationEvent, self.on_before_invocation)
        registry.add_callback(BeforeModelCallEvent, self.on_before_model_call)
        registry.add_callback(AfterModelCallEvent, self.on_after_model_call)
        registry.add_callback(BeforeToolCallEvent, self.on_before_tool_call)
        registry.add_callback(AfterToolCallEvent, self.on_after_tool_call)
        if self.enable_cycle_metrics:
            registry.add_callback(AfterToolsEvent, self.on_after_tools)
        registry.add_callback(AfterInvocationEvent, self.on_after_invocation)

    @property
    def accumulated_usage(self) -> Usage:
        return self._accumulated_usage

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def _report(self, method: Any, record: Any) -> None:
        if method is None:
            return
        try:
            method(record)
        except Exception:
            logger.warning("Metrics backend failed to record %s", type(record).__name__, exc_info=True)

    def _attach(self, node: TraceNode) -> None:
        if self._cycle_node is not None:
            self._cycle_node.add_child(node)
        else:
            self.event_loop_metrics.add_trace(node)

    def _end_cycle(self, message: Any = None) -> None:
        if self._cycle_started is None or self._cycle_node is None:
            return
        duration = time.perf_counter() - self._cycle_started
        cycle_id = f"cycle-{self._cycle_count}"
        self.event_loop_metrics.end_cycle(
            self._cycle_wall_start, self._cycle_node, {"event_loop_cycle_id": cycle_id}, message
        )
        self._report(
            self._record_cycle, CycleRecord(cycle_id=cycle_id, duration_seconds=duration, usage=self._cycle_usage)
        )
        self._cycle_started = None
        self._cycle_node = None
        self._cycle_usage = Usage.empty()
        self._cycle_record = None

    @guarded_callback(logger)
    def on_before_invocation(self, event: BeforeInvocationEvent, context: HookContext | None = None) -> None:
        """Reset per-invocation state and start a new invocation record."""
        self._reset_state()
        self._invocation_started = time.perf_counter()
        self._agent_name = event.agent_name
        self._agent_id = event.agent_id
        self._model_id = event.model_id
        self._invocation = self.event_loop_metrics.reset_usage_metrics()

    @guarded_callback(logger)
    def on_before_model_call(self, event: BeforeModelCallEvent, context: HookContext | None = None) -> None:
        """Start a cycle if none is open and time the model call."""
        if self.enable_cycle_metrics and self._cycle_started is None:
            self._cycle_count += 1
            self._cycle_started = time.perf_counter()
            self._cycle_usage = Usage.empty()
            self._cycle_wall_start, self._cycle_node = self.event_loop_metrics.start_cycle(
                f"cycle-{self._cycle_count}", invocation=self._invocation
            )
            if self._invocation is not None and self._invocation.cycles:
                self._cycle_record = self._invocation.cycles[-1]
        self._model_started = time.perf_counter()
        self._model_node = TraceNode(MODEL_CALL_NODE_NAME)
        self._attach(self._model_node)

    @guarded_callback(logger)
    def on_after_model_call(self, event: AfterModelCallEvent, context: HookContext | None = None) -> None:
        """Account usage and latency, then end the cycle on a final answer."""
        usage = _coerce_reported(Usage, event.usage)
        metrics = _coerce_reported(Metrics, event.metrics)
        measured_ms = (time.perf_counter() - self._model_started) * 1000 if self._model_started is not None else 0.0
        self._model_started = None

        if usage is not None:
            self._accumulated_usage += usage
            if self.enable_cycle_metrics:
                self._cycle_usage += usage
            self.event_loop_metrics.update_usage(usage, self._invocation, self._cycle_record)
        if metrics is not None:
            self.event_loop_metrics.update_metrics(metrics)

        if self._model_node is not None:
            if event.message is not None:
                self._model_node.add_message(event.message)
            self._model_node.end()
            self._model_node = None

        latency_ms = metrics.latency_ms if metrics is not None and metrics.latency_ms is not None else measured_ms
        self._report(
            self._record_model_call,
            ModelCallRecord(
                model_id=self._model_id,
                usage=usage or Usage.empty(),
                latency_ms=latency_ms,
                time_to_first_token_ms=metrics.time_to_first_token_ms if metrics is not None else None,
                success=event.error is None,
                error=event.error,
            ),
        )

        if self.enable_cycle_metrics and event.stop_reason != StopReason.TOOL_USE:
            self._end_cycle(event.message)

    @guarded_callback(logger)
    def on_before_tool_call(self, event: BeforeToolCallEvent, context: HookContext | None = None) -> None:
        """Start timing the tool call and open its trace node."""
        tool = ToolUse(name=event.tool_name, tool_use_id=event.tool_use_id, input=event.input)
        node = TraceNode(f"Tool: {event.tool_name or UNKNOWN_TOOL_NAME}")
        self._attach(node)
        self._tool_calls[event.tool_use_id or UNKNOWN_TOOL_USE_ID] = _OpenToolCall(tool, time.perf_counter(), node)

    @guarded_callback(logger)
    def on_after_tool_call(self, event: AfterToolCallEvent, context: HookContext | None = None) -> None:
        """Record the tool call's duration and outcome."""
        tool_use_id = event.tool_use_id or UNKNOWN_TOOL_USE_ID
        open_call = self._tool_calls.pop(tool_use_id, None)
        if open_call is None:
            logger.warning("Received a result for tool call '%s' which was never started.", tool_use_id)
            return
        duration = time.perf_counter() - open_call.started
        success = event.error is None and str(event.status) == ToolResultStatus.SUCCESS
        self.event_loop_metrics.add_tool_usage(open_call.tool, duration, open_call.node, success, event.content)
        self._report(
            self._record_tool_execution,
            ToolExecutionRecord(
                tool_name=open_call.tool.name or UNKNOWN_TOOL_NAME,
                tool_use_id=tool_use_id,
                duration_seconds=duration,
                success=success,
                error=event.error,
            ),
        )

    @guarded_callback(logger)
    def on_after_tools(self, event: AfterToolsEvent, context: HookContext | None = None) -> None:
        """End the open cycle once all tools of the turn completed."""
        self._end_cycle(event.message)

    @guarded_callback(logger)
    def on_after_invocation(self, event: AfterInvocationEvent, context: HookContext | None = None) -> None:
        """Close leftover nodes and report the invocation."""
        for open_call in self._tool_calls.values():
            open_call.node.end()
        self._tool_calls.clear()
        if self._model_node is not None:
            self._model_node.end()
            self._model_node = None
        self._end_cycle()

        if self._invocation_started is None:
            logger.warning("Received an invocation result without an open invocation.")
            return
        duration = time.perf_counter() - self._invocation_started
        self._invocation_started = None
        self._report(
            self._record_agent_invocation,
            AgentInvocationRecord(
                agent_name=self._agent_name,
                agent_id=self._agent_id,
                model_id=self._model_id,
                duration_seconds=duration,
                cycle_count=self._cycle_count,
                usage=_coerce_reported(Usage, event.accumulated_usage) or self._accumulated_usage,
                success=event.error is None,
                error=event.error,
            ),
        )
