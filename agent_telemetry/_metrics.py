# Copyright (c) Microsoft. All rights reserved.

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from opentelemetry import metrics
from opentelemetry.semconv_ai import Meters

from ._logging import get_logger
from ._trace_tree import TraceNode, format_trace_tree
from ._types import Metrics, ToolUse, Usage
from .observability import (
    OPERATION_DURATION_BUCKET_BOUNDARIES,
    TOKEN_USAGE_BUCKET_BOUNDARIES,
    OtelAttr,
    get_meter,
)

__all__ = [
    "AgentInvocation",
    "Cycle",
    "EventLoopMetrics",
    "MetricsClient",
    "ToolMetrics",
    "metrics_to_string",
]

logger = get_logger("agent_telemetry.metrics")

UNKNOWN_TOOL_NAME: Final[str] = "unknown_tool"
UNKNOWN_TOOL_USE_ID: Final[str] = "unknown"

Attributes = Mapping[str, str | int | float | bool]


class MetricsClient:
    """Owns the OpenTelemetry instruments used by :class:`EventLoopMetrics`.

    Create one per process (or per meter) and hand it to every ``EventLoopMetrics``
    that should report through it.

    Args:
        meter: The meter to create instruments on, defaults to :func:`~agent_telemetry.get_meter`.
    """

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        logger.debug("Creating agent telemetry metric instruments")
        self.meter = meter if meter is not None else get_meter()
        self.event_loop_cycle_count = self.meter.create_counter(
            name="agent_telemetry.event_loop.cycle_count",
            unit="Count",
            description="Number of event loop cycles",
        )
        self.event_loop_start_cycle = self.meter.create_counter(
            name="agent_telemetry.event_loop.start_cycle",
            unit="Count",
            description="Number of event loop cycles started",
        )
        self.event_loop_end_cycle = self.meter.create_counter(
            name="agent_telemetry.event_loop.end_cycle",
            unit="Count",
            description="Number of event loop cycles completed",
        )
        self.event_loop_cycle_duration = self.meter.create_histogram(
            name="agent_telemetry.event_loop.cycle_duration",
            unit=OtelAttr.DURATION_UNIT,
            description="Duration of an event loop cycle",
            explicit_bucket_boundaries_advisory=OPERATION_DURATION_BUCKET_BOUNDARIES,
        )
        self.event_loop_latency = self.meter.create_histogram(
            name="agent_telemetry.event_loop.latency",
            unit="ms",
            description="Model latency reported by the provider",
        )
        self.event_loop_input_tokens = self.meter.create_histogram(
            name="agent_telemetry.event_loop.input.tokens",
            unit=OtelAttr.T_UNIT,
            description="Input tokens per model call",
            explicit_bucket_boundaries_advisory=TOKEN_USAGE_BUCKET_BOUNDARIES,
        )
        self.event_loop_output_tokens = self.meter.create_histogram(
            name="agent_telemetry.event_loop.output.tokens",
            unit=OtelAttr.T_UNIT,
            description="Output tokens per model call",
            explicit_bucket_boundaries_advisory=TOKEN_USAGE_BUCKET_BOUNDARIES,
        )
        self.event_loop_cache_read_input_tokens = self.meter.create_histogram(
            name="agent_telemetry.event_loop.cache_read.input.tokens",
            unit=OtelAttr.T_UNIT,
            description="Input tokens read from the prompt cache per model call",
            explicit_bucket_boundaries_advisory=TOKEN_USAGE_BUCKET_BOUNDARIES,
        )
        self.event_loop_cache_write_input_tokens = self.meter.create_histogram(
            name="agent_telemetry.event_loop.cache_write.input.tokens",
            unit=OtelAttr.T_UNIT,
            description="Input tokens written to the prompt cache per model call",
            explicit_bucket_boundaries_advisory=TOKEN_USAGE_BUCKET_BOUNDARIES,
        )
        self.model_time_to_first_token = self.meter.create_histogram(
            name="agent_telemetry.model.time_to_first_token",
            unit="ms",
            description="Time until the model streamed its first token",
        )
        self.tool_call_count = self.meter.create_counter(
            name="agent_telemetry.tool.call_count",
            unit="Count",
            description="Number of tool calls",
        )
        self.tool_success_count = self.meter.create_counter(
            name="agent_telemetry.tool.success_count",
            unit="Count",
            description="Number of successful tool calls",
        )
        self.tool_error_count = self.meter.create_counter(
            name="agent_telemetry.tool.error_count",
            unit="Count",
            description="Number of failed tool calls",
        )
        self.tool_duration = self.meter.create_histogram(
            name="agent_telemetry.tool.duration",
            unit=OtelAttr.DURATION_UNIT,
            description="Duration of a tool call",
            explicit_bucket_boundaries_advisory=OPERATION_DURATION_BUCKET_BOUNDARIES,
        )
        self.token_usage = self.meter.create_histogram(
            name=Meters.LLM_TOKEN_USAGE,
            unit=OtelAttr.T_UNIT,
            description="Captures the token usage of model calls",
            explicit_bucket_boundaries_advisory=TOKEN_USAGE_BUCKET_BOUNDARIES,
        )
        self.operation_duration = self.meter.create_histogram(
            name=Meters.LLM_OPERATION_DURATION,
            unit=OtelAttr.DURATION_UNIT,
            description="Captures the duration of model calls",
            explicit_bucket_boundaries_advisory=OPERATION_DURATION_BUCKET_BOUNDARIES,
        )


@dataclass
class ToolMetrics:
    """Cumulative statistics for one tool name."""

    tool: ToolUse
    call_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_time: float = 0.0

    def add_call(
        self,
        tool: ToolUse,
        duration: float,
        success: bool,
        metrics_client: MetricsClient | None = None,
        attributes: Attributes | None = None,
    ) -> None:
        """Count one call of the tool and report it on the client's instruments."""
        self.tool = tool
        self.call_count += 1
        self.total_time += duration
        if success:
            self.success_count += 1
        else:
            self.error_count += 1
        if metrics_client is None:
            return
        metrics_client.tool_call_count.add(1, attributes)
        metrics_client.tool_duration.record(duration, attributes)
        if success:
            metrics_client.tool_success_count.add(1, attributes)
        else:
            metrics_client.tool_error_count.add(1, attributes)

    @property
    def average_time(self) -> float:
        return self.total_time / self.call_count if self.call_count else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.call_count if self.call_count else 0.0


@dataclass
class Cycle:
    cycle_id: str
    usage: Usage = field(default_factory=Usage.empty)


@dataclass
class AgentInvocation:
    cycles: list[Cycle] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage.empty)

    @property
    def cycle_count(self) -> int:
        return len(self.cycles)


class EventLoopMetrics:
    """Aggregated metrics and execution trace for one or more agent invocations.

    Tool statistics persist across invocations. Updates to shared totals are
    additive and serialized by a lock, so several agents may report into the
    same instance as long as each passes its own invocation to
    :meth:`start_cycle` and :meth:`update_usage`.

    Args:
        metrics_client: The instruments to report on. A new client on the global
            meter is created when omitted.
    """

    def __init__(self, metrics_client: MetricsClient | None = None) -> None:
        self.metrics_client = metrics_client if metrics_client is not None else MetricsClient()
        self.cycle_count = 0
        self.tool_metrics: dict[str, ToolMetrics] = {}
        self.cycle_durations: list[float] = []
        self.agent_invocations: list[AgentInvocation] = []
        self.traces: list[TraceNode] = []
        self.accumulated_usage = Usage.empty()
        self.accumulated_metrics = Metrics(latency_ms=0.0)
        self._lock = threading.Lock()

    @property
    def latest_agent_invocation(self) -> AgentInvocation | None:
        return self.agent_invocations[-1] if self.agent_invocations else None

    def start_cycle(
        self,
        cycle_id: str | None = None,
        attributes: Attributes | None = None,
        invocation: AgentInvocation | None = None,
    ) -> tuple[float, TraceNode]:
        """Count a new cycle and open its trace node.

        Args:
            cycle_id: Identifier of the cycle, ``cycle-{n}`` when omitted.
            attributes: Extra attributes for the cycle counters.
            invocation: The invocation the cycle belongs to. Defaults to the latest one,
                callers sharing this instance between agents should pass their own.

        Returns:
            The start time and the cycle's trace node, to be passed to :meth:`end_cycle`.
        """
        with self._lock:
            self.cycle_count += 1
            cycle_id = cycle_id or f"cycle-{self.cycle_count}"
            start_time = time.time()
            node = TraceNode(f"Cycle {self.cycle_count}", start_time=start_time, metadata={"cycle_id": cycle_id})
            self.traces.append(node)
            if invocation is None:
                invocation = self.latest_agent_invocation
            if invocation is not None:
                invocation.cycles.append(Cycle(cycle_id=cycle_id))
        attributes = {"event_loop_cycle_id": cycle_id, **(attributes or {})}
        self.metrics_client.event_loop_cycle_count.add(1, attributes)
        self.metrics_client.event_loop_start_cycle.add(1, attributes)
        return start_time, node

    def end_cycle(
        self,
        start_time: float,
        cycle_node: TraceNode,
        attributes: Attributes | None = None,
        message: Any = None,
    ) -> float:
        """Record the cycle duration and close its trace node.

        Returns:
            The cycle duration in seconds.
        """
        end_time = time.time()
        duration = end_time - start_time
        with self._lock:
            self.cycle_durations.append(duration)
        if message is not None:
            cycle_node.add_message(message)
        cycle_node.end(end_time)
        self.metrics_client.event_loop_end_cycle.add(1, attributes)
        self.metrics_client.event_loop_cycle_duration.record(duration, attributes)
        return duration

    def add_tool_usage(
        self,
        tool: ToolUse,
        duration: float,
        tool_node: TraceNode,
        success: bool,
        message: Any = None,
    ) -> None:
        """Record one tool call and close its trace node."""
        tool_name = tool.name or UNKNOWN_TOOL_NAME
        tool_use_id = tool.tool_use_id or UNKNOWN_TOOL_USE_ID
        tool_node.metadata["tool_use_id"] = tool_use_id
        tool_node.metadata["tool_name"] = tool_name
        tool_node.raw_name = f"{tool_name} - {tool_use_id}"
        if message is not None:
            tool_node.add_message(message)
        with self._lock:
            tool_metrics = self.tool_metrics.get(tool_name)
            if tool_metrics is None:
                tool_metrics = self.tool_metrics[tool_name] = ToolMetrics(tool)
            tool_metrics.add_call(
                tool,
                duration,
                success,
                self.metrics_client,
                {"tool_name": tool_name, "tool_use_id": tool_use_id},
            )
        tool_node.end()

    def update_usage(
        self,
        usage: Usage,
        invocation: AgentInvocation | None = None,
        cycle: Cycle | None = None,
    ) -> None:
        """Add ``usage`` to the grand total, an invocation and one of its cycles.

        When ``invocation`` is omitted, the latest invocation and its latest cycle
        are used. An explicit ``invocation`` only credits the ``cycle`` given with it.
        """
        with self._lock:
            self.accumulated_usage += usage
            if invocation is None and (invocation := self.latest_agent_invocation) is not None:
                cycle = invocation.cycles[-1] if invocation.cycles else None
            if invocation is not None:
                invocation.usage += usage
            if cycle is not None:
                cycle.usage += usage

        client = self.metrics_client
        client.event_loop_input_tokens.record(usage.input_tokens)
        client.event_loop_output_tokens.record(usage.output_tokens)
        client.token_usage.record(usage.input_tokens, {OtelAttr.T_TYPE: OtelAttr.T_TYPE_INPUT})
        client.token_usage.record(usage.output_tokens, {OtelAttr.T_TYPE: OtelAttr.T_TYPE_OUTPUT})
        if usage.cache_read_input_tokens is not None:
            client.event_loop_cache_read_input_tokens.record(usage.cache_read_input_tokens)
            client.token_usage.record(usage.cache_read_input_tokens, {OtelAttr.T_TYPE: OtelAttr.T_TYPE_CACHE_READ})
        if usage.cache_write_input_tokens is not None:
            client.event_loop_cache_write_input_tokens.record(usage.cache_write_input_tokens)
            client.token_usage.record(usage.cache_write_input_tokens, {OtelAttr.T_TYPE: OtelAttr.T_TYPE_CACHE_WRITE})

    def update_metrics(self, metrics: Metrics) -> None:
        """Accumulate provider latency and record the timing histograms."""
        latency_ms = metrics.latency_ms or 0.0
        with self._lock:
            self.accumulated_metrics = Metrics(
                latency_ms=(self.accumulated_metrics.latency_ms or 0.0) + latency_ms,
                time_to_first_token_ms=self.accumulated_metrics.time_to_first_token_ms,
            )
        client = self.metrics_client
        if metrics.latency_ms is not None:
            client.event_loop_latency.record(metrics.latency_ms)
            client.operation_duration.record(metrics.latency_ms / 1000)
        if metrics.time_to_first_token_ms is not None:
            client.model_time_to_first_token.record(metrics.time_to_first_token_ms)

    def add_trace(self, node: TraceNode) -> None:
        """Register a root trace node that does not belong to a cycle."""
        with self._lock:
            self.traces.append(node)

    def reset_usage_metrics(self) -> AgentInvocation:
        """Start a new invocation record. Tool statistics are kept."""
        invocation = AgentInvocation()
        with self._lock:
            self.agent_invocations.append(invocation)
        return invocation

    def get_summary(self) -> dict[str, Any]:
        """A read-only snapshot of everything collected so far."""
        with self._lock:
            total_duration = sum(self.cycle_durations)
            tool_usage = {
                name: {
                    "tool_info": {
                        "tool_use_id": tool_metrics.tool.tool_use_id or "N/A",
                        "name": tool_metrics.tool.name or "unknown",
                        "input_params": tool_metrics.tool.input if tool_metrics.tool.input is not None else {},
                    },
                    "execution_stats": {
                        "call_count": tool_metrics.call_count,
                        "success_count": tool_metrics.success_count,
                        "error_count": tool_metrics.error_count,
                        "total_time": tool_metrics.total_time,
                        "average_time": tool_metrics.average_time,
                        "success_rate": tool_metrics.success_rate,
                    },
                }
                for name, tool_metrics in self.tool_metrics.items()
            }
            return {
                "total_cycles": self.cycle_count,
                "total_duration": total_duration,
                "average_cycle_time": total_duration / self.cycle_count if self.cycle_count else 0.0,
                "tool_usage": tool_usage,
                "traces": [node.to_dict() for node in self.traces],
                "accumulated_usage": self.accumulated_usage.to_dict(),
                "accumulated_metrics": self.accumulated_metrics.model_dump(exclude_none=True),
                "agent_invocations": [
                    {
                        "usage": invocation.usage.to_dict(),
                        "cycles": [
                            {"event_loop_cycle_id": cycle.cycle_id, "usage": cycle.usage.to_dict()}
                            for cycle in invocation.cycles
                        ],
                    }
                    for invocation in self.agent_invocations
                ],
            }


def metrics_to_string(event_loop_metrics: EventLoopMetrics) -> str:
    """Render a human readable report of ``event_loop_metrics``."""
    summary = event_loop_metrics.get_summary()
    lines = ["Event Loop Metrics Summary:"]
    lines.append(
        f"├─ Cycles: total={summary['total_cycles']}, avg_time={summary['average_cycle_time']:.3f}s, "
        f"total_time={summary['total_duration']:.3f}s"
    )

    usage = summary["accumulated_usage"]
    token_parts = [f"in={usage['input_tokens']}", f"out={usage['output_tokens']}", f"total={usage['total_tokens']}"]
    for key in ("cache_read_input_tokens", "cache_write_input_tokens"):
        if usage.get(key):
            token_parts.append(f"{key}={usage[key]}")
    lines.append(f"├─ Tokens: {', '.join(token_parts)}")
    lines.append(f"├─ Latency: {summary['accumulated_metrics'].get('latency_ms', 0.0)}ms")

    lines.append("├─ Tool Usage:")
    for tool_name, tool_data in summary["tool_usage"].items():
        stats = tool_data["execution_stats"]
        lines.append(f"   └─ {tool_name}:")
        lines.append(f"      ├─ Stats: calls={stats['call_count']}, success={stats['success_count']}")
        success_rate = stats["success_rate"] * 100
        lines.append(f"      │         errors={stats['error_count']}, success_rate={success_rate:.1f}%")
        lines.append(f"      └─ Timing: avg={stats['average_time']:.3f}s, total={stats['total_time']:.3f}s")

    lines.append("├─ Execution Trace:")
    for node in summary["traces"]:
        lines.append(format_trace_tree(node, indent=1))
    return "\n".join(lines)
