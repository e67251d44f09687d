# Copyright (c) Microsoft. All rights reserved.

from typing import Any

from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from agent_telemetry import (
    AfterToolsEvent,
    AgentInvocationRecord,
    EventLoopMetrics,
    HookRegistry,
    OtelSpanBackend,
    OtelAttr,
    TelemetryHooks,
    Usage,
    metrics_to_string,
    register_telemetry_hooks,
)


class InvocationRecorder:
    def __init__(self) -> None:
        self.records: list[AgentInvocationRecord] = []

    def record_agent_invocation(self, record: AgentInvocationRecord) -> None:
        self.records.append(record)


def test_register_telemetry_hooks_end_to_end(
    span_backend: OtelSpanBackend,
    span_exporter: InMemorySpanExporter,
    event_loop_metrics: EventLoopMetrics,
    calculator_scenario: Any,
):
    registry = HookRegistry()
    recorder = InvocationRecorder()
    hooks = register_telemetry_hooks(
        registry,
        span_backend=span_backend,
        metrics_backend=recorder,
        event_loop_metrics=event_loop_metrics,
    )

    calculator_scenario(registry)

    spans = span_exporter.get_finished_spans()
    assert [span.name for span in spans].count("execute_event_loop_cycle") == 2
    agent_span = next(span for span in spans if span.name == "invoke_agent math_agent")
    assert agent_span.attributes[OtelAttr.TOTAL_TOKENS] == 90

    assert len(recorder.records) == 1
    assert recorder.records[0].cycle_count == 2
    assert recorder.records[0].usage == Usage(input_tokens=30, output_tokens=60, total_tokens=90)

    assert hooks.event_loop_metrics is event_loop_metrics
    assert hooks.tracing.accumulated_usage == hooks.metrics.accumulated_usage
    assert "calculator" in metrics_to_string(hooks.event_loop_metrics)


def test_register_telemetry_hooks_is_idempotent(span_backend: OtelSpanBackend, event_loop_metrics: EventLoopMetrics):
    registry = HookRegistry()

    first = register_telemetry_hooks(registry, span_backend=span_backend, event_loop_metrics=event_loop_metrics)
    second = register_telemetry_hooks(registry, span_backend=span_backend)

    assert isinstance(first, TelemetryHooks)
    assert second is first


def test_register_telemetry_hooks_without_cycles(
    span_backend: OtelSpanBackend,
    span_exporter: InMemorySpanExporter,
    event_loop_metrics: EventLoopMetrics,
    calculator_scenario: Any,
):
    registry = HookRegistry()
    hooks = register_telemetry_hooks(
        registry, span_backend=span_backend, event_loop_metrics=event_loop_metrics, enable_cycle_spans=False
    )

    calculator_scenario(registry)

    assert not hooks.metrics.enable_cycle_metrics
    assert not registry.has_callbacks(AfterToolsEvent)
    assert "execute_event_loop_cycle" not in [span.name for span in span_exporter.get_finished_spans()]
    assert event_loop_metrics.cycle_count == 0


def test_register_telemetry_hooks_default_backend(event_loop_metrics: EventLoopMetrics):
    hooks = register_telemetry_hooks(HookRegistry(), event_loop_metrics=event_loop_metrics)

    assert isinstance(hooks.tracing.backend, OtelSpanBackend)
    assert hooks.metrics.backend is None
