# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Callable, Generator, Mapping
from typing import Any

from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from pytest import MonkeyPatch, fixture

from agent_telemetry import (
    AfterInvocationEvent,
    AfterModelCallEvent,
    AfterToolCallEvent,
    AfterToolsEvent,
    BeforeInvocationEvent,
    BeforeModelCallEvent,
    BeforeToolCallEvent,
    EventLoopMetrics,
    HookContext,
    HookRegistry,
    InvocationResult,
    Metrics,
    MetricsClient,
    OtelSpanBackend,
    SpanEnd,
    StopReason,
    ToolResultStatus,
    Usage,
    observability,
)

SETTINGS_ENV_VARS = [
    "ENABLE_INSTRUMENTATION",
    "ENABLE_SENSITIVE_DATA",
    "ENABLE_CONSOLE_EXPORTERS",
    "ENABLE_CYCLE_SPANS",
    "OTEL_SEMCONV_STABILITY_OPT_IN",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
    "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT",
    "OTEL_EXPORTER_OTLP_LOGS_ENDPOINT",
    "OTEL_EXPORTER_OTLP_PROTOCOL",
    "OTEL_EXPORTER_OTLP_HEADERS",
    "OTEL_SERVICE_NAME",
    "OTEL_SERVICE_VERSION",
    "OTEL_RESOURCE_ATTRIBUTES",
]


@fixture
def enable_instrumentation(request: Any) -> bool:
    """Fixture that returns a boolean indicating if Otel is enabled."""
    return request.param if hasattr(request, "param") else True


@fixture
def enable_sensitive_data(request: Any) -> bool:
    """Fixture that returns a boolean indicating if sensitive data is enabled."""
    return request.param if hasattr(request, "param") else True


@fixture(autouse=True)
def observability_settings(
    monkeypatch: MonkeyPatch, enable_instrumentation: bool, enable_sensitive_data: bool
) -> observability.ObservabilitySettings:
    """Replace the global settings with a fresh instance built from a clean environment."""
    for key in SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ENABLE_INSTRUMENTATION", str(enable_instrumentation))
    if not enable_instrumentation:
        # we overwrite sensitive data for tests
        enable_sensitive_data = False
    monkeypatch.setenv("ENABLE_SENSITIVE_DATA", str(enable_sensitive_data))

    settings = observability.ObservabilitySettings(env_file_path="test.env")
    monkeypatch.setattr(observability, "OBSERVABILITY_SETTINGS", settings)
    return settings


@fixture
def span_exporter() -> Generator[InMemorySpanExporter]:
    exporter = InMemorySpanExporter()
    yield exporter
    exporter.clear()


@fixture
def tracer_provider(span_exporter: InMemorySpanExporter) -> TracerProvider:
    """A tracer provider local to the test, the global one can only be set once per process."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@fixture
def span_backend(tracer_provider: TracerProvider) -> OtelSpanBackend:
    return OtelSpanBackend(tracer_provider.get_tracer("agent_telemetry.tests"))


@fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@fixture
def metrics_client(metric_reader: InMemoryMetricReader) -> MetricsClient:
    meter_provider = MeterProvider(metric_readers=[metric_reader])
    return MetricsClient(meter_provider.get_meter("agent_telemetry.tests"))


@fixture
def event_loop_metrics(metrics_client: MetricsClient) -> EventLoopMetrics:
    return EventLoopMetrics(metrics_client)


# region Agent loop scenarios

USER_MESSAGE = {"role": "user", "content": [{"text": "What is 2 + 2?"}]}
TOOL_USE_MESSAGE = {
    "role": "assistant",
    "content": [{"toolUse": {"toolUseId": "t1", "name": "calculator", "input": {"expression": "2 + 2"}}}],
}
TOOL_RESULT_MESSAGE = {"role": "user", "content": [{"toolResult": {"toolUseId": "t1", "content": [{"text": "4"}]}}]}
FINAL_MESSAGE = {"role": "assistant", "content": [{"text": "2 + 2 is 4."}]}
FIRST_USAGE = Usage(input_tokens=10, output_tokens=20, total_tokens=30)
SECOND_USAGE = Usage(input_tokens=20, output_tokens=40, total_tokens=60)


def run_calculator_scenario(registry: HookRegistry) -> HookContext:
    """Drive one invocation: a tool call to "calculator" in cycle 1 and a final answer in cycle 2.

    Returns:
        The context of the tool call's before event.
    """
    registry.invoke_callbacks(
        BeforeInvocationEvent(
            agent_name="math_agent",
            agent_id="agent-1",
            model_id="test-model",
            tools=[{"name": "calculator", "description": "Evaluates arithmetic."}],
            input_messages=[USER_MESSAGE],
            system_prompt="You are good at math.",
        )
    )
    registry.invoke_callbacks(BeforeModelCallEvent(messages=[USER_MESSAGE]))
    registry.invoke_callbacks(
        AfterModelCallEvent(
            stop_reason=StopReason.TOOL_USE,
            message=TOOL_USE_MESSAGE,
            usage=FIRST_USAGE,
            metrics=Metrics(latency_ms=120.0, time_to_first_token_ms=40.0),
        )
    )
    tool_context = registry.invoke_callbacks(
        BeforeToolCallEvent(tool_name="calculator", tool_use_id="t1", input={"expression": "2 + 2"})
    )
    registry.invoke_callbacks(
        AfterToolCallEvent(tool_use_id="t1", status=ToolResultStatus.SUCCESS, content=[{"text": "4"}])
    )
    registry.invoke_callbacks(AfterToolsEvent(message=TOOL_RESULT_MESSAGE))
    registry.invoke_callbacks(BeforeModelCallEvent(messages=[USER_MESSAGE, TOOL_USE_MESSAGE, TOOL_RESULT_MESSAGE]))
    registry.invoke_callbacks(
        AfterModelCallEvent(
            stop_reason=StopReason.END_TURN,
            message=FINAL_MESSAGE,
            usage=SECOND_USAGE,
            metrics=Metrics(latency_ms=80.0),
        )
    )
    registry.invoke_callbacks(
        AfterInvocationEvent(result=InvocationResult(message=FINAL_MESSAGE, stop_reason=StopReason.END_TURN))
    )
    return tool_context


@fixture
def calculator_scenario() -> Callable[[HookRegistry], HookContext]:
    return run_calculator_scenario


class RecordingSpanBackend:
    """Span backend keeping every call, spans are plain dict handles."""

    def __init__(self) -> None:
        self.started: list[dict[str, Any]] = []
        self.ended: list[tuple[dict[str, Any], SpanEnd]] = []
        self.log: list[tuple[str, str]] = []

    def start_span(self, name: str, parent: Any, attributes: Mapping[str, Any]) -> dict[str, Any]:
        handle = {"name": name, "parent": parent, "attributes": dict(attributes)}
        self.started.append(handle)
        self.log.append(("start", name))
        return handle

    def end_span(self, span: dict[str, Any], end: SpanEnd) -> None:
        self.ended.append((span, end))
        self.log.append(("end", span["name"]))

    def named(self, name: str) -> list[dict[str, Any]]:
        return [span for span in self.started if span["name"] == name]

    def ends_of(self, span: dict[str, Any]) -> list[SpanEnd]:
        return [end for ended, end in self.ended if ended is span]


@fixture
def recording_backend() -> RecordingSpanBackend:
    return RecordingSpanBackend()
