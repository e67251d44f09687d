# Copyright (c) Microsoft. All rights reserved.

from typing import Any

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from agent_telemetry import (
    TraceContext,
    build_carrier,
    context_from_carrier,
    extract_trace_context,
    inject_trace_context,
    instrument_mcp_client,
    is_instrumented,
)
from agent_telemetry import _propagation
from agent_telemetry.exceptions import ContextPropagationError, InstrumentationError

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"
TRACEPARENT = f"00-{TRACE_ID}-{SPAN_ID}-01"


@pytest.fixture
def remote_span() -> trace.Span:
    return trace.NonRecordingSpan(
        trace.SpanContext(
            trace_id=int(TRACE_ID, 16),
            span_id=int(SPAN_ID, 16),
            is_remote=False,
            trace_flags=trace.TraceFlags(trace.TraceFlags.SAMPLED),
        )
    )


class AsyncSession:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    async def call_tool(self, name: str, arguments: Any = None, **kwargs: Any) -> str:
        self.calls.append((name, arguments))
        return f"called {name}"


class SyncSession:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def call_tool(self, name: str, arguments: Any = None) -> str:
        self.calls.append((name, arguments))
        if name == "fail":
            raise ValueError("tool failed")
        return f"called {name}"


# region Extraction


def test_extract_trace_context(remote_span: trace.Span):
    context = extract_trace_context(remote_span)

    assert context == TraceContext(trace_id=TRACE_ID, span_id=SPAN_ID, trace_flags=1)
    assert context.traceparent == TRACEPARENT


def test_extract_trace_context_from_current_span(remote_span: trace.Span):
    with trace.use_span(remote_span):
        context = extract_trace_context()

    assert context is not None
    assert context.trace_id == TRACE_ID


def test_extract_trace_context_without_span():
    assert extract_trace_context() is None
    assert extract_trace_context(trace.INVALID_SPAN) is None


def test_extract_trace_context_from_sdk_span():
    span = TracerProvider().get_tracer("test").start_span("invoke_agent")

    context = extract_trace_context(span)

    assert context is not None
    assert context.trace_id == trace.format_trace_id(span.get_span_context().trace_id)
    assert context.trace_flags == 1
    span.end()


def test_build_carrier(remote_span: trace.Span):
    assert build_carrier(remote_span) == {"traceparent": TRACEPARENT}
    assert build_carrier(trace.INVALID_SPAN) is None


def test_context_from_carrier():
    context = context_from_carrier({"traceparent": TRACEPARENT, "tracestate": "vendor=value"})

    assert context is not None
    assert context.trace_id == TRACE_ID
    assert context.span_id == SPAN_ID
    assert context.trace_flags == 1
    assert context.trace_state == "vendor=value"


@pytest.mark.parametrize(
    "carrier",
    [{}, {"traceparent": "not-a-traceparent"}, {"traceparent": f"00-{'0' * 32}-{SPAN_ID}-01"}],
)
def test_context_from_invalid_carrier(carrier: dict[str, str]):
    assert context_from_carrier(carrier) is None


# region Injection


def test_inject_into_none():
    assert inject_trace_context(None, {"traceparent": TRACEPARENT}) == {"_meta": {"traceparent": TRACEPARENT}}


def test_inject_into_mapping_does_not_modify_input():
    arguments = {"expression": "2 + 2"}

    result = inject_trace_context(arguments, {"traceparent": TRACEPARENT})

    assert result == {"expression": "2 + 2", "_meta": {"traceparent": TRACEPARENT}}
    assert arguments == {"expression": "2 + 2"}


def test_inject_merges_existing_meta():
    arguments = {"expression": "2 + 2", "_meta": {"progressToken": 1, "traceparent": "stale"}}

    result = inject_trace_context(arguments, {"traceparent": TRACEPARENT})

    assert result["_meta"] == {"progressToken": 1, "traceparent": TRACEPARENT}
    assert arguments["_meta"]["traceparent"] == "stale"


def test_inject_replaces_non_mapping_meta():
    result = inject_trace_context({"_meta": "junk"}, {"traceparent": TRACEPARENT})

    assert result == {"_meta": {"traceparent": TRACEPARENT}}


def test_inject_custom_meta_key():
    assert inject_trace_context({}, {"traceparent": TRACEPARENT}, meta_key="headers") == {
        "headers": {"traceparent": TRACEPARENT}
    }


@pytest.mark.parametrize("arguments", [["2 + 2"], "2 + 2", 4])
def test_inject_leaves_other_arguments_unchanged(arguments: Any):
    assert inject_trace_context(arguments, {"traceparent": TRACEPARENT}) is arguments


def test_inject_rejects_non_mapping_carrier():
    with pytest.raises(ContextPropagationError):
        inject_trace_context({}, TRACEPARENT)  # type: ignore[arg-type]


# region Client instrumentation


async def test_instrument_async_client(remote_span: trace.Span):
    session = instrument_mcp_client(AsyncSession())

    with trace.use_span(remote_span):
        result = await session.call_tool("calculator", arguments={"expression": "2 + 2"})

    assert result == "called calculator"
    assert session.calls == [
        ("calculator", {"expression": "2 + 2", "_meta": {"traceparent": TRACEPARENT}}),
    ]
    assert is_instrumented(session)


async def test_instrument_async_client_positional_arguments(remote_span: trace.Span):
    session = instrument_mcp_client(AsyncSession())

    with trace.use_span(remote_span):
        await session.call_tool("calculator", {"expression": "2 + 2"})

    assert session.calls[0][1]["_meta"] == {"traceparent": TRACEPARENT}


async def test_instrument_async_client_without_arguments(remote_span: trace.Span):
    session = instrument_mcp_client(AsyncSession())

    with trace.use_span(remote_span):
        await session.call_tool("list_files")

    assert session.calls == [("list_files", {"_meta": {"traceparent": TRACEPARENT}})]


async def test_no_injection_without_active_span():
    session = instrument_mcp_client(AsyncSession())
    arguments = {"expression": "2 + 2"}

    await session.call_tool("calculator", arguments=arguments)

    assert session.calls[0][1] is arguments


def test_instrument_sync_client(remote_span: trace.Span):
    session = instrument_mcp_client(SyncSession())

    with trace.use_span(remote_span):
        result = session.call_tool("calculator", {"expression": "2 + 2"})

    assert result == "called calculator"
    assert session.calls[0][1] == {"expression": "2 + 2", "_meta": {"traceparent": TRACEPARENT}}


def test_instrumentation_is_idempotent(remote_span: trace.Span):
    session = instrument_mcp_client(SyncSession())
    wrapper = session.call_tool

    assert instrument_mcp_client(session) is session
    assert session.call_tool is wrapper

    with trace.use_span(remote_span):
        session.call_tool("calculator", {})

    assert len(session.calls) == 1


def test_tool_errors_propagate(remote_span: trace.Span):
    session = instrument_mcp_client(SyncSession())

    with trace.use_span(remote_span), pytest.raises(ValueError):
        session.call_tool("fail", {})

    assert len(session.calls) == 1


def test_injection_failure_falls_back_to_original_arguments(
    monkeypatch: pytest.MonkeyPatch, remote_span: trace.Span
):
    def broken_carrier(span: Any = None) -> dict[str, str]:
        raise RuntimeError("propagator failed")

    monkeypatch.setattr(_propagation, "build_carrier", broken_carrier)
    session = instrument_mcp_client(SyncSession())
    arguments = {"expression": "2 + 2"}

    with trace.use_span(remote_span):
        result = session.call_tool("calculator", arguments)

    assert result == "called calculator"
    assert session.calls[0][1] is arguments


def test_instrument_client_without_method():
    with pytest.raises(InstrumentationError):
        instrument_mcp_client(object())


def test_instrument_client_that_cannot_be_patched():
    class SlottedSession:
        __slots__ = ()

        def call_tool(self, name: str, arguments: Any = None) -> None:
            return None

    with pytest.raises(InstrumentationError):
        instrument_mcp_client(SlottedSession())


def test_instrument_custom_method_name(remote_span: trace.Span):
    class Client:
        def __init__(self) -> None:
            self.received: Any = None

        def invoke(self, params: Any = None) -> None:
            self.received = params

    client = instrument_mcp_client(Client(), "invoke", arguments_name="params", arguments_position=0)

    with trace.use_span(remote_span):
        client.invoke({"city": "Paris"})

    assert client.received == {"city": "Paris", "_meta": {"traceparent": TRACEPARENT}}
