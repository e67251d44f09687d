# Copyright (c) Microsoft. All rights reserved.

import functools
import inspect
from collections.abc import Mapping
from typing import Any, Final

from opentelemetry import trace
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from ._logging import get_logger
from ._types import TraceContext
from .exceptions import ContextPropagationError, InstrumentationError

__all__ = [
    "build_carrier",
    "context_from_carrier",
    "extract_trace_context",
    "inject_trace_context",
    "instrument_mcp_client",
    "is_instrumented",
]

logger = get_logger("agent_telemetry.propagation")

META_KEY: Final[str] = "_meta"
MCP_CLIENT_INSTRUMENTED_MARKER: Final[str] = "__agent_telemetry_mcp_instrumented__"


def extract_trace_context(span: trace.Span | None = None) -> TraceContext | None:
    """Capture the identity of ``span``, or of the current span, as a :class:`TraceContext`.

    Returns:
        None when there is no span with a valid trace id.
    """
    span = span if span is not None else trace.get_current_span()
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return None
    return TraceContext(
        trace_id=trace.format_trace_id(span_context.trace_id),
        span_id=trace.format_span_id(span_context.span_id),
        trace_flags=int(span_context.trace_flags),
        trace_state=span_context.trace_state.to_header() or None,
    )


def build_carrier(span: trace.Span | None = None) -> dict[str, str] | None:
    """Serialize the trace context of ``span`` (or the current span) into W3C headers."""
    trace_context = extract_trace_context(span)
    return trace_context.to_carrier() if trace_context is not None else None


def context_from_carrier(carrier: Mapping[str, str]) -> TraceContext | None:
    """Parse W3C trace-context headers received from a caller.

    Returns:
        None when the carrier holds no valid ``traceparent``.
    """
    otel_context = TraceContextTextMapPropagator().extract(dict(carrier))
    return extract_trace_context(trace.get_current_span(otel_context))


def inject_trace_context(arguments: Any, carrier: Mapping[str, str], meta_key: str = META_KEY) -> Any:
    """Attach ``carrier`` to tool call ``arguments`` under ``meta_key``.

    Mappings get a new dict with the carrier merged into any existing ``meta_key``
    entry, ``None`` becomes ``{meta_key: carrier}``, and anything else (lists,
    primitives) is returned unchanged. The input is never modified.

    Raises:
        ContextPropagationError: ``carrier`` is not a mapping.

    Examples:
        .. code-block:: python

            inject_trace_context({"city": "Paris"}, {"traceparent": "00-...-01"})
            # {"city": "Paris", "_meta": {"traceparent": "00-...-01"}}
    """
    if not isinstance(carrier, Mapping):
        raise ContextPropagationError(f"Trace context carrier must be a mapping, got {type(carrier).__name__}.")
    if arguments is None:
        return {meta_key: dict(carrier)}
    if isinstance(arguments, Mapping):
        existing = arguments.get(meta_key)
        meta = {**existing, **carrier} if isinstance(existing, Mapping) else dict(carrier)
        return {**arguments, meta_key: meta}
    return arguments


def _with_trace_context(
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
    arguments_name: str,
    arguments_position: int,
) -> tuple[tuple[Any, ...], dict[str, Any]]:
    carrier = build_carrier()
    if carrier is None:
        logger.debug("No active span, calling the tool without trace context.")
        return args, kwargs
    if arguments_name in kwargs:
        return args, {**kwargs, arguments_name: inject_trace_context(kwargs[arguments_name], carrier)}
    if len(args) > arguments_position:
        new_args = list(args)
        new_args[arguments_position] = inject_trace_context(args[arguments_position], carrier)
        return tuple(new_args), kwargs
    return args, {**kwargs, arguments_name: inject_trace_context(None, carrier)}


def instrument_mcp_client(
    client: Any,
    method_name: str = "call_tool",
    *,
    arguments_name: str = "arguments",
    arguments_position: int = 1,
) -> Any:
    """Propagate the current trace context through the tool calls of an MCP style client.

    ``client.<method_name>`` is replaced on the instance by a wrapper that adds the
    W3C trace context to the call's arguments under ``_meta``. The method may be
    sync or async. Instrumenting the same client twice is a no-op.

    If the trace context cannot be added, the original method is called with the
    original arguments. Errors raised by the tool call itself propagate unchanged
    and the call is never repeated.

    Args:
        client: The client to instrument, e.g. an ``mcp.ClientSession``.
        method_name: Name of the tool call method.

    Keyword Args:
        arguments_name: Keyword name of the tool arguments parameter.
        arguments_position: Position of the tool arguments parameter when passed positionally.

    Returns:
        The same client.

    Raises:
        InstrumentationError: The client has no such method or cannot be patched.
    """
    if is_instrumented(client):
        logger.warning("MCP client %s is already instrumented, skipping.", type(client).__name__)
        return client

    original = getattr(client, method_name, None)
    if not callable(original):
        raise InstrumentationError(f"{type(client).__name__} has no callable '{method_name}' to instrument.")

    def _prepare(args: tuple[Any, ...], kwargs: dict[str, Any]) -> tuple[tuple[Any, ...], dict[str, Any]]:
        try:
            return _with_trace_context(args, kwargs, arguments_name, arguments_position)
        except Exception:
            logger.warning("Failed to inject trace context into the tool call, calling it unchanged.", exc_info=True)
            return args, kwargs

    if inspect.iscoroutinefunction(original):

        @functools.wraps(original)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            call_args, call_kwargs = _prepare(args, kwargs)
            return await original(*call_args, **call_kwargs)

    else:

        @functools.wraps(original)
        def wrapper(*args: Any, **kwargs: Any) -> Any:  # type: ignore[misc]
            call_args, call_kwargs = _prepare(args, kwargs)
            return original(*call_args, **call_kwargs)

    try:
        setattr(client, method_name, wrapper)
        setattr(client, MCP_CLIENT_INSTRUMENTED_MARKER, True)
    except (AttributeError, TypeError) as exc:
        raise InstrumentationError(f"Unable to patch '{method_name}' on {type(client).__name__}.", exc) from exc
    logger.debug("Instrumented %s.%s with trace context propagation.", type(client).__name__, method_name)
    return client


def is_instrumented(client: Any) -> bool:
    """Check if ``client`` was instrumented by :func:`instrument_mcp_client`."""
    return getattr(client, MCP_CLIENT_INSTRUMENTED_MARKER, False) is True
