# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Mapping
from time import time_ns
from typing import Any

from opentelemetry import trace

from ._backends import SpanEnd, SpanStatus
from ._logging import get_logger
from ._serialization import serialize
from .observability import capture_exception, telemetry_tracer

__all__ = ["OtelSpanBackend"]

logger = get_logger("agent_telemetry.tracer")

_PRIMITIVES = (str, bool, int, float)


def _to_attribute_value(value: Any) -> Any:
    """Coerce a value into something OpenTelemetry accepts as an attribute, or None to drop it."""
    if value is None:
        return None
    if isinstance(value, _PRIMITIVES):
        return value
    if isinstance(value, (list, tuple)) and value and len({type(item) for item in value}) == 1:
        if isinstance(value[0], _PRIMITIVES):
            return list(value)
    return serialize(value)


def _to_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in attributes.items():
        converted = _to_attribute_value(value)
        if converted is not None:
            result[str(key)] = converted
    return result


class OtelSpanBackend:
    """Span backend that opens OpenTelemetry spans.

    Without an explicit tracer, the agent telemetry tracer is used when
    instrumentation is enabled and a ``NoOpTracer`` otherwise, so callers see
    the same control flow either way.

    Examples:
        .. code-block:: python

            from opentelemetry.sdk.trace import TracerProvider

            backend = OtelSpanBackend(TracerProvider().get_tracer("my_agent"))
    """

    def __init__(self, tracer: trace.Tracer | None = None) -> None:
        self._tracer = tracer

    @property
    def tracer(self) -> trace.Tracer:
        return self._tracer if self._tracer is not None else telemetry_tracer()

    def start_span(self, name: str, parent: Any, attributes: Mapping[str, Any]) -> trace.Span:
        """Open a span, parented to ``parent`` or to the current context when ``parent`` is None."""
        context = trace.set_span_in_context(parent) if isinstance(parent, trace.Span) else None
        return self.tracer.start_span(
            name,
            context=context,
            kind=trace.SpanKind.INTERNAL,
            attributes=_to_attributes(attributes),
        )

    def end_span(self, span: Any, end: SpanEnd) -> None:
        """Set the final attributes, events and status on ``span`` and end it."""
        if not isinstance(span, trace.Span):
            logger.debug("Ignoring end_span for a non OpenTelemetry span handle: %r", span)
            return
        if not span.is_recording():
            return
        if end.attributes:
            span.set_attributes(_to_attributes(end.attributes))
        for event in end.events:
            span.add_event(event.name, attributes=_to_attributes(event.attributes), timestamp=time_ns())
        if end.error is not None:
            capture_exception(span, end.error, timestamp=time_ns())
        elif end.status == SpanStatus.ERROR:
            span.set_status(trace.StatusCode.ERROR)
        elif end.status == SpanStatus.OK:
            span.set_status(trace.StatusCode.OK)
        span.end()
