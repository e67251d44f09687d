# Copyright (c) Microsoft. All rights reserved.

import re
from collections.abc import Mapping
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, NonNegativeInt, field_validator

__all__ = [
    "Metrics",
    "StopReason",
    "ToolResultStatus",
    "ToolUse",
    "TraceContext",
    "Usage",
]

_TRACE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
_SPAN_ID_PATTERN = re.compile(r"^[0-9a-f]{16}$")


class TelemetryModel(BaseModel):
    """Immutable base model for telemetry value types."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)


class StopReason(str, Enum):
    """Reasons a model turn can end with."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CONTENT_FILTERED = "content_filtered"
    GUARDRAIL_INTERVENED = "guardrail_intervened"

    def __str__(self) -> str:
        return self.value


class ToolResultStatus(str, Enum):
    """Outcome of a single tool execution."""

    SUCCESS = "success"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


def _add_optional(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)


class Usage(TelemetryModel):
    """Token usage for one or more model calls.

    Cache token counts are optional; an absent count contributes 0 when summed,
    and stays absent only if it was absent on both sides.

    Examples:
        .. code-block:: python

            total = Usage(input_tokens=10, output_tokens=20, total_tokens=30) + Usage(
                input_tokens=20, output_tokens=40, total_tokens=60
            )
            assert total.total_tokens == 90
    """

    model_config = ConfigDict(extra="forbid")

    input_tokens: NonNegativeInt = Field(default=0, alias="inputTokens")
    output_tokens: NonNegativeInt = Field(default=0, alias="outputTokens")
    total_tokens: NonNegativeInt = Field(default=0, alias="totalTokens")
    cache_read_input_tokens: NonNegativeInt | None = Field(default=None, alias="cacheReadTokens")
    cache_write_input_tokens: NonNegativeInt | None = Field(default=None, alias="cacheWriteTokens")

    @classmethod
    def empty(cls) -> "Usage":
        """The additive identity."""
        return cls()

    @classmethod
    def coerce(cls, value: "Usage | Mapping[str, Any] | None") -> "Usage | None":
        """Accept a Usage, a plain mapping of token counts, or None.

        Mappings may use either the snake_case field names or the camelCase
        names (``inputTokens``, ``cacheReadTokens``, ...). Unknown keys are rejected.
        """
        if value is None or isinstance(value, Usage):
            return value
        return cls.model_validate(dict(value))

    def __add__(self, other: object) -> "Usage":
        if other is None:
            return self
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cache_read_input_tokens=_add_optional(self.cache_read_input_tokens, other.cache_read_input_tokens),
            cache_write_input_tokens=_add_optional(self.cache_write_input_tokens, other.cache_write_input_tokens),
        )

    def __radd__(self, other: object) -> "Usage":
        # allows sum() with its default start value of 0
        if other == 0 or other is None:
            return self
        return self.__add__(other)

    def to_dict(self) -> dict[str, int]:
        """Plain dict without the absent cache counts."""
        return self.model_dump(exclude_none=True)


class Metrics(TelemetryModel):
    """Timing measurements reported by a model provider."""

    model_config = ConfigDict(extra="forbid")

    latency_ms: NonNegativeFloat | None = Field(default=None, alias="latencyMs")
    time_to_first_token_ms: NonNegativeFloat | None = Field(default=None, alias="timeToFirstTokenMs")

    @classmethod
    def coerce(cls, value: "Metrics | Mapping[str, Any] | None") -> "Metrics | None":
        if value is None or isinstance(value, Metrics):
            return value
        return cls.model_validate(dict(value))


class ToolUse(TelemetryModel):
    """A tool invocation requested by the model."""

    name: str | None = None
    tool_use_id: str | None = None
    input: Any = None


class TraceContext(TelemetryModel):
    """A serializable reference to a span in a distributed trace."""

    trace_id: str = Field(description="32 lowercase hex characters.")
    span_id: str = Field(description="16 lowercase hex characters.")
    trace_flags: int = Field(default=0, ge=0, le=255)
    trace_state: str | None = None

    @field_validator("trace_id")
    @classmethod
    def _validate_trace_id(cls, value: str) -> str:
        value = value.lower()
        if not _TRACE_ID_PATTERN.match(value) or int(value, 16) == 0:
            raise ValueError("trace_id must be 32 hex characters and not all zero")
        return value

    @field_validator("span_id")
    @classmethod
    def _validate_span_id(cls, value: str) -> str:
        value = value.lower()
        if not _SPAN_ID_PATTERN.match(value) or int(value, 16) == 0:
            raise ValueError("span_id must be 16 hex characters and not all zero")
        return value

    @property
    def traceparent(self) -> str:
        """The W3C ``traceparent`` header value."""
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags:02x}"

    def to_span_context(self) -> trace.SpanContext:
        """Build a remote OpenTelemetry span context from this reference."""
        return trace.SpanContext(
            trace_id=int(self.trace_id, 16),
            span_id=int(self.span_id, 16),
            is_remote=True,
            trace_flags=trace.TraceFlags(self.trace_flags),
            trace_state=trace.TraceState.from_header([self.trace_state]) if self.trace_state else trace.TraceState(),
        )

    def to_carrier(self) -> dict[str, str]:
        """Serialize into W3C trace-context headers.

        Returns:
            A dict with ``traceparent`` and, when a trace state is present, ``tracestate``.
        """
        carrier: dict[str, str] = {}
        span = trace.NonRecordingSpan(self.to_span_context())
        TraceContextTextMapPropagator().inject(carrier, context=trace.set_span_in_context(span))
        return carrier
