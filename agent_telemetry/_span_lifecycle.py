# Copyright (c) Microsoft. All rights reserved.

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Final

from . import observability
from ._backends import SpanEnd, SpanEvent, SpanStatus, get_backend_method
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
from ._serialization import serialize, to_jsonable
from ._types import Metrics, StopReason, ToolResultStatus, Usage
from .observability import OtelAttr

if TYPE_CHECKING:  # pragma: no cover
    from ._backends import SpanBackend

__all__ = ["TracingHookProvider"]

logger = get_logger("agent_telemetry.tracing")

UNKNOWN_TOOL_USE_ID: Final[str] = "unknown"


def _coerce_reported(model: "type[Usage] | type[Metrics]", value: Any) -> Any:
    try:
        return model.coerce(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s reported by the agent loop.", model.__name__, exc_info=True)
        return None


# region Message helpers


def _field(value: Any, name: str, default: Any = None) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, default)
    return getattr(value, name, default)


def _message_role(message: Any) -> str:
    role = _field(message, "role")
    return str(getattr(role, "value", role)) if role else "assistant"


def _message_content(message: Any) -> Any:
    if isinstance(message, str):
        return [message]
    content = _field(message, "content")
    return message if content is None else content


def _to_otel_part(block: Any) -> dict[str, Any]:
    """Create an otel representation of a content block."""
    if isinstance(block, str):
        return {"type": "text", "content": block}
    block_type = _field(block, "type")
    if block_type is None and isinstance(block, Mapping):
        block_type = next((key for key in ("text", "toolUse", "toolResult", "reasoningContent") if key in block), None)
    match block_type:
        case "text":
            text = _field(block, "text")
            return {"type": "text", "content": text if text is not None else _field(block, "content")}
        case "reasoning" | "reasoningContent":
            reasoning = _field(block, "text") or _field(block, "reasoningContent")
            return {"type": "reasoning", "content": to_jsonable(reasoning)}
        case "tool_use" | "toolUse":
            tool_use = _field(block, "toolUse", block)
            return {
                "type": "tool_call",
                "id": _field(tool_use, "tool_use_id") or _field(tool_use, "toolUseId"),
                "name": _field(tool_use, "name"),
                "arguments": to_jsonable(_field(tool_use, "input")),
            }
        case "tool_result" | "toolResult":
            tool_result = _field(block, "toolResult", block)
            return {
                "type": "tool_call_response",
                "id": _field(tool_result, "tool_use_id") or _field(tool_result, "toolUseId"),
                "response": to_jsonable(_field(tool_result, "content")),
            }
        case _:
            # GenericPart: type is required, anything else is allowed
            part = to_jsonable(block)
            if isinstance(part, dict):
                part.setdefault("type", str(block_type) if block_type else "unknown")
                return part
            return {"type": "unknown", "content": part}


def _to_otel_message(message: Any, finish_reason: Any = None) -> dict[str, Any]:
    content = _message_content(message)
    blocks = content if isinstance(content, (list, tuple)) else [content]
    otel_message: dict[str, Any] = {"role": _message_role(message), "parts": [_to_otel_part(b) for b in blocks]}
    if finish_reason is not None:
        otel_message["finish_reason"] = str(finish_reason)
    return otel_message


def _tool_name(tool: Any) -> str:
    if isinstance(tool, str):
        return tool
    name = _field(tool, "name") or _field(tool, "tool_name")
    return str(name) if name else type(tool).__name__


def _usage_attributes(usage: Usage) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        OtelAttr.PROMPT_TOKENS: usage.input_tokens,
        OtelAttr.INPUT_TOKENS: usage.input_tokens,
        OtelAttr.COMPLETION_TOKENS: usage.output_tokens,
        OtelAttr.OUTPUT_TOKENS: usage.output_tokens,
        OtelAttr.TOTAL_TOKENS: usage.total_tokens,
    }
    if usage.cache_read_input_tokens is not None:
        attributes[OtelAttr.CACHE_READ_INPUT_TOKENS] = usage.cache_read_input_tokens
    if usage.cache_write_input_tokens is not None:
        attributes[OtelAttr.CACHE_WRITE_INPUT_TOKENS] = usage.cache_write_input_tokens
    return attributes


def _metrics_attributes(metrics: Metrics | None) -> dict[str, Any]:
    if metrics is None:
        return {}
    attributes: dict[str, Any] = {}
    if metrics.time_to_first_token_ms is not None:
        attributes[OtelAttr.TIME_TO_FIRST_TOKEN] = metrics.time_to_first_token_ms
    if metrics.latency_ms is not None:
        attributes[OtelAttr.REQUEST_DURATION] = metrics.latency_ms
    return attributes


# region Provider


class TracingHookProvider:
    """Turns agent lifecycle events into a nested tree of spans.

    The resulting hierarchy for one invocation is::

        invoke_agent {agent_name}
        └── execute_event_loop_cycle     (one per loop iteration, optional)
            ├── chat                     (one per model call)
            └── execute_tool {tool_name} (any number, possibly open concurrently)

    A cycle ends either when the model answers without requesting a tool, or
    when all tool calls of the turn have completed (``AfterToolsEvent``). With
    cycle spans disabled the model and tool spans hang directly off the agent span.

    All handlers are defensive: backend failures and out-of-order events are
    logged and never raised into the agent loop. Without a backend every
    handler still keeps its bookkeeping (usage, cycle counter) but opens no spans.

    Args:
        backend: The span backend, see :class:`~agent_telemetry.OtelSpanBackend`.

    Keyword Args:
        enable_cycle_spans: Open a span per loop iteration. Defaults to the ENABLE_CYCLE_SPANS setting.
        capture_content: Record prompts, messages and tool payloads. Defaults to the
            sensitive data setting.
        use_latest_conventions: Use ``gen_ai.provider.name`` and operation details events.
            Defaults to the OTEL_SEMCONV_STABILITY_OPT_IN setting.
        include_tool_definitions: Record full tool definitions on the agent span.
            Defaults to the OTEL_SEMCONV_STABILITY_OPT_IN setting.
        provider_name: Value of the provider (or legacy system) attribute.
        custom_attributes: Attributes added to every span.

    Examples:
        .. code-block:: python

            registry = HookRegistry()
            tracing = TracingHookProvider(OtelSpanBackend())
            registry.add_hook(tracing)
    """

    def __init__(
        self,
        backend: "SpanBackend | None" = None,
        *,
        enable_cycle_spans: bool | None = None,
        capture_content: bool | None = None,
        use_latest_conventions: bool | None = None,
        include_tool_definitions: bool | None = None,
        provider_name: str = OtelAttr.AGENT_TELEMETRY_GEN_AI_SYSTEM,
        custom_attributes: Mapping[str, Any] | None = None,
    ) -> None:
        settings = observability.OBSERVABILITY_SETTINGS
        self.backend = backend
        self.enable_cycle_spans = settings.enable_cycle_spans if enable_cycle_spans is None else enable_cycle_spans
        self.capture_content = settings.SENSITIVE_DATA_ENABLED if capture_content is None else capture_content
        self.use_latest_conventions = (
            settings.USE_LATEST_CONVENTIONS if use_latest_conventions is None else use_latest_conventions
        )
        self.include_tool_definitions = (
            settings.INCLUDE_TOOL_DEFINITIONS if include_tool_definitions is None else include_tool_definitions
        )
        self.provider_name = str(provider_name)
        self.custom_attributes = dict(custom_attributes or {})

        self._start_span = get_backend_method(backend, "start_span")
        self._end_span = get_backend_method(backend, "end_span")
        if self._start_span is not None and self._end_span is None:
            logger.warning(
                "Span backend %s implements start_span but not end_span, spans will never be closed.",
                type(backend).__name__,
            )

        self._invocation_active = False
        self._reset_state()

    def _reset_state(self) -> None:
        self._agent_span: Any = None
        self._cycle_span: Any = None
        self._cycle_open = False
        self._cycle_count = 0
        self._cycle_usage = Usage.empty()
        self._model_span: Any = None
        self._model_open = False
        self._model_id: str | None = None
        self._tool_spans: dict[str, Any] = {}
        self._accumulated_usage = Usage.empty()

    def register_hooks(self, registry: HookRegistry) -> None:
        """Subscribe the lifecycle handlers to ``registry``."""
        registry.add_callback(BeforeInvocationEvent, self.on_before_invocation)
        registry.add_callback(BeforeModelCallEvent, self.on_before_model_call)
        registry.add_callback(AfterModelCallEvent, self.on_after_model_call)
        registry.add_callback(BeforeToolCallEvent, self.on_before_tool_call)
        registry.add_callback(AfterToolCallEvent, self.on_after_tool_call)
        if self.enable_cycle_spans:
            registry.add_callback(AfterToolsEvent, self.on_after_tools)
        registry.add_callback(AfterInvocationEvent, self.on_after_invocation)

    @property
    def accumulated_usage(self) -> Usage:
        """Usage summed over all model calls of the current invocation."""
        return self._accumulated_usage

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def open_tool_call_ids(self) -> list[str]:
        return list(self._tool_spans)

    @property
    def has_open_spans(self) -> bool:
        return self._invocation_active or self._cycle_open or self._model_open or bool(self._tool_spans)

    # region Backend calls

    def _start(self, name: str, parent: Any, attributes: Mapping[str, Any]) -> Any:
        if self._start_span is None:
            return None
        try:
            return self._start_span(name, parent, {**attributes, **self.custom_attributes})
        except Exception:
            logger.warning("Failed to start span '%s'", name, exc_info=True)
            return None

    def _end(self, span: Any, end: SpanEnd) -> None:
        if span is None or self._end_span is None:
            return
        try:
            self._end_span(span, end)
        except Exception:
            logger.warning("Failed to end span", exc_info=True)

    def _operation_attributes(self, operation: str) -> dict[str, Any]:
        provider_key = OtelAttr.PROVIDER_NAME if self.use_latest_conventions else OtelAttr.SYSTEM
        return {OtelAttr.OPERATION: operation, provider_key: self.provider_name}

    def _output_events(self, messages: Iterable[Any], legacy_event: str, finish_reason: Any = None) -> list[SpanEvent]:
        """Build the span events describing output messages, in the configured convention."""
        if not self.capture_content:
            return []
        messages = [message for message in messages if message is not None]
        if not messages:
            return []
        if self.use_latest_conventions:
            return [
                SpanEvent(
                    OtelAttr.OPERATION_DETAILS,
                    {OtelAttr.OUTPUT_MESSAGES: serialize([_to_otel_message(m, finish_reason) for m in messages])},
                )
            ]
        events = []
        for message in messages:
            attributes: dict[str, Any] = {"content": serialize(_message_content(message))}
            if finish_reason is not None:
                attributes["finish_reason"] = str(finish_reason)
            events.append(SpanEvent(legacy_event, attributes))
        return events

    def _close_cycle(
        self,
        *,
        message: Any = None,
        tool_result_message: Any = None,
        error: BaseException | None = None,
    ) -> None:
        span = self._cycle_span
        self._cycle_span = None
        self._cycle_open = False
        events = self._output_events([message], OtelAttr.ASSISTANT_MESSAGE)
        if tool_result_message is not None:
            events += self._output_events([tool_result_message], OtelAttr.TOOL_MESSAGE)
        self._end(
            span,
            SpanEnd(
                status=SpanStatus.ERROR if error is not None else SpanStatus.OK,
                error=error,
                attributes=_usage_attributes(self._cycle_usage),
                events=events,
            ),
        )

    def _close_dangling_spans(self, error: BaseException | None) -> None:
        """Close child spans that are still open when the invocation ends, children first."""
        status = SpanStatus.ERROR if error is not None else SpanStatus.UNSET
        for tool_use_id, span in list(self._tool_spans.items()):
            logger.warning("Tool call '%s' was still open when the invocation ended.", tool_use_id)
            self._end(span, SpanEnd(status=status, error=error))
        self._tool_spans.clear()
        if self._model_open:
            logger.warning("Model call was still open when the invocation ended.")
            self._end(self._model_span, SpanEnd(status=status, error=error))
            self._model_span = None
            self._model_open = False
        if self._cycle_open:
            self._close_cycle(error=error)

    # region Handlers

    @guarded_callback(logger)
    def on_before_invocation(self, event: BeforeInvocationEvent, context: HookContext | None = None) -> None:
        """Reset all per-invocation state and open the agent span."""
        if self._invocation_active:
            # spans of an abandoned invocation are left to the backend
            logger.warning(
                "Starting a new invocation while the previous one was never completed, its open spans are orphaned."
            )
        self._reset_state()
        self._invocation_active = True
        self._model_id = event.model_id

        attributes = self._operation_attributes(OtelAttr.AGENT_INVOKE_OPERATION)
        attributes[OtelAttr.AGENT_NAME] = event.agent_name
        if event.agent_id:
            attributes[OtelAttr.AGENT_ID] = event.agent_id
        if event.model_id:
            attributes[OtelAttr.REQUEST_MODEL] = event.model_id
        if event.tools:
            attributes[OtelAttr.AGENT_TOOLS] = serialize([_tool_name(tool) for tool in event.tools])
            if self.include_tool_definitions:
                attributes[OtelAttr.TOOL_DEFINITIONS] = serialize(list(event.tools))
        if self.capture_content:
            if event.system_prompt:
                attributes[OtelAttr.SYSTEM_PROMPT] = event.system_prompt
            if event.input_messages:
                attributes[OtelAttr.INPUT_MESSAGES] = serialize([_to_otel_message(m) for m in event.input_messages])
        self._agent_span = self._start(f"{OtelAttr.AGENT_INVOKE_OPERATION} {event.agent_name}", None, attributes)

    @guarded_callback(logger)
    def on_before_model_call(self, event: BeforeModelCallEvent, context: HookContext | None = None) -> None:
        """Open a cycle span if none is open, then the model span."""
        if not self._invocation_active:
            logger.debug("Model call started outside of an invocation.")
        if self.enable_cycle_spans and not self._cycle_open:
            self._cycle_count += 1
            self._cycle_open = True
            self._cycle_usage = Usage.empty()
            self._cycle_span = self._start(
                OtelAttr.CYCLE_OPERATION, self._agent_span, {OtelAttr.CYCLE_ID: f"cycle-{self._cycle_count}"}
            )
        if self._model_open:
            logger.warning("A model call started before the previous one completed, closing the previous span.")
            self._end(self._model_span, SpanEnd())

        attributes = self._operation_attributes(OtelAttr.CHAT_OPERATION)
        if self._model_id:
            attributes[OtelAttr.REQUEST_MODEL] = self._model_id
        if self.capture_content and event.messages:
            attributes[OtelAttr.INPUT_MESSAGES] = serialize([_to_otel_message(m) for m in event.messages])
        parent = self._cycle_span if self._cycle_open else self._agent_span
        self._model_span = self._start(OtelAttr.CHAT_OPERATION, parent, attributes)
        self._model_open = True

    @guarded_callback(logger)
    def on_after_model_call(self, event: AfterModelCallEvent, context: HookContext | None = None) -> None:
        """Accumulate usage, close the model span, and close the cycle on a final answer."""
        usage = _coerce_reported(Usage, event.usage)
        metrics = _coerce_reported(Metrics, event.metrics)
        if usage is not None:
            self._accumulated_usage += usage
            if self.enable_cycle_spans and self._cycle_open:
                self._cycle_usage += usage

        if self._model_open:
            attributes: dict[str, Any] = {}
            if usage is not None:
                attributes.update(_usage_attributes(usage))
            attributes.update(_metrics_attributes(metrics))
            if event.stop_reason is not None:
                attributes[OtelAttr.FINISH_REASONS] = serialize([str(event.stop_reason)])
            self._end(
                self._model_span,
                SpanEnd(
                    status=SpanStatus.ERROR if event.error is not None else SpanStatus.OK,
                    error=event.error,
                    attributes=attributes,
                    events=self._output_events([event.message], OtelAttr.CHOICE, event.stop_reason),
                ),
            )
            self._model_span = None
            self._model_open = False
        else:
            logger.warning("Received a model call result without an open model call.")

        if event.stop_reason != StopReason.TOOL_USE and self._cycle_open:
            self._close_cycle(message=event.message, error=event.error)

    @guarded_callback(logger)
    def on_before_tool_call(self, event: BeforeToolCallEvent, context: HookContext | None = None) -> None:
        """Open a tool span keyed by the tool use id and expose it on ``context``."""
        tool_use_id = event.tool_use_id or UNKNOWN_TOOL_USE_ID
        tool_name = event.tool_name or "unknown_tool"
        if tool_use_id in self._tool_spans:
            logger.warning("Tool call '%s' started twice, closing the earlier span.", tool_use_id)
            self._end(self._tool_spans.pop(tool_use_id), SpanEnd())

        attributes = self._operation_attributes(OtelAttr.TOOL_EXECUTION_OPERATION)
        attributes[OtelAttr.TOOL_NAME] = tool_name
        attributes[OtelAttr.TOOL_CALL_ID] = tool_use_id
        attributes[OtelAttr.TOOL_TYPE] = "function"
        if self.capture_content and event.input is not None:
            attributes[OtelAttr.TOOL_ARGUMENTS] = serialize(event.input)
        parent = self._cycle_span if self._cycle_open else self._agent_span
        span = self._start(f"{OtelAttr.TOOL_EXECUTION_OPERATION} {tool_name}", parent, attributes)
        self._tool_spans[tool_use_id] = span
        if context is not None and span is not None:
            context.active_span = span

    @guarded_callback(logger)
    def on_after_tool_call(self, event: AfterToolCallEvent, context: HookContext | None = None) -> None:
        """Close the tool span for ``event.tool_use_id``; unknown ids are ignored."""
        tool_use_id = event.tool_use_id or UNKNOWN_TOOL_USE_ID
        if tool_use_id not in self._tool_spans:
            logger.warning("Received a result for tool call '%s' which has no open span.", tool_use_id)
            return
        span = self._tool_spans.pop(tool_use_id)
        status = str(event.status)
        failed = event.error is not None or status == ToolResultStatus.ERROR
        events: list[SpanEvent] = []
        if self.capture_content and event.content is not None:
            if self.use_latest_conventions:
                response = {"type": "tool_call_response", "id": tool_use_id, "response": to_jsonable(event.content)}
                events.append(
                    SpanEvent(
                        OtelAttr.OPERATION_DETAILS,
                        {OtelAttr.OUTPUT_MESSAGES: serialize([{"role": "tool", "parts": [response]}])},
                    )
                )
            else:
                events.append(SpanEvent(OtelAttr.CHOICE, {"message": serialize(event.content), "id": tool_use_id}))
        self._end(
            span,
            SpanEnd(
                status=SpanStatus.ERROR if failed else SpanStatus.OK,
                error=event.error,
                attributes={OtelAttr.TOOL_STATUS: status},
                events=events,
            ),
        )

    @guarded_callback(logger)
    def on_after_tools(self, event: AfterToolsEvent, context: HookContext | None = None) -> None:
        """Close the open cycle span once every tool call of the turn has completed."""
        if not self._cycle_open:
            logger.debug("Tools completed without an open cycle.")
            return
        self._close_cycle(tool_result_message=event.message)

    @guarded_callback(logger)
    def on_after_invocation(self, event: AfterInvocationEvent, context: HookContext | None = None) -> None:
        """Close any dangling child spans, then the agent span with the accumulated usage."""
        if not self._invocation_active:
            logger.warning("Received an invocation result without an open invocation.")
            return
        self._close_dangling_spans(event.error)

        usage = _coerce_reported(Usage, event.accumulated_usage) or self._accumulated_usage
        attributes: dict[str, Any] = _usage_attributes(usage)
        events: list[SpanEvent] = []
        if event.result is not None:
            if event.result.stop_reason is not None:
                attributes[OtelAttr.FINISH_REASONS] = serialize([str(event.result.stop_reason)])
            events = self._output_events([event.result.message], OtelAttr.CHOICE, event.result.stop_reason)
        self._end(
            self._agent_span,
            SpanEnd(
                status=SpanStatus.ERROR if event.error is not None else SpanStatus.OK,
                error=event.error,
                attributes=attributes,
                events=events,
            ),
        )
        self._agent_span = None
        self._invocation_active = False
