# Copyright (c) Microsoft. All rights reserved.

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from ._hooks import HookRegistry
from ._meter_adapter import MetricsHookProvider
from ._metrics import EventLoopMetrics
from ._span_lifecycle import TracingHookProvider
from ._tracer import OtelSpanBackend

if TYPE_CHECKING:  # pragma: no cover
    from ._backends import MetricsBackend, SpanBackend

__all__ = ["TelemetryHooks", "register_telemetry_hooks"]

TELEMETRY_HOOKS_MARKER: Final[str] = "__agent_telemetry_hooks__"


@dataclass(frozen=True)
class TelemetryHooks:
    """The pair of providers subscribed by :func:`register_telemetry_hooks`."""

    tracing: TracingHookProvider
    metrics: MetricsHookProvider

    @property
    def event_loop_metrics(self) -> EventLoopMetrics:
        return self.metrics.event_loop_metrics


def register_telemetry_hooks(
    registry: HookRegistry,
    *,
    span_backend: "SpanBackend | None" = None,
    metrics_backend: "MetricsBackend | None" = None,
    event_loop_metrics: EventLoopMetrics | None = None,
    **tracing_options: Any,
) -> TelemetryHooks:
    """Subscribe tracing and metrics providers to an agent's hook registry.

    Registering twice on the same registry returns the providers from the first call.

    Keyword Args:
        span_backend: Span backend, an :class:`OtelSpanBackend` on the global tracer by default.
        metrics_backend: Optional per-call metrics sink.
        event_loop_metrics: Aggregate to report into, shared across agents if passed to several registries.
        **tracing_options: Forwarded to :class:`TracingHookProvider`, e.g. ``enable_cycle_spans``.

    Examples:
        .. code-block:: python

            from agent_telemetry import HookRegistry, metrics_to_string, register_telemetry_hooks
            from agent_telemetry.observability import configure_otel_providers

            configure_otel_providers()
            registry = HookRegistry()
            hooks = register_telemetry_hooks(registry)
            # ... run the agent, dispatching its lifecycle events through `registry` ...
            print(metrics_to_string(hooks.event_loop_metrics))
    """
    existing = getattr(registry, TELEMETRY_HOOKS_MARKER, None)
    if isinstance(existing, TelemetryHooks):
        return existing

    tracing = TracingHookProvider(span_backend if span_backend is not None else OtelSpanBackend(), **tracing_options)
    metrics = MetricsHookProvider(
        metrics_backend,
        event_loop_metrics=event_loop_metrics,
        enable_cycle_metrics=tracing.enable_cycle_spans,
    )
    registry.add_hook(tracing)
    registry.add_hook(metrics)
    hooks = TelemetryHooks(tracing=tracing, metrics=metrics)
    setattr(registry, TELEMETRY_HOOKS_MARKER, hooks)
    return hooks
