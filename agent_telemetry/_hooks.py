# Copyright (c) Microsoft. All rights reserved.

import contextlib
import functools
import logging
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from opentelemetry import trace

from ._events import HookEvent

__all__ = ["HookCallback", "HookContext", "HookProvider", "HookRegistry", "guarded_callback"]

TEvent = TypeVar("TEvent", bound=HookEvent)
HookCallback = Callable[[TEvent, "HookContext"], None]


@dataclass
class HookContext:
    """Per-dispatch side channel between subscribers and the orchestrator.

    Subscribers may set ``active_span`` while handling a ``BeforeToolCallEvent``;
    the orchestrator then runs the tool inside :meth:`use_active_span` so the
    tool's own spans nest under it.
    """

    active_span: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @contextlib.contextmanager
    def use_active_span(self) -> Generator[Any, Any, Any]:
        """Make ``active_span`` the current span for the duration of the block, if it is an OTel span."""
        if not isinstance(self.active_span, trace.Span):
            yield self.active_span
            return
        with trace.use_span(
            self.active_span,
            end_on_exit=False,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            yield span


@runtime_checkable
class HookProvider(Protocol):
    """An object that subscribes its callbacks to a registry."""

    def register_hooks(self, registry: "HookRegistry") -> None: ...


class HookRegistry:
    """Ordered publish/subscribe dispatcher for lifecycle events.

    Callbacks are invoked in registration order. A callback registered for a
    base event class receives every subclass of it as well.
    """

    def __init__(self) -> None:
        self._callbacks: list[tuple[type[HookEvent], Callable[[Any, HookContext], None]]] = []

    def add_callback(self, event_type: type[TEvent], callback: Callable[[TEvent, HookContext], None]) -> None:
        """Subscribe ``callback`` to events of ``event_type``."""
        self._callbacks.append((event_type, callback))

    def add_hook(self, provider: HookProvider) -> None:
        """Let ``provider`` register its callbacks."""
        provider.register_hooks(self)

    def has_callbacks(self, event_type: type[HookEvent]) -> bool:
        return any(issubclass(event_type, registered) for registered, _ in self._callbacks)

    def invoke_callbacks(self, event: HookEvent, context: HookContext | None = None) -> HookContext:
        """Dispatch ``event`` to every matching callback.

        Args:
            event: The lifecycle event.
            context: An existing context to reuse, a new one is created when omitted.

        Returns:
            The context after all callbacks ran.
        """
        context = context if context is not None else HookContext()
        for event_type, callback in list(self._callbacks):
            if isinstance(event, event_type):
                callback(event, context)
        return context


def guarded_callback(callback_logger: logging.Logger) -> Callable[[Callable[..., None]], Callable[..., None]]:
    """Decorate a hook handler method so its exceptions are logged to ``callback_logger`` and discarded."""

    def decorator(handler: Callable[..., None]) -> Callable[..., None]:
        @functools.wraps(handler)
        def wrapper(self: Any, event: Any, context: HookContext | None = None) -> None:
            try:
                handler(self, event, context)
            except Exception:
                callback_logger.warning("Hook handler %s failed", handler.__qualname__, exc_info=True)

        return wrapper

    return decorator
