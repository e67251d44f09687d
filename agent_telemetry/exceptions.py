# Copyright (c) Microsoft. All rights reserved.

import logging
from typing import Any, Literal

__all__ = [
    "AgentTelemetryException",
    "ContextPropagationError",
    "InstrumentationError",
    "SettingNotFoundError",
    "TelemetryConfigurationError",
]

logger = logging.getLogger("agent_telemetry")


class AgentTelemetryException(Exception):
    """Base exceptions for Agent Telemetry.

    Automatically logs the message as debug.
    """

    def __init__(
        self,
        message: str,
        inner_exception: Exception | None = None,
        log_level: Literal[0] | Literal[10] | Literal[20] | Literal[30] | Literal[40] | Literal[50] | None = 10,
        *args: Any,
        **kwargs: Any,
    ):
        """Create an AgentTelemetryException.

        This emits a debug log (by default), with the inner_exception if provided.
        """
        if log_level is not None:
            logger.log(log_level, message, exc_info=inner_exception)
        if inner_exception:
            super().__init__(message, inner_exception, *args)  # type: ignore
        else:
            super().__init__(message, *args)  # type: ignore


class TelemetryConfigurationError(AgentTelemetryException):
    """An error occurred while configuring telemetry providers or settings."""

    pass


class SettingNotFoundError(TelemetryConfigurationError):
    """A required setting could not be resolved."""

    pass


class InstrumentationError(AgentTelemetryException):
    """An object could not be instrumented."""

    pass


class ContextPropagationError(AgentTelemetryException):
    """Trace context could not be extracted or injected."""

    pass
