# Copyright (c) Microsoft. All rights reserved.

import logging

from .exceptions import AgentTelemetryException

__all__ = ["get_logger", "setup_logging"]


def setup_logging(level: int | None = None) -> None:
    """Setup the logging configuration for agent telemetry.

    Args:
        level: Optional level for the ``agent_telemetry`` logger hierarchy.
    """
    logging.basicConfig(
        format="[%(asctime)s - %(pathname)s:%(lineno)d - %(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if level is not None:
        logging.getLogger("agent_telemetry").setLevel(level)


def get_logger(name: str = "agent_telemetry") -> logging.Logger:
    """Get a logger with the specified name, defaulting to 'agent_telemetry'.

    Args:
        name (str): The name of the logger. Defaults to 'agent_telemetry'.

    Returns:
        logging.Logger: The configured logger instance.
    """
    if not name.startswith("agent_telemetry"):
        raise AgentTelemetryException("Logger name must start with 'agent_telemetry'.")
    return logging.getLogger(name)
