# Copyright (c) Microsoft. All rights reserved.

import dataclasses
import json
from collections.abc import Mapping, Set
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Final

from pydantic import BaseModel

from ._logging import get_logger

__all__ = ["serialize", "to_jsonable"]

logger = get_logger("agent_telemetry.serialization")

REPLACED_VALUE: Final[str] = "<replaced>"
EMPTY_JSON: Final[str] = "{}"


def to_jsonable(value: Any) -> Any:
    """Convert a value into something ``json.dumps`` accepts.

    Values that cannot be represented are replaced with ``"<replaced>"``.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return to_jsonable(value.value)
    if isinstance(value, BaseModel):
        return to_jsonable(value.model_dump(exclude_none=True))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: to_jsonable(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, Set)):
        return [to_jsonable(item) for item in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        try:
            return to_jsonable(to_dict())
        except Exception:
            logger.debug("to_dict() failed for %s", type(value).__name__, exc_info=True)
    return REPLACED_VALUE


def serialize(value: Any) -> str:
    """Serialize a value to a JSON string for use as a span attribute.

    Never raises; returns ``"{}"`` when the value cannot be encoded at all.
    """
    try:
        return json.dumps(to_jsonable(value), ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        logger.debug("Failed to serialize value of type %s", type(value).__name__, exc_info=True)
        return EMPTY_JSON
