# Copyright (c) Microsoft. All rights reserved.

"""Environment-backed settings loading.

Settings schemas are plain ``TypedDict`` classes. ``load_settings()`` fills one in
from keyword overrides, environment variables and an optional ``.env`` file::

    class ExporterSettings(TypedDict, total=False):
        endpoint: str | None
        timeout: int | None


    settings = load_settings(ExporterSettings, env_prefix="MY_EXPORTER_", required_fields=["endpoint"])
"""

from __future__ import annotations

import os
from collections.abc import Sequence
from contextlib import suppress
from typing import Any, Union, get_args, get_origin, get_type_hints

from dotenv import load_dotenv
from typing_extensions import TypeVar

from .exceptions import SettingNotFoundError, TelemetryConfigurationError

__all__ = ["load_settings"]

SettingsT = TypeVar("SettingsT", default=dict[str, Any])

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off", "")


def _coerce_value(value: str, target_type: Any) -> Any:
    """Convert a raw environment string to ``target_type``."""
    args = get_args(target_type)
    if target_type is type(None):
        return None
    if args and type(None) in args:
        for arg in args:
            if arg is type(None):
                continue
            with suppress(ValueError, TypeError):
                return _coerce_value(value, arg)
        return value

    if target_type is bool:
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"Cannot interpret '{value}' as a boolean.")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _allowed_types(field_type: Any) -> tuple[type, ...]:
    origin = get_origin(field_type)
    if origin is Union or origin is type(int | str):
        return tuple(arg for arg in get_args(field_type) if isinstance(arg, type) and arg is not type(None))
    if isinstance(field_type, type):
        return (field_type,)
    return ()


def _check_override_type(value: Any, field_type: Any, field_name: str) -> None:
    """Reject overrides whose type clearly does not match the field annotation."""
    if value is None:
        return
    allowed = _allowed_types(field_type)
    if not allowed or isinstance(value, allowed):
        return
    # bool is an int subclass, so only the int -> float promotion is accepted here
    if isinstance(value, int) and not isinstance(value, bool) and float in allowed:
        return
    names = ", ".join(t.__name__ for t in allowed)
    raise TelemetryConfigurationError(
        f"Invalid type for setting '{field_name}': expected {names}, got {type(value).__name__}."
    )


def load_settings(
    settings_type: type[SettingsT],
    *,
    env_prefix: str = "",
    env_file_path: str | None = None,
    env_file_encoding: str | None = None,
    required_fields: Sequence[str] | None = None,
    **overrides: Any,
) -> SettingsT:
    """Load settings from overrides, environment variables and a ``.env`` file.

    Resolution order, highest priority first:

    1. Keyword *overrides*; ``None`` values are ignored.
    2. Environment variables named ``<env_prefix><FIELD_NAME>``.
    3. The ``.env`` file, loaded with ``python-dotenv`` without overriding existing variables.
    4. ``None``.

    Args:
        settings_type: The ``TypedDict`` describing the settings.
        env_prefix: Prefix for the environment variable names.
        env_file_path: Path to the ``.env`` file, ``".env"`` when omitted.
        env_file_encoding: Encoding of the ``.env`` file, ``"utf-8"`` when omitted.
        required_fields: Fields that must resolve to a value other than ``None``.
        **overrides: Explicit field values.

    Returns:
        A dict matching *settings_type*.

    Raises:
        SettingNotFoundError: A required field did not resolve.
        TelemetryConfigurationError: An override has an incompatible type.
    """
    env_path = env_file_path or ".env"
    if os.path.isfile(env_path):
        load_dotenv(dotenv_path=env_path, encoding=env_file_encoding or "utf-8")

    provided = {key: value for key, value in overrides.items() if value is not None}
    result: dict[str, Any] = {}
    for field_name, field_type in get_type_hints(settings_type).items():
        if field_name in provided:
            _check_override_type(provided[field_name], field_type, field_name)
            result[field_name] = provided[field_name]
            continue
        raw = os.getenv(f"{env_prefix}{field_name.upper()}")
        if raw is None:
            result[field_name] = None
            continue
        try:
            result[field_name] = _coerce_value(raw, field_type)
        except (ValueError, TypeError):
            result[field_name] = raw

    for field_name in required_fields or ():
        if result.get(field_name) is None:
            raise SettingNotFoundError(
                f"Required setting '{field_name}' was not provided. Set it via the '{field_name}' parameter "
                f"or the '{env_prefix}{field_name.upper()}' environment variable."
            )
    return result  # type: ignore[return-value]
