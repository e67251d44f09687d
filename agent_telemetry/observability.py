# Copyright (c) Microsoft. All rights reserved.

import logging
import os
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, TypedDict

from dotenv import load_dotenv
from opentelemetry import metrics, trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.attributes import service_attributes
from opentelemetry.semconv_ai import SpanAttributes

from . import __version__ as version_info
from ._logging import get_logger
from ._settings import load_settings
from .exceptions import TelemetryConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk._logs.export import LogRecordExporter
    from opentelemetry.sdk.metrics.export import MetricExporter
    from opentelemetry.sdk.metrics.view import View
    from opentelemetry.sdk.trace.export import SpanExporter

__all__ = [
    "OBSERVABILITY_SETTINGS",
    "ObservabilitySettings",
    "OtelAttr",
    "capture_exception",
    "configure_otel_providers",
    "create_metric_views",
    "create_resource",
    "enable_instrumentation",
    "get_meter",
    "get_tracer",
    "telemetry_tracer",
]


logger = get_logger()

SEMCONV_LATEST_EXPERIMENTAL: Final[str] = "gen_ai_latest_experimental"
SEMCONV_TOOL_DEFINITIONS: Final[str] = "gen_ai_tool_definitions"
TOKEN_USAGE_BUCKET_BOUNDARIES: Final[tuple[float, ...]] = (
    1,
    4,
    16,
    64,
    256,
    1024,
    4096,
    16384,
    65536,
    262144,
    1048576,
    4194304,
    16777216,
    67108864,
)
OPERATION_DURATION_BUCKET_BOUNDARIES: Final[tuple[float, ...]] = (
    0.01,
    0.02,
    0.04,
    0.08,
    0.16,
    0.32,
    0.64,
    1.28,
    2.56,
    5.12,
    10.24,
    20.48,
    40.96,
    81.92,
)


class OtelAttr(str, Enum):
    """Enum to capture the attributes used in OpenTelemetry for agent loops.

    Based on: https://opentelemetry.io/docs/specs/semconv/gen-ai/gen-ai-spans/
    and https://opentelemetry.io/docs/specs/semconv/gen-ai/gen-ai-agent-spans/
    """

    OPERATION = "gen_ai.operation.name"
    PROVIDER_NAME = "gen_ai.provider.name"
    SYSTEM = SpanAttributes.LLM_SYSTEM
    REQUEST_MODEL = SpanAttributes.LLM_REQUEST_MODEL
    ERROR_TYPE = "error.type"
    # Response attributes
    FINISH_REASONS = "gen_ai.response.finish_reasons"
    # Usage attributes
    INPUT_TOKENS = "gen_ai.usage.input_tokens"
    OUTPUT_TOKENS = "gen_ai.usage.output_tokens"
    PROMPT_TOKENS = "gen_ai.usage.prompt_tokens"
    COMPLETION_TOKENS = "gen_ai.usage.completion_tokens"
    TOTAL_TOKENS = "gen_ai.usage.total_tokens"
    CACHE_READ_INPUT_TOKENS = "gen_ai.usage.cache_read_input_tokens"
    CACHE_WRITE_INPUT_TOKENS = "gen_ai.usage.cache_write_input_tokens"
    # Server timing attributes
    TIME_TO_FIRST_TOKEN = "gen_ai.server.time_to_first_token"
    REQUEST_DURATION = "gen_ai.server.request.duration"
    # Tool attributes
    TOOL_CALL_ID = "gen_ai.tool.call.id"
    TOOL_NAME = "gen_ai.tool.name"
    TOOL_TYPE = "gen_ai.tool.type"
    TOOL_STATUS = "gen_ai.tool.status"
    TOOL_DEFINITIONS = "gen_ai.tool.definitions"
    TOOL_ARGUMENTS = "gen_ai.tool.call.arguments"
    # Agent attributes
    AGENT_ID = "gen_ai.agent.id"
    AGENT_NAME = "gen_ai.agent.name"
    AGENT_TOOLS = "gen_ai.agent.tools"
    SYSTEM_PROMPT = "system_prompt"
    INPUT_MESSAGES = "gen_ai.input.messages"
    OUTPUT_MESSAGES = "gen_ai.output.messages"
    # Event loop attributes
    CYCLE_ID = "event_loop.cycle_id"
    # Client attributes
    # replaced TOKEN with T, because both ruff and bandit,
    # complain about TOKEN being a potential secret
    T_UNIT = "tokens"
    T_TYPE = "gen_ai.token.type"
    T_TYPE_INPUT = "input"
    T_TYPE_OUTPUT = "output"
    T_TYPE_CACHE_READ = "cache_read"
    T_TYPE_CACHE_WRITE = "cache_write"
    DURATION_UNIT = "s"

    # Span events
    ASSISTANT_MESSAGE = "gen_ai.assistant.message"
    TOOL_MESSAGE = "gen_ai.tool.message"
    CHOICE = "gen_ai.choice"
    OPERATION_DETAILS = "gen_ai.client.inference.operation.details"

    # Operation names
    CHAT_OPERATION = "chat"
    TOOL_EXECUTION_OPERATION = "execute_tool"
    AGENT_INVOKE_OPERATION = "invoke_agent"
    CYCLE_OPERATION = "execute_event_loop_cycle"

    AGENT_TELEMETRY_GEN_AI_SYSTEM = "agent_telemetry"

    def __repr__(self) -> str:
        """Return the string representation of the enum member."""
        return self.value

    def __str__(self) -> str:
        """Return the string representation of the enum member."""
        return self.value


# region Telemetry utils


def _parse_headers(header_str: str) -> dict[str, str]:
    """Parse a string like 'key1=value1,key2=value2' into a dict."""
    headers: dict[str, str] = {}
    for pair in (header_str or "").split(","):
        if "=" in pair:
            key, value = pair.split("=", 1)
            headers[key.strip()] = value.strip()
    return headers


def _create_otlp_exporters(
    protocol: str = "grpc",
    traces_endpoint: str | None = None,
    metrics_endpoint: str | None = None,
    logs_endpoint: str | None = None,
    headers: dict[str, str] | None = None,
) -> list["LogRecordExporter | SpanExporter | MetricExporter"]:
    """Create OTLP exporters for the configured endpoints.

    Raises:
        ImportError: If the OTLP exporter package for ``protocol`` is not installed.
    """
    exporters: list["LogRecordExporter | SpanExporter | MetricExporter"] = []
    if not logs_endpoint and not traces_endpoint and not metrics_endpoint:
        return exporters

    if protocol == "grpc":
        try:
            from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
            from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError as exc:
            raise ImportError(
                "opentelemetry-exporter-otlp-proto-grpc is required for OTLP gRPC exporters. "
                "Install it with: pip install agent-telemetry[otlp-grpc]"
            ) from exc
    elif protocol in ("http/protobuf", "http"):
        try:
            from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter  # type: ignore[assignment]
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import (  # type: ignore[assignment]
                OTLPMetricExporter,
            )
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[assignment]
                OTLPSpanExporter,
            )
        except ImportError as exc:
            raise ImportError(
                "opentelemetry-exporter-otlp-proto-http is required for OTLP HTTP exporters. "
                "Install it with: pip install agent-telemetry[otlp-http]"
            ) from exc
    else:
        raise TelemetryConfigurationError(f"Unsupported OTLP protocol '{protocol}'.")

    if logs_endpoint:
        exporters.append(OTLPLogExporter(endpoint=logs_endpoint, headers=headers or None))
    if traces_endpoint:
        exporters.append(OTLPSpanExporter(endpoint=traces_endpoint, headers=headers or None))
    if metrics_endpoint:
        exporters.append(OTLPMetricExporter(endpoint=metrics_endpoint, headers=headers or None))
    return exporters


def _get_exporters_from_env(
    env_file_path: str | None = None,
    env_file_encoding: str | None = None,
) -> list["LogRecordExporter | SpanExporter | MetricExporter"]:
    """Create OTLP exporters from the standard ``OTEL_EXPORTER_OTLP_*`` environment variables.

    References:
        - https://opentelemetry.io/docs/languages/sdk-configuration/otlp-exporter/
    """
    load_dotenv(dotenv_path=env_file_path, encoding=env_file_encoding)
    base_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    return _create_otlp_exporters(
        protocol=os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "grpc").lower(),
        traces_endpoint=os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or base_endpoint,
        metrics_endpoint=os.getenv("OTEL_EXPORTER_OTLP_METRICS_ENDPOINT") or base_endpoint,
        logs_endpoint=os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT") or base_endpoint,
        headers=_parse_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "")),
    )


def create_resource(
    service_name: str | None = None,
    service_version: str | None = None,
    env_file_path: str | None = None,
    env_file_encoding: str | None = None,
    **attributes: Any,
) -> "Resource":
    """Create an OpenTelemetry Resource from environment variables and parameters.

    The following environment variables are read:
    - OTEL_SERVICE_NAME: The name of the service (defaults to "agent_telemetry")
    - OTEL_SERVICE_VERSION: The version of the service (defaults to package version)
    - OTEL_RESOURCE_ATTRIBUTES: Additional resource attributes as key=value pairs

    Args:
        service_name: Override the service name.
        service_version: Override the service version.
        env_file_path: Path to a .env file to load environment variables from.
        env_file_encoding: Encoding to use when reading the .env file.
        **attributes: Additional resource attributes. Values from OTEL_RESOURCE_ATTRIBUTES win on conflict.

    Returns:
        A configured OpenTelemetry Resource instance.

    Examples:
        .. code-block:: python

            from agent_telemetry.observability import create_resource

            resource = create_resource(service_name="my_agent", deployment_environment="production")
    """
    load_dotenv(dotenv_path=env_file_path, encoding=env_file_encoding)

    resource_attributes: dict[str, Any] = dict(attributes)
    resource_attributes[service_attributes.SERVICE_NAME] = service_name or os.getenv(
        "OTEL_SERVICE_NAME", "agent_telemetry"
    )
    resource_attributes[service_attributes.SERVICE_VERSION] = service_version or os.getenv(
        "OTEL_SERVICE_VERSION", version_info
    )
    if resource_attrs_env := os.getenv("OTEL_RESOURCE_ATTRIBUTES"):
        resource_attributes.update(_parse_headers(resource_attrs_env))
    return Resource.create(resource_attributes)


def create_metric_views() -> list["View"]:
    """Create the default OpenTelemetry metric views for agent telemetry."""
    from opentelemetry.sdk.metrics.view import DropAggregation, View

    return [
        View(instrument_name="agent_telemetry*"),
        View(instrument_name="gen_ai*"),
        View(instrument_name="*", aggregation=DropAggregation()),
    ]


class _ObservabilitySettingsValues(TypedDict, total=False):
    enable_instrumentation: bool | None
    enable_sensitive_data: bool | None
    enable_console_exporters: bool | None
    enable_cycle_spans: bool | None
    otel_semconv_stability_opt_in: str | None


class ObservabilitySettings:
    """Settings for agent telemetry.

    Values are read from keyword arguments, then environment variables, then a .env file.

    Warning:
        Sensitive data (prompts, messages, tool arguments and results) should only be
        captured on test and development environments.

    Keyword Args:
        enable_instrumentation: Enable OpenTelemetry instrumentation. Default is False.
            Can be set via environment variable ENABLE_INSTRUMENTATION.
        enable_sensitive_data: Capture message content on spans. Default is False.
            Can be set via environment variable ENABLE_SENSITIVE_DATA.
        enable_console_exporters: Add console exporters for traces, logs and metrics. Default is False.
            Can be set via environment variable ENABLE_CONSOLE_EXPORTERS.
        enable_cycle_spans: Open one span per event loop cycle. Default is True.
            Can be set via environment variable ENABLE_CYCLE_SPANS.
        otel_semconv_stability_opt_in: Comma separated semantic convention opt-ins, e.g.
            ``gen_ai_latest_experimental,gen_ai_tool_definitions``.
            Can be set via environment variable OTEL_SEMCONV_STABILITY_OPT_IN.
        env_file_path: Path to a .env file.
        env_file_encoding: Encoding of the .env file.
    """

    def __init__(
        self,
        *,
        env_file_path: str | None = None,
        env_file_encoding: str | None = None,
        **kwargs: Any,
    ) -> None:
        values = load_settings(
            _ObservabilitySettingsValues,
            env_file_path=env_file_path,
            env_file_encoding=env_file_encoding,
            **kwargs,
        )
        self.env_file_path = env_file_path
        self.env_file_encoding = env_file_encoding
        self.enable_instrumentation: bool = values["enable_instrumentation"] is True
        self.enable_sensitive_data: bool = values["enable_sensitive_data"] is True
        self.enable_console_exporters: bool = values["enable_console_exporters"] is True
        self.enable_cycle_spans: bool = values["enable_cycle_spans"] is not False
        self.otel_semconv_stability_opt_in: str = values["otel_semconv_stability_opt_in"] or ""
        self._resource = create_resource(env_file_path=env_file_path, env_file_encoding=env_file_encoding)
        self._executed_setup = False

    @property
    def ENABLED(self) -> bool:
        """Check if instrumentation is enabled."""
        return self.enable_instrumentation

    @property
    def SENSITIVE_DATA_ENABLED(self) -> bool:
        """Check if sensitive data capture is enabled, which requires instrumentation to be enabled."""
        return self.enable_instrumentation and self.enable_sensitive_data

    @property
    def _opt_ins(self) -> set[str]:
        return {item.strip() for item in self.otel_semconv_stability_opt_in.split(",") if item.strip()}

    @property
    def USE_LATEST_CONVENTIONS(self) -> bool:
        """Emit gen_ai.provider.name and operation-details events instead of the legacy layout."""
        return SEMCONV_LATEST_EXPERIMENTAL in self._opt_ins

    @property
    def INCLUDE_TOOL_DEFINITIONS(self) -> bool:
        """Add full tool definitions to agent spans."""
        return SEMCONV_TOOL_DEFINITIONS in self._opt_ins

    @property
    def is_setup(self) -> bool:
        """Check if the providers have been configured."""
        return self._executed_setup

    def _configure(
        self,
        *,
        additional_exporters: list["LogRecordExporter | SpanExporter | MetricExporter"] | None = None,
        views: list["View"] | None = None,
    ) -> None:
        """Create the log, trace and metric providers once.

        Calling it again after a successful setup has no effect.
        """
        if not self.ENABLED or self._executed_setup:
            return

        exporters: list["LogRecordExporter | SpanExporter | MetricExporter"] = []
        exporters.extend(
            _get_exporters_from_env(env_file_path=self.env_file_path, env_file_encoding=self.env_file_encoding)
        )
        if additional_exporters:
            exporters.extend(additional_exporters)
        if self.enable_console_exporters:
            from opentelemetry.sdk._logs.export import ConsoleLogRecordExporter
            from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
            from opentelemetry.sdk.trace.export import ConsoleSpanExporter

            exporters.extend([ConsoleSpanExporter(), ConsoleLogRecordExporter(), ConsoleMetricExporter()])

        self._configure_providers(exporters, views=views)
        self._executed_setup = True

    def _configure_providers(
        self,
        exporters: list["LogRecordExporter | MetricExporter | SpanExporter"],
        views: list["View"] | None = None,
    ) -> None:
        """Configure tracing, logging and metrics with the provided exporters."""
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor, LogRecordExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import MetricExporter, PeriodicExportingMetricReader
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

        span_exporters = [exp for exp in exporters if isinstance(exp, SpanExporter)]
        log_exporters = [exp for exp in exporters if isinstance(exp, LogRecordExporter)]
        metric_exporters = [exp for exp in exporters if isinstance(exp, MetricExporter)]

        if span_exporters:
            tracer_provider = TracerProvider(resource=self._resource)
            for exporter in span_exporters:
                tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
            trace.set_tracer_provider(tracer_provider)

        if log_exporters:
            logger_provider = LoggerProvider(resource=self._resource)
            for log_exporter in log_exporters:
                logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))
            logging.getLogger().addHandler(LoggingHandler(logger_provider=logger_provider))
            set_logger_provider(logger_provider)

        if metric_exporters:
            meter_provider = MeterProvider(
                metric_readers=[
                    PeriodicExportingMetricReader(exporter, export_interval_millis=5000)
                    for exporter in metric_exporters
                ],
                resource=self._resource,
                views=views or [],
            )
            metrics.set_meter_provider(meter_provider)


def get_tracer(
    instrumenting_module_name: str = "agent_telemetry",
    instrumenting_library_version: str = version_info,
    schema_url: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> "trace.Tracer":
    """Returns a Tracer for use by the given instrumentation library.

    This is a convenience wrapper for trace.get_tracer() using the globally configured provider.

    Examples:
        .. code-block:: python

            from agent_telemetry import get_tracer

            with get_tracer().start_as_current_span("my_operation") as span:
                span.set_attribute("custom.attribute", "value")
    """
    return trace.get_tracer(
        instrumenting_module_name=instrumenting_module_name,
        instrumenting_library_version=instrumenting_library_version,
        schema_url=schema_url,
        attributes=attributes,
    )


def get_meter(
    name: str = "agent_telemetry",
    version: str = version_info,
    schema_url: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> "metrics.Meter":
    """Returns a Meter for agent telemetry from the globally configured provider."""
    try:
        return metrics.get_meter(name=name, version=version, schema_url=schema_url, attributes=attributes)
    except TypeError:
        # Older OpenTelemetry releases do not support the attributes parameter.
        return metrics.get_meter(name=name, version=version, schema_url=schema_url)


global OBSERVABILITY_SETTINGS
OBSERVABILITY_SETTINGS: ObservabilitySettings = ObservabilitySettings()


def telemetry_tracer() -> "trace.Tracer":
    """Get the agent telemetry tracer or a no-op tracer if instrumentation is not enabled."""
    global OBSERVABILITY_SETTINGS
    return get_tracer() if OBSERVABILITY_SETTINGS.ENABLED else trace.NoOpTracer()


def enable_instrumentation(
    *,
    enable_sensitive_data: bool | None = None,
) -> None:
    """Enable instrumentation for your application.

    This does not configure exporters or providers, it only flips the global switch
    read by the span backend. Set up providers yourself, or call
    :func:`configure_otel_providers`.

    Keyword Args:
        enable_sensitive_data: Capture message content on spans. Overrides ENABLE_SENSITIVE_DATA.
    """
    global OBSERVABILITY_SETTINGS
    OBSERVABILITY_SETTINGS.enable_instrumentation = True
    if enable_sensitive_data is not None:
        OBSERVABILITY_SETTINGS.enable_sensitive_data = enable_sensitive_data


def configure_otel_providers(
    *,
    enable_sensitive_data: bool | None = None,
    exporters: list["LogRecordExporter | SpanExporter | MetricExporter"] | None = None,
    views: list["View"] | None = None,
    env_file_path: str | None = None,
    env_file_encoding: str | None = None,
) -> None:
    """Configure OpenTelemetry providers and enable instrumentation.

    Call this once during application startup, before any telemetry is captured.
    The standard OTEL_EXPORTER_OTLP_* environment variables and ENABLE_CONSOLE_EXPORTERS are honored.

    Note:
        Only one provider per signal can be set globally. If your application already
        configures providers (for example through a vendor distro), call
        :func:`enable_instrumentation` instead.

    Keyword Args:
        enable_sensitive_data: Capture message content on spans. Overrides ENABLE_SENSITIVE_DATA.
        exporters: Additional exporters for logs, metrics or spans.
        views: Metric views, see :func:`create_metric_views`.
        env_file_path: Path to a .env file to load settings from.
        env_file_encoding: Encoding of the .env file.

    Examples:
        .. code-block:: python

            from agent_telemetry.observability import configure_otel_providers, create_metric_views

            # Set OTEL_EXPORTER_OTLP_ENDPOINT=http://localhost:4317
            configure_otel_providers(views=create_metric_views())
    """
    global OBSERVABILITY_SETTINGS
    if env_file_path:
        OBSERVABILITY_SETTINGS = ObservabilitySettings(
            enable_instrumentation=True,
            enable_sensitive_data=enable_sensitive_data,
            env_file_path=env_file_path,
            env_file_encoding=env_file_encoding,
        )
    else:
        OBSERVABILITY_SETTINGS.enable_instrumentation = True
        if enable_sensitive_data is not None:
            OBSERVABILITY_SETTINGS.enable_sensitive_data = enable_sensitive_data

    OBSERVABILITY_SETTINGS._configure(  # type: ignore[reportPrivateUsage]
        additional_exporters=exporters,
        views=views,
    )


def capture_exception(span: trace.Span, exception: BaseException, timestamp: int | None = None) -> None:
    """Set an error for spans."""
    span.set_attribute(OtelAttr.ERROR_TYPE, type(exception).__name__)
    span.record_exception(exception=exception, timestamp=timestamp)
    span.set_status(status=trace.StatusCode.ERROR, description=repr(exception))
