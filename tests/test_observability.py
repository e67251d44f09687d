# Copyright (c) Microsoft. All rights reserved.

import logging
from typing import Any

import pytest
from opentelemetry import trace
from opentelemetry.sdk.metrics.view import View
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.semconv_ai import SpanAttributes
from opentelemetry.trace import StatusCode

from agent_telemetry import (
    HookRegistry,
    OtelAttr,
    OtelSpanBackend,
    TracingHookProvider,
    get_logger,
    observability,
    setup_logging,
)
from agent_telemetry.exceptions import AgentTelemetryException, TelemetryConfigurationError
from agent_telemetry.observability import (
    ObservabilitySettings,
    _create_otlp_exporters,
    _parse_headers,
    capture_exception,
    create_metric_views,
    create_resource,
    enable_instrumentation,
    telemetry_tracer,
)

# region Test constants


def test_enum_values():
    """Test that OtelAttr enum has expected values."""
    assert OtelAttr.OPERATION == "gen_ai.operation.name"
    assert SpanAttributes.LLM_SYSTEM == "gen_ai.system"
    assert SpanAttributes.LLM_REQUEST_MODEL == "gen_ai.request.model"
    assert OtelAttr.SYSTEM == SpanAttributes.LLM_SYSTEM
    assert OtelAttr.CHAT_OPERATION == "chat"
    assert OtelAttr.TOOL_EXECUTION_OPERATION == "execute_tool"
    assert OtelAttr.AGENT_INVOKE_OPERATION == "invoke_agent"
    assert OtelAttr.CYCLE_OPERATION == "execute_event_loop_cycle"
    assert str(OtelAttr.CYCLE_ID) == "event_loop.cycle_id"


# region Test ObservabilitySettings


def test_settings_from_environment(observability_settings: ObservabilitySettings):
    assert observability_settings.ENABLED
    assert observability_settings.SENSITIVE_DATA_ENABLED
    assert observability_settings.enable_cycle_spans
    assert not observability_settings.USE_LATEST_CONVENTIONS
    assert not observability_settings.INCLUDE_TOOL_DEFINITIONS
    assert not observability_settings.is_setup


@pytest.mark.parametrize("enable_instrumentation", [False], indirect=True)
def test_sensitive_data_requires_instrumentation(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENABLE_SENSITIVE_DATA", "true")

    settings = ObservabilitySettings(env_file_path="test.env")

    assert settings.enable_sensitive_data
    assert not settings.ENABLED
    assert not settings.SENSITIVE_DATA_ENABLED


def test_semconv_opt_ins():
    settings = ObservabilitySettings(
        env_file_path="test.env",
        otel_semconv_stability_opt_in="gen_ai_latest_experimental, gen_ai_tool_definitions",
    )

    assert settings.USE_LATEST_CONVENTIONS
    assert settings.INCLUDE_TOOL_DEFINITIONS


def test_semconv_opt_in_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OTEL_SEMCONV_STABILITY_OPT_IN", "http,gen_ai_latest_experimental")

    settings = ObservabilitySettings(env_file_path="test.env")

    assert settings.USE_LATEST_CONVENTIONS
    assert not settings.INCLUDE_TOOL_DEFINITIONS


def test_cycle_spans_can_be_disabled(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENABLE_CYCLE_SPANS", "false")

    assert not ObservabilitySettings(env_file_path="test.env").enable_cycle_spans
    assert ObservabilitySettings(env_file_path="test.env", enable_cycle_spans=True).enable_cycle_spans


def test_invalid_setting_type():
    with pytest.raises(TelemetryConfigurationError):
        ObservabilitySettings(env_file_path="test.env", enable_instrumentation="yes please")


def test_configure_without_exporters(observability_settings: ObservabilitySettings):
    observability_settings._configure()

    assert observability_settings.is_setup


@pytest.mark.parametrize("enable_instrumentation", [False], indirect=True)
def test_configure_is_skipped_when_disabled(observability_settings: ObservabilitySettings):
    observability_settings._configure()

    assert not observability_settings.is_setup


@pytest.mark.parametrize("enable_instrumentation", [False], indirect=True)
def test_enable_instrumentation():
    assert not observability.OBSERVABILITY_SETTINGS.ENABLED

    enable_instrumentation(enable_sensitive_data=True)

    assert observability.OBSERVABILITY_SETTINGS.ENABLED
    assert observability.OBSERVABILITY_SETTINGS.SENSITIVE_DATA_ENABLED


# region Test tracer selection


@pytest.mark.parametrize("enable_instrumentation", [False], indirect=True)
def test_telemetry_tracer_is_noop_when_disabled():
    assert isinstance(telemetry_tracer(), trace.NoOpTracer)


def test_telemetry_tracer_when_enabled():
    assert not isinstance(telemetry_tracer(), trace.NoOpTracer)


@pytest.mark.parametrize("enable_instrumentation", [False], indirect=True)
def test_disabled_instrumentation_keeps_control_flow(calculator_scenario: Any):
    provider = TracingHookProvider(OtelSpanBackend())
    registry = HookRegistry()
    registry.add_hook(provider)

    tool_context = calculator_scenario(registry)

    assert not tool_context.active_span.is_recording()
    assert provider.cycle_count == 2
    assert provider.accumulated_usage.total_tokens == 90
    assert not provider.has_open_spans


# region Test telemetry utils


def test_parse_headers():
    assert _parse_headers("key1=value1, key2 = value2,broken,token=a=b") == {
        "key1": "value1",
        "key2": "value2",
        "token": "a=b",
    }
    assert _parse_headers("") == {}


def test_create_otlp_exporters_without_endpoints():
    assert _create_otlp_exporters(protocol="grpc") == []


def test_create_otlp_exporters_with_unknown_protocol():
    with pytest.raises(TelemetryConfigurationError):
        _create_otlp_exporters(protocol="carrier-pigeon", traces_endpoint="http://localhost:4317")


def test_create_resource(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OTEL_RESOURCE_ATTRIBUTES", "deployment.environment=test,team=agents")

    resource = create_resource(service_name="math_agent", service_version="1.2.3", region="westus")

    assert isinstance(resource, Resource)
    assert resource.attributes["service.name"] == "math_agent"
    assert resource.attributes["service.version"] == "1.2.3"
    assert resource.attributes["deployment.environment"] == "test"
    assert resource.attributes["team"] == "agents"
    assert resource.attributes["region"] == "westus"


def test_create_resource_defaults():
    resource = create_resource(env_file_path="test.env")

    assert resource.attributes["service.name"] == "agent_telemetry"


def test_create_metric_views():
    views = create_metric_views()

    assert len(views) == 3
    assert all(isinstance(view, View) for view in views)


def test_capture_exception():
    span = TracerProvider().get_tracer("test").start_span("chat")

    capture_exception(span, ValueError("bad input"))
    span.end()

    assert span.status.status_code == StatusCode.ERROR
    assert span.attributes[OtelAttr.ERROR_TYPE] == "ValueError"
    assert span.events[0].name == "exception"


# region Test logging and exceptions


def test_get_logger():
    assert get_logger().name == "agent_telemetry"
    assert get_logger("agent_telemetry.tracing").name == "agent_telemetry.tracing"
    with pytest.raises(AgentTelemetryException):
        get_logger("other_package")


def test_setup_logging():
    setup_logging(logging.INFO)

    assert logging.getLogger("agent_telemetry").level == logging.INFO
    logging.getLogger("agent_telemetry").setLevel(logging.NOTSET)


def test_exception_logs_on_creation(caplog: pytest.LogCaptureFixture):
    inner = KeyError("endpoint")

    with caplog.at_level(logging.DEBUG, logger="agent_telemetry"):
        error = TelemetryConfigurationError("Could not configure exporters.", inner)

    assert "Could not configure exporters." in caplog.text
    assert error.args == ("Could not configure exporters.", inner)


def test_exception_without_logging(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.DEBUG, logger="agent_telemetry"):
        AgentTelemetryException("quiet", log_level=None)

    assert "quiet" not in caplog.text
