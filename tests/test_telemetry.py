"""Tests for calendar_bot.core.telemetry: tracer setup and the traced() span helper."""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from calendar_bot.core.telemetry import init_telemetry, traced

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture
def otel_provider():
    """Install an in-memory TracerProvider for the test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calendar-bot-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


def test_traced_records_name_and_attributes(otel_provider):
    with traced("calendar.sync", calendar_id=3, skipped=None) as span:
        span.set_attribute("events", 2)

    [finished] = otel_provider.get_finished_spans()
    assert finished.name == "calendar.sync"
    assert finished.attributes["calendar_id"] == 3
    assert finished.attributes["events"] == 2
    assert "skipped" not in finished.attributes


def test_traced_marks_errors_and_reraises(otel_provider):
    with pytest.raises(RuntimeError, match="boom"):
        with traced("reminders.tick"):
            raise RuntimeError("boom")

    [finished] = otel_provider.get_finished_spans()
    assert finished.status.status_code == trace.StatusCode.ERROR
    assert finished.events[0].name == "exception"


def test_init_without_endpoint_is_noop(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert init_telemetry("calendar-bot") is not None
