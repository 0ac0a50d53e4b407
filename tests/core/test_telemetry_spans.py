"""Tests for the operation_span wrapper."""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from calbridge.core.telemetry import init_telemetry, operation_span

pytestmark = pytest.mark.unit


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture(autouse=True)
def otel_provider():
    """Set up an in-memory TracerProvider for every test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "calbridge-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


class TestOperationSpanContextManager:
    def test_creates_span_with_prefixed_name(self, otel_provider):
        with operation_span("registry.fetch", account="work"):
            pass

        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calbridge.registry.fetch"
        assert span.attributes["calbridge.account"] == "work"

    def test_account_attribute_is_optional(self, otel_provider):
        with operation_span("conflicts.check"):
            pass

        (span,) = otel_provider.get_finished_spans()
        assert "calbridge.account" not in span.attributes

    def test_span_is_current_inside_block(self, otel_provider):
        with operation_span("conflicts.check") as span:
            assert trace.get_current_span() is span
        assert trace.get_current_span() is not span

    def test_exception_sets_error_status(self, otel_provider):
        with pytest.raises(ValueError, match="boom"):
            with operation_span("registry.fetch"):
                raise ValueError("boom")

        (span,) = otel_provider.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"


class TestOperationSpanDecorator:
    async def test_wraps_async_function(self, otel_provider):
        @operation_span("events.create", account="personal")
        async def create() -> str:
            return "created"

        assert await create() == "created"
        (span,) = otel_provider.get_finished_spans()
        assert span.name == "calbridge.events.create"

    async def test_each_call_gets_its_own_span(self, otel_provider):
        @operation_span("events.delete")
        async def delete() -> None:
            return None

        await delete()
        await delete()
        assert len(otel_provider.get_finished_spans()) == 2


def test_init_without_endpoint_returns_tracer(monkeypatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert init_telemetry("calbridge-test") is not None
