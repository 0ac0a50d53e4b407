"""OpenTelemetry initialization and span wrappers for calbridge operations."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calbridge"
_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

# Set once this module has installed the global provider.
_provider: TracerProvider | None = None


def _install_provider(service_name: str, endpoint: str) -> TracerProvider:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    logger.info("Exporting calbridge spans to %s", endpoint)
    return provider


def init_telemetry(service_name: str) -> trace.Tracer:
    """Return a tracer for *service_name*, exporting spans when an endpoint is set.

    The OTLP gRPC exporter ships in the ``otlp`` extra and is only imported
    when ``OTEL_EXPORTER_OTLP_ENDPOINT`` names a collector.  The provider is
    installed on the first such call; without an endpoint spans are no-ops.
    """
    global _provider

    endpoint = os.environ.get(_ENDPOINT_ENV)
    if not endpoint:
        logger.info("%s is empty; calbridge spans will not be exported", _ENDPOINT_ENV)
    elif _provider is None:
        _provider = _install_provider(service_name, endpoint)
    return trace.get_tracer(service_name)


class operation_span:
    """Span around one calbridge operation, named ``calbridge.<operation>``.

    Works as ``with operation_span("registry.fetch", account="work"):`` or as
    a decorator on a coroutine function.  A raised exception marks the span
    ERROR and is attached as an event, then propagates unchanged.
    """

    def __init__(self, operation: str, *, account: str | None = None) -> None:
        self._operation = operation
        self._account = account
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"calbridge.{self._operation}")
        if self._account is not None:
            self._span.set_attribute("calbridge.account", self._account)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # A fresh span object per invocation: concurrent calls must not share
        # _span/_token state.
        operation = self._operation
        account = self._account

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with operation_span(operation, account=account):
                return await func(*args, **kwargs)

        return _wrapper
