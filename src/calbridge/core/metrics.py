"""OpenTelemetry metrics instruments for the calbridge coordination layer.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during host process startup
(alongside ``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set,
the global no-op MeterProvider is used and all recordings are silent.

Instruments
-----------
Write queue (emitted from core/write_queue.py):

  calbridge.write_queue.depth           UpDownCounter (gauge semantics)
      Credential write units waiting or running.

  calbridge.write_queue.failures_total  Counter  (label: reason=error|timeout)
      Units that raised or exceeded their time budget.

Registry (emitted from calendar_registry.py):

  calbridge.registry.cache_total        Counter  (label: result=hit|miss)
      Unified calendar lookups served from / missing the TTL cache.

  calbridge.registry.fetch_failures_total  Counter
      Per-account calendar-list fetches that failed during aggregation.

Conflict detection (emitted from conflicts.py):

  calbridge.conflicts.checks_total      Counter  (label: outcome=clear|warn|block)
      Conflict checks by verdict.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calbridge"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter (requires the ``otlp`` extra).
    Otherwise the global no-op MeterProvider is used and all recordings are
    silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before initialization: returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _write_queue_depth() -> metrics.UpDownCounter:
    return get_meter().create_up_down_counter(
        name="calbridge.write_queue.depth",
        description="Credential write units waiting or running",
        unit="units",
    )


def _write_queue_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calbridge.write_queue.failures_total",
        description="Credential write units that failed or timed out",
        unit="units",
    )


def _registry_cache_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calbridge.registry.cache_total",
        description="Unified calendar lookups by cache result",
        unit="lookups",
    )


def _registry_fetch_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calbridge.registry.fetch_failures_total",
        description="Per-account calendar-list fetch failures during aggregation",
        unit="fetches",
    )


def _conflict_checks_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calbridge.conflicts.checks_total",
        description="Write-time conflict checks by verdict",
        unit="checks",
    )


# ---------------------------------------------------------------------------
# CalbridgeMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class CalbridgeMetrics:
    """Convenience wrapper around all calbridge metrics.

    Instruments are lazily created from the global MeterProvider on first
    use, so it is safe to construct this object before ``init_metrics`` is
    called (all recordings are no-ops until a real provider is installed).
    """

    def __init__(self) -> None:
        self.__queue_depth: metrics.UpDownCounter | None = None
        self.__queue_failures: metrics.Counter | None = None
        self.__registry_cache: metrics.Counter | None = None
        self.__registry_failures: metrics.Counter | None = None
        self.__conflict_checks: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _queue_depth(self) -> metrics.UpDownCounter:
        if self.__queue_depth is None:
            self.__queue_depth = _write_queue_depth()
        return self.__queue_depth

    @property
    def _queue_failures(self) -> metrics.Counter:
        if self.__queue_failures is None:
            self.__queue_failures = _write_queue_failures_total()
        return self.__queue_failures

    @property
    def _registry_cache(self) -> metrics.Counter:
        if self.__registry_cache is None:
            self.__registry_cache = _registry_cache_total()
        return self.__registry_cache

    @property
    def _registry_failures(self) -> metrics.Counter:
        if self.__registry_failures is None:
            self.__registry_failures = _registry_fetch_failures_total()
        return self.__registry_failures

    @property
    def _conflict_checks(self) -> metrics.Counter:
        if self.__conflict_checks is None:
            self.__conflict_checks = _conflict_checks_total()
        return self.__conflict_checks

    # -- write queue ---------------------------------------------------------

    def write_queue_depth_inc(self) -> None:
        self._queue_depth.add(1)

    def write_queue_depth_dec(self) -> None:
        self._queue_depth.add(-1)

    def write_queue_failure(self, reason: str) -> None:
        self._queue_failures.add(1, {"reason": reason})

    # -- registry ------------------------------------------------------------

    def registry_cache_hit(self) -> None:
        self._registry_cache.add(1, {"result": "hit"})

    def registry_cache_miss(self) -> None:
        self._registry_cache.add(1, {"result": "miss"})

    def registry_fetch_failure(self, alias: str) -> None:
        self._registry_failures.add(1, {"account": alias})

    # -- conflict detection --------------------------------------------------

    def conflict_check(self, outcome: str) -> None:
        """Record a conflict check verdict: ``clear``, ``warn`` or ``block``."""
        self._conflict_checks.add(1, {"outcome": outcome})
