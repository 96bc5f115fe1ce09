"""OpenTelemetry metrics for calendar synchronization.

Instruments are looked up from the global MeterProvider at record time, so
nothing needs a Meter passed around and recording before :func:`init_metrics`
(or without an OTLP endpoint) is a silent no-op.

==========================================  =========  ======================
Instrument                                  Kind       Attributes
==========================================  =========  ======================
``calsync.sync.runs_total``                 Counter    provider, mode, status
``calsync.sync.duration_ms``                Histogram  provider, mode
``calsync.sync.events_applied_total``       Counter    action (upsert/delete)
``calsync.token.refresh_failures_total``    Counter    provider
``calsync.retry.attempts_total``            Counter    code
==========================================  =========  ======================
"""

from __future__ import annotations

import logging

from opentelemetry import metrics

from calsync.core.telemetry import OTLP_ENDPOINT_ENV, otlp_endpoint

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"
_EXPORT_INTERVAL_MS = 15_000


def init_metrics(service_name: str) -> metrics.Meter:
    """Install a periodically exporting MeterProvider when OTLP is configured."""
    endpoint = otlp_endpoint()
    if endpoint is None:
        logger.info("%s not set; metrics will not be exported", OTLP_ENDPOINT_ENV)
        return get_meter()

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=_EXPORT_INTERVAL_MS
    )
    metrics.set_meter_provider(
        MeterProvider(
            resource=Resource.create({"service.name": service_name}),
            metric_readers=[reader],
        )
    )
    logger.info("Exporting metrics for %s to %s", service_name, endpoint)
    return get_meter()


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


def _sync_runs_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.runs_total",
        description="Connection sync attempts by provider, mode and outcome",
        unit="runs",
    )


def _sync_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="calsync.sync.duration_ms",
        description="Wall-clock duration of one connection sync in milliseconds",
        unit="ms",
    )


def _sync_events_applied_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.sync.events_applied_total",
        description="Mirrored external events upserted or deleted by sync",
        unit="events",
    )


def _token_refresh_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.token.refresh_failures_total",
        description="Failed OAuth refresh-token exchanges",
        unit="failures",
    )


def _retry_attempts_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="calsync.retry.attempts_total",
        description="Backoff retries scheduled by the retry executor",
        unit="retries",
    )


def record_sync_run(*, provider: str, mode: str, status: str, duration_ms: float) -> None:
    """Record one finished connection sync."""
    _sync_runs_total().add(1, {"provider": provider, "mode": mode, "status": status})
    _sync_duration_ms().record(duration_ms, {"provider": provider, "mode": mode})


def record_events_applied(*, upserted: int, deleted: int) -> None:
    if upserted:
        _sync_events_applied_total().add(upserted, {"action": "upsert"})
    if deleted:
        _sync_events_applied_total().add(deleted, {"action": "delete"})


def record_token_refresh_failure(provider: str) -> None:
    _token_refresh_failures_total().add(1, {"provider": provider})


def record_retry_attempt(code: str) -> None:
    _retry_attempts_total().add(1, {"code": code})
