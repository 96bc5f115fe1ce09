"""Sync orchestration across calendar connections.

The orchestrator is the only place that decides *when* a connection syncs.
It wraps each provider sync in the retry executor, records a sync log per
attempt, isolates per-connection failures during sweeps, and exposes the
conflict and cleanup queries used by the scheduling domain.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from opentelemetry.trace import Status, StatusCode

from calsync.config import SyncConfig
from calsync.core.logging import connection_context
from calsync.core.metrics import record_sync_run
from calsync.core.telemetry import get_tracer, tag_connection_span
from calsync.errors import (
    CalendarError,
    ConnectionNotFoundError,
    SyncInProgressError,
    TokenRefreshError,
    classify_error,
    sanitize_error_message,
)
from calsync.factory import CalendarServiceFactory
from calsync.models import ExternalCalendarEvent, SyncStatus, SyncType
from calsync.providers.base import SyncOutcome
from calsync.retry import retry
from calsync.store import CalendarStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Per-connection results of one :meth:`SyncOrchestrator.sync_all_active_connections`."""

    succeeded: dict[str, SyncOutcome] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)


@dataclass
class WebhookRenewalReport:
    renewed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


class SyncOrchestrator:
    """Coordinates full/incremental syncs, sweeps, conflicts and cleanup."""

    def __init__(
        self,
        *,
        store: CalendarStore,
        factory: CalendarServiceFactory,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._factory = factory
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._trigger = asyncio.Event()

    # ------------------------------------------------------------------
    # Single connection
    # ------------------------------------------------------------------

    async def sync_connection(
        self,
        connection_id: str,
        mode: SyncType | str = SyncType.INCREMENTAL,
    ) -> SyncOutcome:
        """Sync one connection and record the attempt in a sync log.

        ``full`` runs a full sync; every other mode runs an incremental sync
        (which itself falls back to full when no usable cursor exists).

        Raises
        ------
        ConnectionNotFoundError
            If the connection does not exist.
        SyncInProgressError
            If another sync already holds the connection's running log.
        CalendarError
            Any classified failure left after retries, re-raised unchanged.
        """
        sync_type = SyncType(mode)
        connection = await self._store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        service = self._factory.for_connection(connection)
        provider = str(connection.provider)

        with (
            connection_context(connection_id),
            get_tracer().start_as_current_span("calsync.sync_connection") as span,
        ):
            tag_connection_span(span, connection_id=connection_id, provider=provider)
            span.set_attribute("calsync.sync_type", str(sync_type))

            stale_cutoff = datetime.now(UTC) - timedelta(
                seconds=self._config.max_sync_duration_seconds
            )
            abandoned = await self._store.fail_stale_sync_logs(
                connection_id, started_before=stale_cutoff
            )
            if abandoned:
                logger.warning("Marked %d abandoned sync log(s) as failed", abandoned)

            sync_log = await self._store.open_sync_log(
                connection_id=connection_id,
                sync_type=sync_type,
                sync_token_before=connection.last_sync_token,
            )

            retries = 0

            def _on_retry(attempt: int, error: CalendarError) -> None:
                nonlocal retries
                retries = attempt

            if sync_type == SyncType.FULL:
                operation = service.perform_full_sync
            else:
                operation = service.perform_incremental_sync

            started = time.monotonic()
            try:
                outcome = await retry(
                    lambda: operation(connection_id),
                    max_attempts=self._config.retry_max_attempts,
                    base_delay=self._config.retry_base_delay_seconds,
                    sleep=self._sleep,
                    on_retry=_on_retry,
                )
            except Exception as exc:
                duration_ms = (time.monotonic() - started) * 1000
                classified = classify_error(exc)
                message = sanitize_error_message(exc)
                await self._store.close_sync_log(
                    sync_log.id,
                    status=SyncStatus.FAILED,
                    retry_count=retries,
                    error_code=str(classified.code),
                    error_message=message,
                    error_details=classified.details(),
                )
                if classified.reconnect_required and not isinstance(exc, TokenRefreshError):
                    await self._store.record_connection_failure(connection_id, message)
                record_sync_run(
                    provider=provider,
                    mode=str(sync_type),
                    status=str(SyncStatus.FAILED),
                    duration_ms=duration_ms,
                )
                span.set_status(Status(StatusCode.ERROR, str(classified.code)))
                logger.warning(
                    "Sync failed for connection %s (%s): %s",
                    connection_id,
                    classified.code,
                    message,
                )
                raise

            duration_ms = (time.monotonic() - started) * 1000
            await self._store.close_sync_log(
                sync_log.id,
                status=SyncStatus.COMPLETED,
                # A cursor-less or expired incremental run is recorded as the full sync it became.
                sync_type=SyncType.FULL if outcome.sync_type == SyncType.FULL else None,
                sync_token_after=outcome.sync_token_after,
                events_processed=outcome.events_processed,
                events_updated=outcome.events_updated,
                events_deleted=outcome.events_deleted,
                retry_count=retries,
            )
            if connection.consecutive_failures or connection.last_error:
                await self._store.update_connection(
                    connection_id, consecutive_failures=0, last_error=None
                )
            record_sync_run(
                provider=provider,
                mode=str(outcome.sync_type),
                status=str(SyncStatus.COMPLETED),
                duration_ms=duration_ms,
            )
            logger.info(
                "Sync completed for connection %s (type=%s, updated=%d, deleted=%d, %.0fms)",
                connection_id,
                outcome.sync_type,
                outcome.events_updated,
                outcome.events_deleted,
                duration_ms,
            )
            return outcome

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def sync_all_active_connections(self) -> SweepReport:
        """Incrementally sync every active connection.

        One connection's failure is logged and recorded in the report; it
        never stops the remaining connections.
        """
        connections = await self._store.list_active_connections()
        report = SweepReport()
        semaphore = asyncio.Semaphore(self._config.max_concurrent_syncs)

        async def _sweep_one(connection_id: str) -> None:
            async with semaphore:
                try:
                    outcome = await self.sync_connection(connection_id, SyncType.INCREMENTAL)
                except SyncInProgressError:
                    logger.info("Skipping connection %s: sync already running", connection_id)
                    report.skipped.append(connection_id)
                except Exception as exc:
                    logger.error(
                        "Sweep sync failed for connection %s: %s",
                        connection_id,
                        sanitize_error_message(exc),
                        exc_info=True,
                    )
                    report.failed[connection_id] = str(classify_error(exc).code)
                else:
                    report.succeeded[connection_id] = outcome

        await asyncio.gather(*(_sweep_one(connection.id) for connection in connections))
        logger.info(
            "Sync sweep finished: %d succeeded, %d failed, %d skipped",
            len(report.succeeded),
            len(report.failed),
            len(report.skipped),
        )
        return report

    async def renew_expiring_webhooks(
        self,
        notification_url: str | None = None,
    ) -> WebhookRenewalReport:
        """Re-create push channels that expire within the renewal margin.

        Each replacement is created before the superseded channel is removed,
        so notifications keep flowing.  Failures are isolated per channel.
        """
        horizon = datetime.now(UTC) + timedelta(hours=self._config.webhook_renewal_margin_hours)
        channels = await self._store.list_expiring_webhook_channels(horizon)
        report = WebhookRenewalReport()

        for channel in channels:
            with connection_context(channel.connection_id):
                try:
                    connection = await self._store.get_connection(channel.connection_id)
                    if connection is None or not connection.is_active:
                        logger.info(
                            "Not renewing channel %s: connection inactive", channel.channel_id
                        )
                        continue
                    service = self._factory.for_connection(connection)
                    registration = await service.setup_webhook(
                        channel.connection_id,
                        notification_url or channel.notification_url,
                    )
                    try:
                        await service.remove_webhook(channel.connection_id, channel.channel_id)
                    except CalendarError as exc:
                        logger.warning(
                            "Superseded channel %s could not be removed: %s",
                            channel.channel_id,
                            sanitize_error_message(exc),
                        )
                    report.renewed[channel.channel_id] = registration.webhook_id
                except Exception as exc:
                    logger.error(
                        "Renewing channel %s failed: %s",
                        channel.channel_id,
                        sanitize_error_message(exc),
                        exc_info=True,
                    )
                    report.failed[channel.channel_id] = sanitize_error_message(exc)
        return report

    # ------------------------------------------------------------------
    # Scheduling-domain queries
    # ------------------------------------------------------------------

    async def get_conflicts(
        self,
        connection_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ExternalCalendarEvent]:
        """Mirrored events overlapping ``[start, end)`` that are not cancelled."""
        if end <= start:
            raise ValueError("end must be after start")
        return await self._store.find_conflicting_events(connection_id, start, end)

    async def cleanup_old_events(self, connection_id: str, older_than_days: int = 30) -> int:
        """Delete mirrored events that ended more than ``older_than_days`` ago."""
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        removed = await self._store.delete_events_ended_before(connection_id, cutoff)
        logger.info(
            "Removed %d mirrored event(s) older than %d day(s) for connection %s",
            removed,
            older_than_days,
            connection_id,
        )
        return removed

    # ------------------------------------------------------------------
    # Poller
    # ------------------------------------------------------------------

    def trigger(self) -> None:
        """Wake the poller for an immediate sweep."""
        self._trigger.set()

    async def run_forever(self, interval: float | None = None) -> None:
        """Sweep at ``interval`` seconds, or immediately after :meth:`trigger`."""
        interval_seconds = interval if interval is not None else self._config.interval_seconds
        logger.info("Calendar sync poller started (interval=%ss)", interval_seconds)
        while True:
            try:
                await self.sync_all_active_connections()
                if self._config.webhook_notification_url:
                    await self.renew_expiring_webhooks(self._config.webhook_notification_url)
            except Exception as exc:
                logger.error("Calendar sync poller error: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._trigger.wait(), timeout=interval_seconds)
                self._trigger.clear()
                logger.debug("Calendar sync poller: immediate sweep triggered")
            except TimeoutError:
                pass
