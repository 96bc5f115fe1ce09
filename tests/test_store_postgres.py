"""Integration tests for PostgresCalendarStore against a migrated database."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.errors import ConnectionNotFoundError, SyncInProgressError
from calsync.models import (
    Attendee,
    AttendeeResponseStatus,
    EventStatus,
    ExternalCalendarEvent,
    ProviderName,
    ShowAs,
    SyncStatus,
    SyncType,
    WebhookChannel,
)
from calsync.store import PostgresCalendarStore

pytestmark = pytest.mark.integration

BASE = datetime(2030, 3, 1, 9, 0, tzinfo=UTC)


async def _insert_connection(db, *, provider: str = "google", user_id: str = "user-1") -> str:
    return await db.fetchval(
        """
        INSERT INTO calendar_connections (user_id, organization_id, provider, email, access_token,
                                          refresh_token)
        VALUES ($1, 'org-1', $2, 'owner@example.com', 'access-token', 'refresh-token')
        RETURNING id
        """,
        user_id,
        provider,
    )


def _event(connection_id: str, event_id: str, start: datetime = BASE, **extra):
    return ExternalCalendarEvent(
        connection_id=connection_id,
        provider_event_id=event_id,
        provider_calendar_id="primary",
        start_time=start,
        end_time=start + timedelta(minutes=30),
        **extra,
    )


class TestConnections:
    async def test_get_and_list_active(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            active = await _insert_connection(db)
            inactive = await _insert_connection(db, provider="outlook", user_id="user-2")
            await store.update_connection(inactive, is_active=False)

            connection = await store.get_connection(active)
            assert connection.provider == ProviderName.GOOGLE
            assert connection.calendar_id == "primary"
            assert connection.consecutive_failures == 0
            assert [c.id for c in await store.list_active_connections()] == [active]
            assert await store.get_connection("missing") is None

    async def test_update_whitelist_and_missing_row(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)

            updated = await store.update_connection(connection_id, last_sync_token="sync-1")
            assert updated.last_sync_token == "sync-1"

            with pytest.raises(ValueError, match="user_id"):
                await store.update_connection(connection_id, user_id="someone-else")
            with pytest.raises(ConnectionNotFoundError):
                await store.update_connection("missing", last_sync_token=None)

    async def test_failure_counter_deactivates_at_threshold(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)

            first = await store.record_connection_failure(connection_id, "boom", deactivate_at=2)
            assert first.consecutive_failures == 1
            assert first.is_active is True

            second = await store.record_connection_failure(connection_id, "boom", deactivate_at=2)
            assert second.consecutive_failures == 2
            assert second.is_active is False
            assert second.last_error == "boom"


class TestEvents:
    async def test_upsert_is_keyed_on_connection_and_provider_id(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)

            await store.upsert_event(
                _event(
                    connection_id,
                    "evt-1",
                    title="Kickoff",
                    attendees=[
                        Attendee(
                            email="a@example.com",
                            response_status=AttendeeResponseStatus.ACCEPTED,
                        )
                    ],
                    provider_data={"etag": "1"},
                    show_as=ShowAs.OUT_OF_OFFICE,
                )
            )
            await store.upsert_event(_event(connection_id, "evt-1", title="Renamed"))

            count = await db.fetchval(
                "SELECT count(*) FROM external_calendar_events WHERE calendar_connection_id = $1",
                connection_id,
            )
            assert count == 1
            [row] = await store.find_conflicting_events(
                connection_id, BASE, BASE + timedelta(hours=1)
            )
            assert row.title == "Renamed"
            assert row.attendees == []
            assert row.show_as == ShowAs.BUSY

    async def test_jsonb_round_trip(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            await store.upsert_event(
                _event(
                    connection_id,
                    "evt-1",
                    attendees=[Attendee(email="a@example.com", name="A")],
                    provider_data={"etag": "1", "nested": {"x": [1, 2]}},
                    recurrence_rule="RRULE:FREQ=WEEKLY",
                )
            )

            [event] = await store.find_conflicting_events(
                connection_id, BASE, BASE + timedelta(hours=1)
            )
            assert event.attendees[0].email == "a@example.com"
            assert event.provider_data == {"etag": "1", "nested": {"x": [1, 2]}}
            assert event.is_recurring is True

    async def test_conflicts_exclude_cancelled_and_adjacent(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            await store.upsert_event(_event(connection_id, "overlap"))
            await store.upsert_event(
                _event(connection_id, "cancelled", status=EventStatus.CANCELLED)
            )
            await store.upsert_event(_event(connection_id, "later", BASE + timedelta(hours=1)))

            conflicts = await store.find_conflicting_events(
                connection_id, BASE + timedelta(minutes=10), BASE + timedelta(hours=1)
            )
            assert [e.provider_event_id for e in conflicts] == ["overlap"]

    async def test_delete_and_cleanup(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            now = datetime.now(UTC)
            await store.upsert_event(_event(connection_id, "old", now - timedelta(days=40)))
            await store.upsert_event(_event(connection_id, "recent", now - timedelta(days=1)))
            await store.upsert_event(_event(connection_id, "gone", now))

            assert await store.delete_event(connection_id, "gone") is True
            assert await store.delete_event(connection_id, "gone") is False
            assert await store.delete_events_ended_before(
                connection_id, now - timedelta(days=30)
            ) == 1
            remaining = await db.fetch(
                "SELECT provider_event_id FROM external_calendar_events "
                "WHERE calendar_connection_id = $1",
                connection_id,
            )
            assert [r["provider_event_id"] for r in remaining] == ["recent"]


class TestSyncLogs:
    async def test_open_close_round_trip(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)

            log = await store.open_sync_log(
                connection_id=connection_id,
                sync_type=SyncType.INCREMENTAL,
                sync_token_before="sync-0",
            )
            assert log.status == SyncStatus.RUNNING
            await store.close_sync_log(
                log.id,
                status=SyncStatus.FAILED,
                retry_count=2,
                error_code="SERVICE_UNAVAILABLE",
                error_message="backend",
                error_details={"code": "SERVICE_UNAVAILABLE", "retryable": True},
            )

            row = await db.fetchrow(
                "SELECT status, sync_type, retry_count, error_details, completed_at "
                "FROM calendar_sync_logs WHERE id = $1",
                log.id,
            )
            assert row["status"] == "failed"
            assert row["sync_type"] == "incremental"
            assert row["retry_count"] == 2
            assert row["completed_at"] is not None

    async def test_second_running_log_is_rejected(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            log = await store.open_sync_log(connection_id=connection_id, sync_type=SyncType.FULL)

            with pytest.raises(SyncInProgressError):
                await store.open_sync_log(connection_id=connection_id, sync_type=SyncType.FULL)

            await store.close_sync_log(
                log.id, status=SyncStatus.COMPLETED, sync_type=SyncType.FULL
            )
            reopened = await store.open_sync_log(
                connection_id=connection_id, sync_type=SyncType.INCREMENTAL
            )
            assert reopened.id != log.id

    async def test_stale_running_logs_are_failed(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            await store.open_sync_log(connection_id=connection_id, sync_type=SyncType.FULL)

            assert await store.fail_stale_sync_logs(
                connection_id, started_before=datetime.now(UTC) - timedelta(hours=1)
            ) == 0
            assert await store.fail_stale_sync_logs(
                connection_id, started_before=datetime.now(UTC) + timedelta(seconds=1)
            ) == 1
            status = await db.fetchval(
                "SELECT status FROM calendar_sync_logs WHERE calendar_connection_id = $1",
                connection_id,
            )
            assert status == "failed"


class TestWebhookChannels:
    async def test_save_get_list_delete(self, provisioned_database):
        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
            connection_id = await _insert_connection(db)
            soon = datetime.now(UTC) + timedelta(hours=2)
            later = datetime.now(UTC) + timedelta(days=6)
            for channel_id, expiration in (("soon", soon), ("later", later)):
                await store.save_webhook_channel(
                    WebhookChannel(
                        connection_id=connection_id,
                        provider=ProviderName.GOOGLE,
                        channel_id=channel_id,
                        resource_id=f"res-{channel_id}",
                        resource="/calendars/primary/events",
                        notification_url="https://hooks.example.com/g",
                        expiration=expiration,
                    )
                )

            channel = await store.get_webhook_channel(connection_id, "soon")
            assert channel.resource_id == "res-soon"
            assert await store.get_webhook_channel("other-connection", "soon") is None

            expiring = await store.list_expiring_webhook_channels(
                datetime.now(UTC) + timedelta(days=1)
            )
            assert [c.channel_id for c in expiring] == ["soon"]

            assert await store.delete_webhook_channel(connection_id, "soon") is True
            assert await store.get_webhook_channel(connection_id, "soon") is None
