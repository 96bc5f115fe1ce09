"""Tests for calsync.errors: the taxonomy, status classifiers and message hygiene."""

from __future__ import annotations

import httpx
import pytest

from calsync.errors import (
    CalendarError,
    CalendarErrorCode,
    ConnectionNotFoundError,
    SyncInProgressError,
    SyncTokenExpiredError,
    TokenRefreshError,
    classify_error,
    classify_google_status,
    classify_outlook_status,
    sanitize_error_message,
)

pytestmark = pytest.mark.unit


class TestStatusClassification:
    @pytest.mark.parametrize(
        ("status", "code", "retryable"),
        [
            (401, CalendarErrorCode.AUTHENTICATION_FAILED, False),
            (403, CalendarErrorCode.PERMISSION_DENIED, False),
            (404, CalendarErrorCode.NOT_FOUND, False),
            (409, CalendarErrorCode.CONFLICT, True),
            (429, CalendarErrorCode.RATE_LIMITED, True),
            (500, CalendarErrorCode.SERVICE_UNAVAILABLE, True),
            (503, CalendarErrorCode.SERVICE_UNAVAILABLE, True),
            (400, CalendarErrorCode.UNKNOWN_ERROR, False),
        ],
    )
    def test_google_and_outlook_share_the_table(self, status, code, retryable):
        for classify in (classify_google_status, classify_outlook_status):
            error = classify(status, "boom")
            assert error.code == code
            assert error.retryable is retryable
            assert error.status_code == status

    def test_google_410_on_sync_request_is_expired_cursor(self):
        error = classify_google_status(410, "Sync token is no longer valid", sync_request=True)
        assert isinstance(error, SyncTokenExpiredError)
        assert error.code == CalendarErrorCode.SYNC_TOKEN_EXPIRED
        assert error.retryable is False
        assert error.provider == "google"

    def test_outlook_410_on_sync_request_is_expired_cursor(self):
        error = classify_outlook_status(410, "resync required", sync_request=True)
        assert isinstance(error, SyncTokenExpiredError)
        assert error.provider == "outlook"

    def test_410_elsewhere_is_not_found(self):
        for classify in (classify_google_status, classify_outlook_status):
            error = classify(410, "Resource has been deleted")
            assert not isinstance(error, SyncTokenExpiredError)
            assert error.code == CalendarErrorCode.NOT_FOUND
            assert error.retryable is False
            assert error.status_code == 410

    def test_auth_and_permission_need_reconnect(self):
        assert classify_google_status(401, "x").reconnect_required
        assert classify_outlook_status(403, "x").reconnect_required
        assert not classify_google_status(429, "x").reconnect_required

    def test_message_names_provider(self):
        assert "Google Calendar rate limit exceeded" in str(classify_google_status(429, "slow"))
        assert "Outlook Calendar service unavailable" in str(classify_outlook_status(502, "x"))


class TestClassifyError:
    def test_calendar_errors_pass_through(self):
        original = CalendarError("x", code=CalendarErrorCode.RATE_LIMITED)
        assert classify_error(original) is original

    def test_transport_errors_are_transient(self):
        classified = classify_error(httpx.ConnectError("refused"))
        assert classified.code == CalendarErrorCode.SERVICE_UNAVAILABLE
        assert classified.retryable is True

    def test_timeouts_are_transient(self):
        classified = classify_error(httpx.ReadTimeout("slow"))
        assert classified.code == CalendarErrorCode.SERVICE_UNAVAILABLE

    def test_other_exceptions_are_unknown_and_final(self):
        classified = classify_error(KeyError("missing"))
        assert classified.code == CalendarErrorCode.UNKNOWN_ERROR
        assert classified.retryable is False


class TestSpecificErrors:
    def test_token_refresh_error_is_auth_failure(self):
        error = TokenRefreshError("nope", provider="google", status_code=400)
        assert error.code == CalendarErrorCode.AUTHENTICATION_FAILED
        assert error.retryable is False
        assert error.reconnect_required

    def test_sync_in_progress_is_not_retried(self):
        error = SyncInProgressError("conn-1")
        assert error.connection_id == "conn-1"
        assert error.retryable is False

    def test_connection_not_found(self):
        error = ConnectionNotFoundError("conn-9")
        assert error.code == CalendarErrorCode.NOT_FOUND
        assert "conn-9" in str(error)

    def test_details_are_json_friendly(self):
        details = classify_google_status(503, "down").details()
        assert details == {
            "code": "SERVICE_UNAVAILABLE",
            "retryable": True,
            "status_code": 503,
            "provider": "google",
        }


class TestSanitizeErrorMessage:
    def test_redacts_bearer_tokens(self):
        message = sanitize_error_message("Authorization: Bearer ya29.secret-value failed")
        assert "ya29" not in message
        assert "Bearer [REDACTED]" in message

    def test_redacts_key_value_credentials(self):
        message = sanitize_error_message("refresh_token=abc123&client_secret=shh")
        assert "abc123" not in message
        assert "shh" not in message

    def test_redacts_json_credentials(self):
        message = sanitize_error_message('{"access_token": "tok-123", "error": "bad"}')
        assert "tok-123" not in message
        assert '"error": "bad"' in message

    def test_truncates_to_limit(self):
        assert len(sanitize_error_message("x" * 500)) == 200
        assert len(sanitize_error_message("y" * 50, limit=10)) == 10

    def test_collapses_whitespace(self):
        assert sanitize_error_message("a\n\n  b\tc") == "a b c"

    def test_empty_exception_uses_type_name(self):
        assert sanitize_error_message(ValueError()) == "ValueError"
