"""Cross-provider calendar error taxonomy and classifiers.

Every failure raised by a provider client is a :class:`CalendarError` whose
``code`` is one of :class:`CalendarErrorCode`.  Callers branch on the code and
the ``retryable`` flag, never on the provider that produced the error.
"""

from __future__ import annotations

import re
from enum import StrEnum

import httpx


class CalendarErrorCode(StrEnum):
    """Provider-neutral failure kinds."""

    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SYNC_TOKEN_EXPIRED = "SYNC_TOKEN_EXPIRED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset(
    {
        CalendarErrorCode.RATE_LIMITED,
        CalendarErrorCode.SERVICE_UNAVAILABLE,
        CalendarErrorCode.CONFLICT,
    }
)
RECONNECT_CODES = frozenset(
    {
        CalendarErrorCode.AUTHENTICATION_FAILED,
        CalendarErrorCode.PERMISSION_DENIED,
    }
)


class CalendarError(RuntimeError):
    """Base error for every classified calendar failure."""

    def __init__(
        self,
        message: str,
        *,
        code: CalendarErrorCode = CalendarErrorCode.UNKNOWN_ERROR,
        retryable: bool | None = None,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        self.code = CalendarErrorCode(code)
        self.retryable = self.code in RETRYABLE_CODES if retryable is None else retryable
        self.status_code = status_code
        self.provider = provider
        self.message = message
        super().__init__(message)

    @property
    def reconnect_required(self) -> bool:
        """True when the owning user must re-authorize the connection."""
        return self.code in RECONNECT_CODES

    def details(self) -> dict[str, object]:
        return {
            "code": str(self.code),
            "retryable": self.retryable,
            "status_code": self.status_code,
            "provider": self.provider,
        }


class SyncTokenExpiredError(CalendarError):
    """Raised when a provider rejects a stored sync cursor; caller must run a full sync."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int = 410):
        super().__init__(
            message,
            code=CalendarErrorCode.SYNC_TOKEN_EXPIRED,
            retryable=False,
            status_code=status_code,
            provider=provider,
        )


class TokenRefreshError(CalendarError):
    """Raised when a refresh-token exchange fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code=CalendarErrorCode.AUTHENTICATION_FAILED,
            retryable=False,
            status_code=status_code,
            provider=provider,
        )


class SyncInProgressError(CalendarError):
    """Raised when a connection already has a running sync."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(
            f"A sync is already running for connection '{connection_id}'",
            code=CalendarErrorCode.CONFLICT,
            retryable=False,
        )


class ConnectionNotFoundError(CalendarError):
    """Raised when a calendar connection id does not resolve to a row."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(
            f"Calendar connection '{connection_id}' not found",
            code=CalendarErrorCode.NOT_FOUND,
        )


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------

_GOOGLE_MESSAGES = {
    CalendarErrorCode.AUTHENTICATION_FAILED: (
        "Authentication failed - please reconnect your Google Calendar"
    ),
    CalendarErrorCode.PERMISSION_DENIED: (
        "Calendar access denied - check Google Calendar permissions"
    ),
    CalendarErrorCode.NOT_FOUND: "Calendar or event not found",
    CalendarErrorCode.CONFLICT: (
        "Event conflict - the event may have been modified by another application"
    ),
    CalendarErrorCode.RATE_LIMITED: "Google Calendar rate limit exceeded",
    CalendarErrorCode.SERVICE_UNAVAILABLE: "Google Calendar service unavailable",
}

_OUTLOOK_MESSAGES = {
    CalendarErrorCode.AUTHENTICATION_FAILED: (
        "Authentication failed - please reconnect your Outlook Calendar"
    ),
    CalendarErrorCode.PERMISSION_DENIED: (
        "Calendar access denied - check Outlook Calendar permissions"
    ),
    CalendarErrorCode.NOT_FOUND: "Calendar or event not found",
    CalendarErrorCode.CONFLICT: (
        "Event conflict - the event may have been modified by another application"
    ),
    CalendarErrorCode.RATE_LIMITED: "Outlook Calendar rate limit exceeded",
    CalendarErrorCode.SERVICE_UNAVAILABLE: "Outlook Calendar service unavailable",
    CalendarErrorCode.SYNC_TOKEN_EXPIRED: "Sync token expired - performing full sync",
}


def _code_for_status(status_code: int) -> CalendarErrorCode:
    if status_code == 401:
        return CalendarErrorCode.AUTHENTICATION_FAILED
    if status_code == 403:
        return CalendarErrorCode.PERMISSION_DENIED
    if status_code in (404, 410):
        return CalendarErrorCode.NOT_FOUND
    if status_code == 409:
        return CalendarErrorCode.CONFLICT
    if status_code == 429:
        return CalendarErrorCode.RATE_LIMITED
    if status_code >= 500:
        return CalendarErrorCode.SERVICE_UNAVAILABLE
    return CalendarErrorCode.UNKNOWN_ERROR


def classify_google_status(
    status_code: int, message: str, *, sync_request: bool = False
) -> CalendarError:
    """Map a failed Google Calendar response onto the shared taxonomy.

    Google signals an invalid ``syncToken`` with 410 Gone; on a request that
    carried one (``sync_request``) that case is returned as
    :class:`SyncTokenExpiredError`.  Anywhere else 410 means the resource was
    deleted and is reported as ``NOT_FOUND``.
    """
    if status_code == 410 and sync_request:
        return SyncTokenExpiredError(
            f"Google Calendar sync token expired: {message}",
            provider="google",
        )
    code = _code_for_status(status_code)
    prefix = _GOOGLE_MESSAGES.get(code, "Google Calendar error")
    return CalendarError(
        f"{prefix} ({status_code}): {message}",
        code=code,
        status_code=status_code,
        provider="google",
    )


def classify_outlook_status(
    status_code: int, message: str, *, sync_request: bool = False
) -> CalendarError:
    """Map a failed Microsoft Graph response onto the shared taxonomy.

    Only a replayed delta link (``sync_request``) turns 410 into
    :class:`SyncTokenExpiredError`.
    """
    if status_code == 410 and sync_request:
        return SyncTokenExpiredError(
            f"{_OUTLOOK_MESSAGES[CalendarErrorCode.SYNC_TOKEN_EXPIRED]}: {message}",
            provider="outlook",
        )
    code = _code_for_status(status_code)
    prefix = _OUTLOOK_MESSAGES.get(code, "Outlook Calendar error")
    return CalendarError(
        f"{prefix} ({status_code}): {message}",
        code=code,
        status_code=status_code,
        provider="outlook",
    )


def classify_error(exc: BaseException) -> CalendarError:
    """Classify any exception for the retry executor.

    Already-classified errors pass through unchanged.  Network-level httpx
    failures count as a transient outage; everything else is unknown and
    not retryable.
    """
    if isinstance(exc, CalendarError):
        return exc
    if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
        return CalendarError(
            f"Calendar provider unreachable: {exc}",
            code=CalendarErrorCode.SERVICE_UNAVAILABLE,
        )
    return CalendarError(str(exc) or type(exc).__name__, code=CalendarErrorCode.UNKNOWN_ERROR)


# ---------------------------------------------------------------------------
# Message hygiene
# ---------------------------------------------------------------------------

_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|token"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\b(Bearer)\s+[A-Za-z0-9._~+/=-]+", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error_message(exc: BaseException | str, *, limit: int = 200) -> str:
    """Redact, collapse whitespace and truncate an error for storage."""
    raw = exc if isinstance(exc, str) else str(exc) or type(exc).__name__
    return " ".join(redact_credential_values(raw).split())[:limit]
