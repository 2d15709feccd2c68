"""Error taxonomy shared by the sync components.

Provider failures are classified once, in the Google client, so the outbound
dispatcher and inbound reconciler can decide between retrying, surfacing a
health status, or skipping the entity for good.
"""

from __future__ import annotations

from dataclasses import dataclass


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync core."""


class AuthExpired(CalendarSyncError):
    """Raised when no usable credential exists until the user reconsents."""


class ProviderError(CalendarSyncError):
    """Raised when a Google Calendar request fails permanently."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class TransientProviderError(ProviderError):
    """Network failure or 5xx; safe to retry with backoff."""


class RateLimited(ProviderError):
    """Provider asked us to back off for ``retry_after`` seconds."""

    def __init__(self, *, retry_after: float, message: str = "rate limited", status_code: int = 429) -> None:
        self.retry_after = retry_after
        super().__init__(status_code=status_code, message=message)


class EventNotFound(ProviderError):
    """The referenced event no longer exists on the provider (404/410)."""


class MappingError(CalendarSyncError):
    """The entity cannot be represented on the other side; never retried."""


class SyncCancelled(CalendarSyncError):
    """Raised when a cooperative cancellation request stops a pass."""


class StaleCalendarLink(CalendarSyncError):
    """The CalendarLink version changed since the caller read it."""


@dataclass(frozen=True)
class ConflictResolved:
    """Informational outcome: the provider's copy replaced the local task."""

    task_id: str
    event_id: str
    local_synced_at: str | None
    provider_updated_at: str
