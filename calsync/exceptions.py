"""
Custom exceptions for the calendar sync core.

Every error carries a machine-readable ``kind`` and a ``detail`` mapping so
API handlers can surface it without string matching.
"""
from typing import Any, Dict, Optional


class CalendarSyncError(Exception):
    """Base class for all errors raised by the core."""

    kind = "error"

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        self.message = message
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "detail": self.detail}


class ValidationError(CalendarSyncError):
    """Raised for malformed or out-of-range input."""

    kind = "validation"

    def __init__(self, field: str, message: str, detail: Optional[Dict[str, Any]] = None):
        self.field = field
        super().__init__(message, {"field": field, **(detail or {})})


class OverlapError(CalendarSyncError):
    """Raised when a timeslot collides with an existing one."""

    kind = "overlap"

    def __init__(self, conflicting_id: str, message: str = None):
        self.conflicting_id = conflicting_id
        super().__init__(
            message or f"Timeslot overlaps existing timeslot {conflicting_id}",
            {"conflicting_id": conflicting_id},
        )


class NotFoundError(CalendarSyncError):
    """Raised when an entity is not found."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class PermissionDeniedError(CalendarSyncError):
    """Raised when the caller's role does not allow the operation."""

    kind = "forbidden"


class InvalidStateError(CalendarSyncError):
    """Raised on an illegal lifecycle transition."""

    kind = "invalid_state"

    def __init__(self, current: str, target: str, message: str = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot transition from {current} to {target}",
            {"current": current, "target": target},
        )


class ConcurrencyError(CalendarSyncError):
    """Raised on a stale etag or a lost compare-and-set."""

    kind = "concurrency"

    def __init__(self, message: str, current_etag: Optional[str] = None, detail: Optional[Dict[str, Any]] = None):
        self.current_etag = current_etag
        super().__init__(message, {"current_etag": current_etag, **(detail or {})})


class SlotUnavailableError(ConcurrencyError):
    """Raised when a reservation loses the race or the slot is full."""

    kind = "unavailable"

    def __init__(self, slot_id: str, message: str = None):
        self.slot_id = slot_id
        super().__init__(message or f"Timeslot {slot_id} is not available", detail={"slot_id": slot_id})


class ProviderError(CalendarSyncError):
    """Raised when a calendar provider call fails."""

    kind = "provider"
    retryable = False

    def __init__(self, message: str, provider: str = None, status_code: int = None, url: str = None):
        self.provider = provider
        self.status_code = status_code
        self.url = url
        super().__init__(
            message,
            {"provider": provider, "status_code": status_code, "url": url, "retryable": self.retryable},
        )


class RetryableProviderError(ProviderError):
    """Timeout, transport failure, 5xx, 429 or 408."""

    retryable = True


class TerminalProviderError(ProviderError):
    """Any other 4xx; never retried."""


class ProviderAuthError(TerminalProviderError):
    """Raised on 401/403 from a provider."""


class ProviderNotFoundError(TerminalProviderError):
    """Raised on 404 from a provider."""


class SyncTokenInvalid(CalendarSyncError):
    """Raised when the provider rejects a sync token; triggers a full resync."""

    kind = "sync_token_invalid"

    def __init__(self, calendar_id: str, message: str = None):
        self.calendar_id = calendar_id
        super().__init__(message or f"Sync token rejected for calendar {calendar_id}", {"calendar_id": calendar_id})


class SyncInProgressError(CalendarSyncError):
    """Raised when another sync pass holds the same (user, calendar) key."""

    kind = "sync_in_progress"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Sync already running for {key}", {"key": key})
