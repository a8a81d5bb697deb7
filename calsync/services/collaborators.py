"""
Narrow interfaces to the collaborators the core reports to: caller
identity, notification delivery and audit logging.

Notifications and audit records are fire-and-forget: a failing
collaborator is logged and never fails the operation that triggered it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Deque, Dict, Optional, Set

logger = logging.getLogger(__name__)

OWNER_ROLES = {"owner", "doctor", "staff"}
ADMIN_ROLES = {"admin"}


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the identity provider."""
    user_id: str
    role: str = "owner"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def can_manage(self, owner_id: str) -> bool:
        return self.is_admin or (self.user_id == owner_id and self.role in OWNER_ROLES)


SYSTEM_ACTOR = Actor(user_id="system", role="admin")


class AuditEventType(Enum):
    """Types of audit events"""
    TIMESLOT_CREATED = "timeslot_created"
    TIMESLOT_UPDATED = "timeslot_updated"
    TIMESLOT_DELETED = "timeslot_deleted"
    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    CONFLICT_RESOLVED = "conflict_resolved"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"


@dataclass
class AuditEvent:
    """Represents an audit event"""
    event_type: AuditEventType
    actor_id: Optional[str]
    resource: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditLogger:
    """
    Default audit sink: writes to the log and keeps a bounded in-memory
    buffer of recent events. Deployments pass a subclass that forwards to
    their audit service.
    """

    def __init__(self, buffer_size: int = 1000):
        self.logger = logging.getLogger(__name__)
        self.recent_events: Deque[AuditEvent] = deque(maxlen=buffer_size)

    async def record(self, event: AuditEvent) -> None:
        self.recent_events.append(event)
        self.logger.info(
            f"AUDIT {event.event_type.value} actor={event.actor_id} resource={event.resource}"
        )


class NotificationDispatcher:
    """Default notification sink; logs what would be delivered."""

    def __init__(self):
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=1000)

    async def notify(self, recipient_id: str, topic: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"recipient_id": recipient_id, "topic": topic, "payload": payload})
        logger.debug(f"Notification {topic} -> {recipient_id}")


class Collaborators:
    """Bundles the fire-and-forget sinks and tracks their background tasks."""

    def __init__(
        self,
        notifier: Optional[NotificationDispatcher] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.notifier = notifier or NotificationDispatcher()
        self.audit = audit or AuditLogger()
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro: Awaitable[None], label: str) -> None:
        async def _guarded():
            try:
                await coro
            except Exception as e:
                logger.warning(f"{label} failed: {e}")

        task = asyncio.ensure_future(_guarded())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def notify(self, recipient_id: str, topic: str, payload: Dict[str, Any]) -> None:
        self._spawn(self.notifier.notify(recipient_id, topic, payload), f"Notification {topic}")

    def audit_event(
        self,
        event_type: AuditEventType,
        actor: Optional[Actor],
        resource: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            actor_id=actor.user_id if actor else None,
            resource=resource,
            details=details or {},
        )
        self._spawn(self.audit.record(event), f"Audit {event_type.value}")

    async def drain(self) -> None:
        """Wait for outstanding notifications and audit writes (tests, shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
