"""
approval_services.notifications -- Outbound, best-effort event delivery.

Responsibility:
    Describe the events the engine emits (step activated, decision
    recorded, instance terminal, instance blocked, rollback applied) and
    deliver them to an external dispatcher after the state change that
    produced them has committed.

Architecture position:
    Services -- the boundary to the notification collaborator.  Nothing in
    the kernel or engines knows notifications exist.

Invariants enforced:
    - Events are published only after commit; a failed transaction
      publishes nothing.
    - A dispatcher failure never propagates: it is logged
      (``notification_failed``) and queued for ``retry_failed``.
    - A queued event is dropped after ``max_retries`` failed attempts.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Protocol

from approval_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class NotificationKind(str, Enum):
    STEP_ACTIVATED = "step_activated"
    DECISION_RECORDED = "decision_recorded"
    INSTANCE_TERMINAL = "instance_terminal"
    INSTANCE_BLOCKED = "instance_blocked"
    ROLLBACK_APPLIED = "rollback_applied"


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    subject_id: str
    recipients: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    payload: Mapping[str, Any] = field(default_factory=dict)


class EventDispatcher(Protocol):
    def dispatch(self, event: NotificationEvent) -> None:
        ...


class LoggingEventDispatcher:
    """Dispatcher that writes every event to the structured log."""

    def dispatch(self, event: NotificationEvent) -> None:
        logger.info(
            "notification_dispatched",
            extra={
                "kind": event.kind.value,
                "subject_id": event.subject_id,
                "recipients": list(event.recipients),
                "cc": list(event.cc),
                "payload": dict(event.payload),
            },
        )


@dataclass
class _Pending:
    event: NotificationEvent
    attempts: int


class Notifier:
    """Publishes events and keeps failed ones for a later retry."""

    def __init__(self, dispatcher: EventDispatcher, max_retries: int = 3) -> None:
        self._dispatcher = dispatcher
        self._max_retries = max_retries
        self._failed: deque[_Pending] = deque()
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._failed)

    def publish(self, events: Iterable[NotificationEvent]) -> int:
        """Dispatch ``events``.  Returns how many were delivered."""
        delivered = 0
        for event in events:
            if self._send(event, attempts=0):
                delivered += 1
        return delivered

    def retry_failed(self) -> int:
        """Re-send queued events once each.  Returns how many were delivered."""
        with self._lock:
            batch = list(self._failed)
            self._failed.clear()
        delivered = 0
        for pending in batch:
            if self._send(pending.event, attempts=pending.attempts):
                delivered += 1
        return delivered

    def _send(self, event: NotificationEvent, attempts: int) -> bool:
        try:
            self._dispatcher.dispatch(event)
        except Exception as exc:
            attempts += 1
            logger.warning(
                "notification_failed",
                extra={
                    "kind": event.kind.value,
                    "subject_id": event.subject_id,
                    "attempts": attempts,
                    "error": str(exc),
                },
            )
            if attempts >= self._max_retries:
                logger.error(
                    "notification_dropped",
                    extra={"kind": event.kind.value, "subject_id": event.subject_id},
                )
            else:
                with self._lock:
                    self._failed.append(_Pending(event, attempts))
            return False
        return True
