"""
approval_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines
    (approval_engines/) with database sessions, the organisational
    directory, locks and notifications.  This is the **only** layer that
    owns transactions, holds locks, or talks to external collaborators.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundary.py):
        approval_services/ -> approval_engines/  (allowed)
        approval_services/ -> approval_kernel/   (allowed)
        approval_engines/  -> approval_services/ (FORBIDDEN)
        approval_kernel/   -> approval_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: all kernel service wiring is centralised in
      ServiceOrchestrator; no service self-constructs dependencies.

Audit relevance:
    - This package is the canonical import surface for external consumers.
"""

from approval_kernel.logging_config import get_logger

logger = get_logger("services")

from approval_services.directory import StaticOrgDirectory, TimeoutBoundedDirectory
from approval_services.engine import ApprovalEngine
from approval_services.locks import KeyedLockRegistry
from approval_services.notifications import (
    EventDispatcher,
    LoggingEventDispatcher,
    NotificationEvent,
    NotificationKind,
    Notifier,
)
from approval_services.orchestrator import ServiceOrchestrator
from approval_services.rollback_coordinator import RollbackCoordinator
from approval_services.step_advancer import StepAdvancer

__all__ = [
    "ApprovalEngine",
    "EventDispatcher",
    "KeyedLockRegistry",
    "LoggingEventDispatcher",
    "NotificationEvent",
    "NotificationKind",
    "Notifier",
    "RollbackCoordinator",
    "ServiceOrchestrator",
    "StaticOrgDirectory",
    "StepAdvancer",
    "TimeoutBoundedDirectory",
]
