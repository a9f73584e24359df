"""
Module: approval_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE.
    - Hash chain integrity: hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    AuditEvent IS the audit trail.  Definition lifecycle changes,
    submissions, activations, decisions, cancellations, pipeline task
    transitions and rollbacks each produce an AuditEvent.  A rollback resets
    task status but never removes the events recorded before it.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_kernel.exceptions import ImmutabilityViolationError


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Definition lifecycle
    DEFINITION_DRAFTED = "definition_drafted"
    DEFINITION_UPDATED = "definition_updated"
    DEFINITION_DELETED = "definition_deleted"
    DEFINITION_PUBLISHED = "definition_published"
    DEFINITION_SUPERSEDED = "definition_superseded"
    DEFINITION_UNPUBLISHED = "definition_unpublished"

    # Instance lifecycle
    INSTANCE_SUBMITTED = "instance_submitted"
    STEP_ACTIVATED = "step_activated"
    STEP_SKIPPED = "step_skipped"
    INSTANCE_BLOCKED = "instance_blocked"
    DECISION_RECORDED = "decision_recorded"
    STEP_RESOLVED = "step_resolved"
    INSTANCE_APPROVED = "instance_approved"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELLED = "instance_cancelled"

    # Pipeline lifecycle
    PIPELINE_TEMPLATE_REGISTERED = "pipeline_template_registered"
    PIPELINE_STARTED = "pipeline_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_REOPENED = "task_reopened"
    OUTCOME_SELECTED = "outcome_selected"
    ROLLBACK_APPLIED = "rollback_applied"
    PIPELINE_HALTED = "pipeline_halted"
    PIPELINE_COMPLETED = "pipeline_completed"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - Hash correctness is not checked at INSERT time; that is the
          responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # e.g. "ApprovalInstance", "ApprovalDefinition", "Pipeline"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None


@event.listens_for(AuditEvent, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot modify",
    )


@event.listens_for(AuditEvent, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot delete",
    )
