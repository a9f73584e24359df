"""
InstanceService -- persistence for approval instances and decisions.

Responsibility:
    Stores compiled instances, loads them (optionally under a row lock) for
    mutation, writes back the new state produced by the pure step machine
    and aggregator, and appends verbatim decision records.

Architecture position:
    Kernel > Services -- imperative shell.  Holds no business rules about
    *which* transition is legal; that belongs to approval_engines.  This
    service only guarantees that what it writes is written atomically and
    against the version that was read.

Invariants enforced:
    - Single writer: instances are read ``FOR UPDATE`` before mutation and
      written with the optimistic ``lock_version`` check.
    - Terminal instances are never written again.
    - One decision per (instance, step, approver).

Failure modes:
    - InstanceNotFoundError for an unknown id.
    - InstanceAlreadyTerminalError when saving over a terminal instance.
    - ConcurrentModificationError when the row changed since it was read.
    - DuplicateDecisionError when the decision row already exists.

Audit relevance:
    Submissions and decisions are audited here; step transitions are
    audited by the caller that produced them.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.instance import (
    TERMINAL_INSTANCE_STATUSES,
    DecisionRecord,
    Instance,
    InstanceStatus,
)
from approval_kernel.exceptions import (
    ConcurrentModificationError,
    DuplicateDecisionError,
    InstanceAlreadyTerminalError,
    InstanceNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.models.instance import ApprovalDecisionModel, ApprovalInstanceModel
from approval_kernel.services.auditor_service import AuditorService

logger = get_logger("services.instance")


class InstanceService:
    """Load and store approval instances."""

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def create(self, instance: Instance) -> Instance:
        """Persist a freshly compiled instance."""
        model = ApprovalInstanceModel.from_dto(instance)
        self._session.add(model)
        self._session.flush()

        self._auditor.record_instance(
            instance.instance_id,
            AuditAction.INSTANCE_SUBMITTED,
            instance.submitted_by,
            definition_code=instance.definition_code,
            definition_version=instance.definition_version,
            step_count=len(instance.steps),
        )
        logger.info(
            "instance_submitted",
            extra={
                "instance_id": str(instance.instance_id),
                "definition_code": instance.definition_code,
                "definition_version": instance.definition_version,
                "step_count": len(instance.steps),
            },
        )
        return model.to_dto()

    def load(self, instance_id: UUID, for_update: bool = False) -> Instance:
        return self._load_model(instance_id, for_update=for_update).to_dto()

    def save(self, instance: Instance) -> Instance:
        """
        Write ``instance``'s mutable state over the stored row.

        ``instance.lock_version`` must match the stored row: a DTO read
        before another writer committed is refused, never merged.
        """
        model = self._load_model(instance.instance_id, refresh=True)
        stored = InstanceStatus(model.status)
        if stored in TERMINAL_INSTANCE_STATUSES:
            raise InstanceAlreadyTerminalError(str(instance.instance_id), stored.value)
        if model.lock_version != instance.lock_version:
            self._refuse_stale(instance, stored_version=model.lock_version)

        model.apply(instance, self._clock.now())
        try:
            self._session.flush()
        except StaleDataError as exc:
            self._refuse_stale(instance, cause=exc)
        return model.to_dto()

    def _refuse_stale(
        self,
        instance: Instance,
        stored_version: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        logger.warning(
            "instance_concurrent_modification",
            extra={
                "instance_id": str(instance.instance_id),
                "read_version": instance.lock_version,
                "stored_version": stored_version,
            },
        )
        raise ConcurrentModificationError(
            "ApprovalInstance", str(instance.instance_id)
        ) from cause

    def record_decision(self, record: DecisionRecord) -> DecisionRecord:
        """Append one verbatim decision row."""
        model = ApprovalDecisionModel.from_dto(record)
        try:
            with self._session.begin_nested():
                self._session.add(model)
                self._session.flush()
        except IntegrityError as exc:
            existing = self._find_decision(
                record.instance_id, record.step_index, record.approver_id
            )
            recorded = existing.decision if existing is not None else "unknown"
            raise DuplicateDecisionError(
                record.approver_id, record.step_index, recorded
            ) from exc

        self._auditor.record_instance(
            record.instance_id,
            AuditAction.DECISION_RECORDED,
            record.approver_id,
            step_index=record.step_index,
            decision=record.decision.value,
            comment=record.comment,
        )
        logger.info(
            "decision_recorded",
            extra={
                "instance_id": str(record.instance_id),
                "step_index": record.step_index,
                "approver_id": record.approver_id,
                "decision": record.decision.value,
            },
        )
        return model.to_dto()

    def list_decisions(self, instance_id: UUID) -> list[DecisionRecord]:
        models = self._session.execute(
            select(ApprovalDecisionModel)
            .where(ApprovalDecisionModel.instance_id == instance_id)
            .order_by(ApprovalDecisionModel.decided_at, ApprovalDecisionModel.step_index)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def _load_model(
        self, instance_id: UUID, for_update: bool = False, refresh: bool = False
    ) -> ApprovalInstanceModel:
        stmt = select(ApprovalInstanceModel).where(ApprovalInstanceModel.id == instance_id)
        if for_update:
            stmt = stmt.with_for_update()
        if refresh:
            # overwrite any identity-map copy with the committed row
            stmt = stmt.execution_options(populate_existing=True)
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model

    def _find_decision(
        self, instance_id: UUID, step_index: int, approver_id: str
    ) -> ApprovalDecisionModel | None:
        return self._session.execute(
            select(ApprovalDecisionModel).where(
                ApprovalDecisionModel.instance_id == instance_id,
                ApprovalDecisionModel.step_index == step_index,
                ApprovalDecisionModel.approver_id == approver_id,
            )
        ).scalar_one_or_none()
