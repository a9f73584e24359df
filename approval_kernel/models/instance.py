"""
Module: approval_kernel.models.instance
Responsibility: ORM persistence for approval instances, their steps, the
    resolved approvers on each step, and the verbatim decision log.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - Optimistic concurrency: ``lock_version`` is SQLAlchemy's
      version_id_col, so a stale writer fails with StaleDataError.
    - Terminal instances are frozen: once status leaves ``pending`` no
      further UPDATE is accepted.
    - Decision uniqueness: UNIQUE(instance_id, step_index, approver_id).
    - Decisions are append-only -- no UPDATE, no DELETE.

Failure modes:
    - StaleDataError on a concurrent update (mapped to
      ConcurrentModificationError by the instance service).
    - IntegrityError on a duplicate decision row.
    - ImmutabilityViolationError on decision UPDATE/DELETE or on changes
      to a terminal instance.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import flag_modified

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.instance import (
        Approver,
        DecisionRecord,
        Instance,
        Step,
    )

_TERMINAL = ("approved", "rejected", "cancelled")


class ApprovalInstanceModel(Base):
    """Persistent approval instance.

    Contract:
        Mutated only by the instance service while the caller holds the
        per-instance lock.  ``lock_version`` increments on every UPDATE.
    """

    __tablename__ = "approval_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_instances_valid_status",
        ),
        Index("ix_approval_instances_status", "status", "blocked"),
        Index("ix_approval_instances_submitter", "submitted_by", "submitted_at"),
    )

    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_definitions.id"), nullable=False,
    )
    definition_code: Mapped[str] = mapped_column(String(100), nullable=False)
    definition_version: Mapped[int] = mapped_column(nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    form_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    submitted_by: Mapped[str] = mapped_column(String(100), nullable=False)
    submitter_department_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    self_selected: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    cc_user_ids: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    current_step: Mapped[int] = mapped_column(nullable=False, default=0)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    pipeline_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("pipelines.id"), nullable=True,
    )
    task_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lock_version: Mapped[int] = mapped_column(nullable=False, default=1)

    steps: Mapped[list[ApprovalStepModel]] = relationship(
        "ApprovalStepModel",
        back_populates="instance",
        order_by="ApprovalStepModel.step_index",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    def __repr__(self) -> str:
        return (
            f"<ApprovalInstance {self.id} {self.definition_code}"
            f" v{self.definition_version} status={self.status}>"
        )

    def to_dto(self) -> Instance:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.instance import (
            Instance as InstanceDTO,
            InstanceStatus,
        )

        return InstanceDTO(
            instance_id=self.id,
            definition_id=self.definition_id,
            definition_code=self.definition_code,
            definition_version=self.definition_version,
            title=self.title,
            form_data=dict(self.form_data),
            submitted_by=self.submitted_by,
            steps=tuple(s.to_dto() for s in self.steps),
            status=InstanceStatus(self.status),
            current_step=self.current_step,
            submitter_department_id=self.submitter_department_id,
            self_selected={
                int(k): tuple(v) for k, v in (self.self_selected or {}).items()
            },
            cc_user_ids=tuple(self.cc_user_ids or ()),
            blocked=self.blocked,
            blocked_reason=self.blocked_reason,
            submitted_at=self.submitted_at,
            completed_at=self.completed_at,
            pipeline_id=self.pipeline_id,
            task_code=self.task_code,
            lock_version=self.lock_version,
        )

    @classmethod
    def from_dto(cls, dto: Instance) -> ApprovalInstanceModel:
        """Create ORM model (with steps) from domain DTO."""
        model = cls(
            id=dto.instance_id,
            definition_id=dto.definition_id,
            definition_code=dto.definition_code,
            definition_version=dto.definition_version,
            title=dto.title,
            form_data=dict(dto.form_data),
            submitted_by=dto.submitted_by,
            submitter_department_id=dto.submitter_department_id,
            self_selected={str(k): list(v) for k, v in dto.self_selected.items()},
            cc_user_ids=list(dto.cc_user_ids),
            submitted_at=dto.submitted_at,
            updated_at=dto.submitted_at,
            pipeline_id=dto.pipeline_id,
            task_code=dto.task_code,
        )
        model.steps = [ApprovalStepModel.from_dto(dto.instance_id, s) for s in dto.steps]
        model.apply(dto, dto.submitted_at)
        return model

    def apply(self, dto: Instance, now: datetime) -> None:
        """Copy mutable state from ``dto`` onto this row and its steps."""
        self.status = dto.status.value
        self.current_step = dto.current_step
        self.blocked = dto.blocked
        self.blocked_reason = dto.blocked_reason
        self.completed_at = dto.completed_at
        self.updated_at = now
        # Always emit an UPDATE so lock_version moves with every mutation.
        flag_modified(self, "updated_at")
        by_index = {s.step_index: s for s in self.steps}
        for step in dto.steps:
            by_index[step.index].apply(step)


class ApprovalStepModel(Base):
    """One approve node's runtime record.  ``node_snapshot`` is write-once."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        UniqueConstraint("instance_id", "step_index", name="uq_approval_steps_index"),
        CheckConstraint(
            "status IN ('pending', 'active', 'approved', 'rejected', 'skipped')",
            name="ck_approval_steps_valid_status",
        ),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False,
    )
    step_index: Mapped[int] = mapped_column(nullable=False)
    node_name: Mapped[str] = mapped_column(String(200), nullable=False)
    node_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    eligible_position: Mapped[int | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    instance: Mapped[ApprovalInstanceModel] = relationship(
        "ApprovalInstanceModel", back_populates="steps",
    )
    approvers: Mapped[list[StepApproverModel]] = relationship(
        "StepApproverModel",
        back_populates="step",
        order_by="StepApproverModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> Step:
        from approval_kernel.domain.instance import Step as StepDTO, StepStatus
        from approval_kernel.domain.schema_codec import parse_approve_node

        return StepDTO(
            index=self.step_index,
            node=parse_approve_node(self.node_snapshot),
            status=StepStatus(self.status),
            approvers=tuple(a.to_dto() for a in self.approvers),
            eligible_position=self.eligible_position,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, instance_id: UUID, dto: Step) -> ApprovalStepModel:
        from approval_kernel.domain.schema_codec import flow_node_to_dict

        return cls(
            instance_id=instance_id,
            step_index=dto.index,
            node_name=dto.node_name,
            node_snapshot=flow_node_to_dict(dto.node),
            status=dto.status.value,
        )

    def apply(self, dto: Step) -> None:
        self.status = dto.status.value
        self.eligible_position = dto.eligible_position
        self.started_at = dto.started_at
        self.completed_at = dto.completed_at
        # Approvers are appended once at activation, then only change status.
        for position, approver in enumerate(dto.approvers):
            if position < len(self.approvers):
                self.approvers[position].apply(approver)
            else:
                self.approvers.append(StepApproverModel.from_dto(position, approver))


class StepApproverModel(Base):
    """A resolved approver on a step, in resolution order."""

    __tablename__ = "step_approvers"

    __table_args__ = (
        UniqueConstraint("step_id", "user_id", name="uq_step_approvers_user"),
        UniqueConstraint("step_id", "position", name="uq_step_approvers_position"),
        Index("ix_step_approvers_user_status", "user_id", "status"),
    )

    step_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_steps.id"), nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    step: Mapped[ApprovalStepModel] = relationship(
        "ApprovalStepModel", back_populates="approvers",
    )

    def to_dto(self) -> Approver:
        from approval_kernel.domain.instance import Approver as ApproverDTO, ApproverStatus

        return ApproverDTO(
            user_id=self.user_id,
            status=ApproverStatus(self.status),
            comment=self.comment,
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, position: int, dto: Approver) -> StepApproverModel:
        model = cls(position=position, user_id=dto.user_id)
        model.apply(dto)
        return model

    def apply(self, dto: Approver) -> None:
        self.status = dto.status.value
        self.comment = dto.comment
        self.decided_at = dto.decided_at


class ApprovalDecisionModel(Base):
    """Verbatim decision record.  Append-only.

    Guarantees:
        - UNIQUE(instance_id, step_index, approver_id): an approver decides
          a step at most once.
    """

    __tablename__ = "approval_decisions"

    __table_args__ = (
        UniqueConstraint(
            "instance_id", "step_index", "approver_id",
            name="uq_approval_decisions_approver",
        ),
        Index("ix_approval_decisions_instance", "instance_id"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_instances.id"), nullable=False,
    )
    step_index: Mapped[int] = mapped_column(nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision {self.id} instance={self.instance_id} "
            f"step={self.step_index} {self.approver_id}={self.decision}>"
        )

    def to_dto(self) -> DecisionRecord:
        from approval_kernel.domain.instance import Decision, DecisionRecord as DecisionDTO

        return DecisionDTO(
            decision_id=self.id,
            instance_id=self.instance_id,
            step_index=self.step_index,
            approver_id=self.approver_id,
            decision=Decision(self.decision),
            comment=self.comment,
            decided_at=self.decided_at,
        )

    @classmethod
    def from_dto(cls, dto: DecisionRecord) -> ApprovalDecisionModel:
        return cls(
            id=dto.decision_id,
            instance_id=dto.instance_id,
            step_index=dto.step_index,
            approver_id=dto.approver_id,
            decision=dto.decision.value,
            comment=dto.comment,
            decided_at=dto.decided_at,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================


@event.listens_for(ApprovalInstanceModel, "before_update")
def prevent_terminal_instance_update(mapper, connection, target):
    """A terminal instance never changes again."""
    history = sa_inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous in _TERMINAL:
        raise ImmutabilityViolationError(
            entity_type="ApprovalInstance",
            entity_id=str(target.id),
            reason=f"instance is {previous} -- cannot modify",
        )


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot delete",
    )
