"""
Module: approval_kernel.models.pipeline
Responsibility: ORM persistence for pipeline templates, running pipelines,
    their tasks, and the append-only task action log.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - A registered template is frozen (template rows are never updated).
    - Task rows snapshot their outcomes at pipeline start, so later template
      changes never alter a running pipeline.
    - ``work_product`` is never cleared by a rollback; only status reverts.
    - Task actions are append-only -- no UPDATE, no DELETE.
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
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import flag_modified

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.pipeline import (
        Pipeline,
        PipelineTask,
        PipelineTemplate,
        TaskAction,
    )


class PipelineTemplateModel(Base):
    """A registered, validated pipeline template."""

    __tablename__ = "pipeline_templates"

    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tasks: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    template_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    registered_at: Mapped[datetime] = mapped_column(nullable=False)
    registered_by: Mapped[str] = mapped_column(String(100), nullable=False)

    def to_dto(self) -> PipelineTemplate:
        from approval_kernel.domain.schema_codec import parse_pipeline_template

        return parse_pipeline_template(
            {"code": self.code, "name": self.name, "tasks": self.tasks}
        )


class PipelineModel(Base):
    __tablename__ = "pipelines"

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'halted', 'completed')",
            name="ck_pipelines_valid_status",
        ),
    )

    template_code: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    lock_version: Mapped[int] = mapped_column(nullable=False, default=1)

    tasks: Mapped[list[PipelineTaskModel]] = relationship(
        "PipelineTaskModel",
        back_populates="pipeline",
        order_by="PipelineTaskModel.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    def __repr__(self) -> str:
        return f"<Pipeline {self.id} {self.template_code} status={self.status}>"

    def to_dto(self) -> Pipeline:
        from approval_kernel.domain.pipeline import Pipeline as PipelineDTO, PipelineStatus

        return PipelineDTO(
            pipeline_id=self.id,
            template_code=self.template_code,
            status=PipelineStatus(self.status),
            tasks=tuple(t.to_dto() for t in self.tasks),
            created_at=self.created_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, dto: Pipeline) -> PipelineModel:
        model = cls(
            id=dto.pipeline_id,
            template_code=dto.template_code,
            created_at=dto.created_at,
            updated_at=dto.created_at,
        )
        model.tasks = [PipelineTaskModel.from_dto(t) for t in dto.tasks]
        model.apply(dto, dto.created_at)
        return model

    def apply(self, dto: Pipeline, now: datetime) -> None:
        self.status = dto.status.value
        self.completed_at = dto.completed_at
        self.updated_at = now
        flag_modified(self, "updated_at")
        by_code = {t.code: t for t in self.tasks}
        for task in dto.tasks:
            by_code[task.code].apply(task)


class PipelineTaskModel(Base):
    __tablename__ = "pipeline_tasks"

    __table_args__ = (
        UniqueConstraint("pipeline_id", "code", name="uq_pipeline_tasks_code"),
        UniqueConstraint("pipeline_id", "position", name="uq_pipeline_tasks_position"),
        CheckConstraint(
            "status IN ('not_started', 'in_progress', 'completed', 'failed')",
            name="ck_pipeline_tasks_valid_status",
        ),
    )

    pipeline_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("pipelines.id"), nullable=False,
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="not_started")
    is_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcomes: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    owner_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    work_product: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    selected_outcome: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reset_count: Mapped[int] = mapped_column(nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    pipeline: Mapped[PipelineModel] = relationship("PipelineModel", back_populates="tasks")

    def to_dto(self) -> PipelineTask:
        from approval_kernel.domain.pipeline import PipelineTask as TaskDTO, TaskStatus
        from approval_kernel.domain.schema_codec import parse_outcome

        return TaskDTO(
            code=self.code,
            name=self.name,
            position=self.position,
            status=TaskStatus(self.status),
            is_review=self.is_review,
            outcomes=tuple(parse_outcome(o) for o in self.outcomes or ()),
            owner_id=self.owner_id,
            work_product=dict(self.work_product or {}),
            selected_outcome=self.selected_outcome,
            reset_count=self.reset_count,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_dto(cls, dto: PipelineTask) -> PipelineTaskModel:
        from approval_kernel.domain.schema_codec import outcome_to_dict

        model = cls(
            code=dto.code,
            name=dto.name,
            position=dto.position,
            is_review=dto.is_review,
            outcomes=[outcome_to_dict(o) for o in dto.outcomes],
        )
        model.apply(dto)
        return model

    def apply(self, dto: PipelineTask) -> None:
        self.status = dto.status.value
        self.owner_id = dto.owner_id
        if dict(self.work_product or {}) != dict(dto.work_product):
            self.work_product = dict(dto.work_product)
        self.selected_outcome = dto.selected_outcome
        self.reset_count = dto.reset_count
        self.started_at = dto.started_at
        self.completed_at = dto.completed_at


class PipelineTaskActionModel(Base):
    """Append-only history of task transitions and selected outcomes."""

    __tablename__ = "pipeline_task_actions"

    __table_args__ = (
        Index("ix_pipeline_task_actions_task", "pipeline_id", "task_code", "seq"),
    )

    pipeline_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("pipelines.id"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(nullable=False)
    task_code: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> TaskAction:
        from approval_kernel.domain.pipeline import TaskAction as TaskActionDTO, TaskStatus

        return TaskActionDTO(
            pipeline_id=self.pipeline_id,
            task_code=self.task_code,
            action=self.action,
            actor_id=self.actor_id,
            from_status=TaskStatus(self.from_status) if self.from_status else None,
            to_status=TaskStatus(self.to_status),
            outcome_code=self.outcome_code,
            comment=self.comment,
            occurred_at=self.occurred_at,
        )

    @classmethod
    def from_dto(cls, dto: TaskAction, seq: int) -> PipelineTaskActionModel:
        return cls(
            pipeline_id=dto.pipeline_id,
            seq=seq,
            task_code=dto.task_code,
            action=dto.action,
            actor_id=dto.actor_id,
            from_status=dto.from_status.value if dto.from_status else None,
            to_status=dto.to_status.value,
            outcome_code=dto.outcome_code,
            comment=dto.comment,
            occurred_at=dto.occurred_at,
        )


@event.listens_for(PipelineTemplateModel, "before_update")
def prevent_template_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="PipelineTemplate",
        entity_id=target.code,
        reason="Registered templates are immutable -- register a new code instead",
    )


@event.listens_for(PipelineTaskActionModel, "before_update")
def prevent_task_action_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="PipelineTaskAction",
        entity_id=str(target.id),
        reason="Task history is append-only -- cannot modify",
    )


@event.listens_for(PipelineTaskActionModel, "before_delete")
def prevent_task_action_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="PipelineTaskAction",
        entity_id=str(target.id),
        reason="Task history is append-only -- cannot delete",
    )
