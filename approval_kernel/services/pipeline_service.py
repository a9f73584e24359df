"""
PipelineService -- persistence for pipeline templates, pipelines and the
task action log.

Responsibility:
    Registers (frozen) pipeline templates, stores running pipelines, loads
    them under a row lock for mutation, writes back new task state, and
    appends task history.

Architecture position:
    Kernel > Services -- imperative shell.  Rollback rules live in
    approval_engines.rollback; this service only persists their result.

Invariants enforced:
    - Templates are registered once per code; re-registering identical
      content is a no-op, different content is rejected.
    - Task history is append-only and ordered by a locked sequence.
    - Optimistic ``lock_version`` on pipelines.

Failure modes:
    - PipelineTemplateNotFoundError, PipelineNotFoundError.
    - PipelineTemplateError when a code is re-registered with new content.
    - ConcurrentModificationError on a stale pipeline row.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.pipeline import Pipeline, PipelineTemplate, TaskAction
from approval_kernel.domain.schema_codec import pipeline_template_to_dict
from approval_kernel.exceptions import (
    ConcurrentModificationError,
    PipelineNotFoundError,
    PipelineTemplateError,
    PipelineTemplateNotFoundError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.pipeline import (
    PipelineModel,
    PipelineTaskActionModel,
    PipelineTemplateModel,
)
from approval_kernel.services.sequence_service import SequenceService
from approval_kernel.utils.hashing import hash_payload

logger = get_logger("services.pipeline")


class PipelineService:
    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def register_template(
        self, template: PipelineTemplate, actor_id: str
    ) -> tuple[PipelineTemplate, bool]:
        """
        Store ``template``.

        Returns:
            ``(template, created)``.  ``created`` is False when an identical
            template was already registered under the same code.
        """
        document = pipeline_template_to_dict(template)
        template_hash = hash_payload(document)

        existing = self._session.execute(
            select(PipelineTemplateModel).where(PipelineTemplateModel.code == template.code)
        ).scalar_one_or_none()
        if existing is not None:
            if existing.template_hash != template_hash:
                raise PipelineTemplateError(
                    {"code": f"template {template.code} is already registered with different content"}
                )
            return existing.to_dto(), False

        model = PipelineTemplateModel(
            code=template.code,
            name=template.name,
            tasks=document["tasks"],
            template_hash=template_hash,
            registered_at=self._clock.now(),
            registered_by=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        logger.info(
            "pipeline_template_registered",
            extra={"template_code": template.code, "task_count": len(template.tasks)},
        )
        return model.to_dto(), True

    def get_template(self, code: str) -> PipelineTemplate:
        model = self._session.execute(
            select(PipelineTemplateModel).where(PipelineTemplateModel.code == code)
        ).scalar_one_or_none()
        if model is None:
            raise PipelineTemplateNotFoundError(code)
        return model.to_dto()

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def create(self, pipeline: Pipeline) -> Pipeline:
        model = PipelineModel.from_dto(pipeline)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def load(self, pipeline_id: UUID, for_update: bool = False) -> Pipeline:
        return self._load_model(pipeline_id, for_update=for_update).to_dto()

    def save(self, pipeline: Pipeline) -> Pipeline:
        model = self._load_model(pipeline.pipeline_id)
        model.apply(pipeline, self._clock.now())
        try:
            self._session.flush()
        except StaleDataError as exc:
            raise ConcurrentModificationError("Pipeline", str(pipeline.pipeline_id)) from exc
        return model.to_dto()

    # ------------------------------------------------------------------
    # Task history
    # ------------------------------------------------------------------

    def append_action(self, action: TaskAction) -> TaskAction:
        seq = self._sequences.next_value(SequenceService.TASK_ACTION)
        model = PipelineTaskActionModel.from_dto(action, seq)
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def history(self, pipeline_id: UUID, task_code: str | None = None) -> list[TaskAction]:
        stmt = select(PipelineTaskActionModel).where(
            PipelineTaskActionModel.pipeline_id == pipeline_id
        )
        if task_code is not None:
            stmt = stmt.where(PipelineTaskActionModel.task_code == task_code)
        models = self._session.execute(
            stmt.order_by(PipelineTaskActionModel.seq)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def _load_model(self, pipeline_id: UUID, for_update: bool = False) -> PipelineModel:
        stmt = select(PipelineModel).where(PipelineModel.id == pipeline_id)
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise PipelineNotFoundError(str(pipeline_id))
        return model
