"""
approval_services.rollback_coordinator -- Pipeline lifecycle and review
outcomes.

Responsibility:
    Registers pipeline templates, starts pipelines, completes tasks, applies
    review outcomes (pass / fail / fail_rollback), and reopens failed tasks.
    Every task status change is appended to the task history and audited.

Architecture position:
    Services -- imperative shell around ``approval_engines.rollback``.
    Same transaction and locking pattern as ApprovalEngine, keyed on the
    pipeline id.

Invariants enforced:
    - Rollback targets are validated once, at template registration.
    - Rolling back never deletes a work product.
    - A review task completes only through ``apply_outcome``.

Failure modes:
    - PipelineTemplateError / RollbackTargetError at registration.
    - PipelineStateError / UnknownOutcomeError / TaskNotFoundError at runtime.

Audit relevance:
    PIPELINE_TEMPLATE_REGISTERED, PIPELINE_STARTED, TASK_*,
    OUTCOME_SELECTED, ROLLBACK_APPLIED, PIPELINE_HALTED and
    PIPELINE_COMPLETED.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from approval_engines.rollback import (
    TaskTransition,
    apply_plan,
    attach_work_product,
    complete_task,
    instantiate_pipeline,
    plan_outcome,
    reopen_task,
    resolve_outcome,
    validate_pipeline_template,
)
from approval_kernel.db.engine import transactional
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.pipeline import (
    OutcomeType,
    Pipeline,
    PipelineStatus,
    PipelineTemplate,
    TaskAction,
    TaskStatus,
)
from approval_kernel.domain.schema_codec import (
    as_uuid,
    parse_pipeline_template,
    pipeline_to_dict,
)
from approval_kernel.exceptions import PipelineStateError, TaskNotFoundError
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_services.locks import KeyedLockRegistry
from approval_services.notifications import (
    LoggingEventDispatcher,
    NotificationEvent,
    NotificationKind,
    Notifier,
)
from approval_services.orchestrator import ServiceOrchestrator

logger = get_logger("services.rollback")

_TRANSITION_AUDIT: dict[str, AuditAction] = {
    "started": AuditAction.TASK_STARTED,
    "resumed": AuditAction.TASK_STARTED,
    "reopened": AuditAction.TASK_REOPENED,
    "completed": AuditAction.TASK_COMPLETED,
}


class RollbackCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        lock_registry: KeyedLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._notifier = notifier or Notifier(LoggingEventDispatcher())
        self._locks = lock_registry or KeyedLockRegistry()

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def register_template(
        self, template: PipelineTemplate | Mapping[str, Any], actor_id: str
    ) -> PipelineTemplate:
        """
        Validate and store a template.  Re-registering identical content
        is a no-op.

        Raises:
            PipelineTemplateError, RollbackTargetError.
        """
        if not isinstance(template, PipelineTemplate):
            template = parse_pipeline_template(template)
        validate_pipeline_template(template)
        with transactional(self._session_factory) as session:
            svc = ServiceOrchestrator(session, self._clock)
            stored, created = svc.pipelines.register_template(template, actor_id)
            if created:
                svc.auditor.record(
                    svc.auditor.PIPELINE_TEMPLATE,
                    template.code,
                    AuditAction.PIPELINE_TEMPLATE_REGISTERED,
                    actor_id,
                    {"task_count": len(template.tasks)},
                )
        return stored

    def get_template(self, code: str) -> PipelineTemplate:
        with transactional(self._session_factory) as session:
            return ServiceOrchestrator(session, self._clock).pipelines.get_template(code)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def start_pipeline(
        self,
        template_code: str,
        owners: Mapping[str, str] | None,
        actor_id: str,
    ) -> Pipeline:
        """Instantiate ``template_code`` and start its first task."""
        pipeline_id = uuid4()
        with LogContext.bind(pipeline_id=pipeline_id, actor_id=actor_id):
            with self._locks.hold(pipeline_id):
                with transactional(self._session_factory) as session:
                    svc = ServiceOrchestrator(session, self._clock)
                    template = svc.pipelines.get_template(template_code)
                    pipeline, transitions = instantiate_pipeline(
                        template,
                        pipeline_id=pipeline_id,
                        owners=owners,
                        now=self._clock.now(),
                    )
                    pipeline = svc.pipelines.create(pipeline)
                    svc.auditor.record_pipeline(
                        pipeline_id,
                        AuditAction.PIPELINE_STARTED,
                        actor_id,
                        template_code=template_code,
                    )
                    self._record(svc, pipeline, transitions, actor_id)
            logger.info(
                "pipeline_started",
                extra={"pipeline_id": str(pipeline_id), "template_code": template_code},
            )
        return pipeline

    def complete_task(self, pipeline_id: UUID | str, task_code: str, actor_id: str) -> Pipeline:
        """Complete a non-review task and start the next one."""
        return self._mutate(
            as_uuid(pipeline_id, "pipeline_id"), actor_id, self._completion(task_code)
        )

    def apply_outcome(
        self,
        pipeline_id: UUID | str,
        task_code: str,
        outcome_code: str,
        actor_id: str,
        comment: str = "",
    ) -> Pipeline:
        """
        Select an outcome on a review task.

        ``pass`` completes it and starts the next task; ``fail`` fails it
        and halts the pipeline; ``fail_rollback`` resets every task from the
        target through the reviewer and starts the target again.
        """
        return self._mutate(
            as_uuid(pipeline_id, "pipeline_id"),
            actor_id,
            self._selection(task_code, outcome_code, actor_id, comment),
            comment=comment,
        )

    def complete_linked_task(
        self, pipeline_id: UUID | str, task_code: str, actor_id: str
    ) -> Pipeline:
        """
        Confirm the task an approved instance was gating, and start the
        task that depends on it.

        A review task takes its first ``pass`` outcome.  A task that is no
        longer in progress (rolled back or halted since the submission) is
        left as it is.
        """
        def step(svc: ServiceOrchestrator, pipeline: Pipeline):
            task = pipeline.task(task_code)
            if task is None:
                raise TaskNotFoundError(str(pipeline.pipeline_id), task_code)
            running = pipeline.status == PipelineStatus.RUNNING
            if not running or task.status != TaskStatus.IN_PROGRESS:
                logger.info(
                    "linked_task_not_in_progress",
                    extra={
                        "pipeline_id": str(pipeline.pipeline_id),
                        "task_code": task_code,
                        "task_status": task.status.value,
                        "pipeline_status": pipeline.status.value,
                    },
                )
                return pipeline, [], []
            if not task.is_review:
                return self._completion(task_code)(svc, pipeline)
            passing = next(
                (o for o in task.outcomes if o.outcome_type == OutcomeType.PASS), None
            )
            if passing is None:
                raise PipelineStateError(
                    str(pipeline.pipeline_id),
                    f"review task {task_code} has no pass outcome",
                )
            return self._selection(task_code, passing.code, actor_id, "")(svc, pipeline)

        return self._mutate(as_uuid(pipeline_id, "pipeline_id"), actor_id, step)

    def _completion(self, task_code: str):
        def step(svc: ServiceOrchestrator, pipeline: Pipeline):
            pipeline, transitions = complete_task(pipeline, task_code, self._clock.now())
            return pipeline, transitions, []

        return step

    def _selection(self, task_code: str, outcome_code: str, actor_id: str, comment: str):
        def step(svc: ServiceOrchestrator, pipeline: Pipeline):
            _, outcome = resolve_outcome(pipeline, task_code, outcome_code)
            plan = plan_outcome(pipeline, task_code=task_code, outcome=outcome)
            updated, transitions = apply_plan(pipeline, plan, self._clock.now())
            events: list[NotificationEvent] = []
            if outcome.outcome_type == OutcomeType.FAIL_ROLLBACK:
                reset = [t.task_code for t in transitions if t.action == "reset"]
                svc.auditor.record_pipeline(
                    pipeline.pipeline_id,
                    AuditAction.ROLLBACK_APPLIED,
                    actor_id,
                    task_code=task_code,
                    outcome_code=outcome_code,
                    target=plan.resume_code,
                    reset_tasks=reset,
                )
                logger.info(
                    "rollback_applied",
                    extra={
                        "pipeline_id": str(pipeline.pipeline_id),
                        "task_code": task_code,
                        "outcome_code": outcome_code,
                        "target": plan.resume_code,
                        "reset_tasks": reset,
                    },
                )
                owners = tuple(dict.fromkeys(
                    t.owner_id for t in updated.tasks
                    if t.code in reset and t.owner_id
                ))
                events.append(NotificationEvent(
                    kind=NotificationKind.ROLLBACK_APPLIED,
                    subject_id=str(pipeline.pipeline_id),
                    recipients=owners,
                    payload={
                        "task_code": task_code,
                        "outcome_code": outcome_code,
                        "target": plan.resume_code,
                        "reset_tasks": reset,
                        "comment": comment,
                    },
                ))
            return updated, transitions, events

        return step

    def reopen_failed_task(
        self, pipeline_id: UUID | str, task_code: str, actor_id: str
    ) -> Pipeline:
        """Operator remediation after a plain ``fail`` outcome halted the pipeline."""
        def step(svc: ServiceOrchestrator, pipeline: Pipeline):
            pipeline, transitions = reopen_task(pipeline, task_code, self._clock.now())
            return pipeline, transitions, []

        return self._mutate(as_uuid(pipeline_id, "pipeline_id"), actor_id, step)

    def attach_work_product(
        self,
        pipeline_id: UUID | str,
        task_code: str,
        work_product: Mapping[str, Any],
        actor_id: str,
    ) -> Pipeline:
        def step(svc: ServiceOrchestrator, pipeline: Pipeline):
            return attach_work_product(pipeline, task_code, work_product), [], []

        return self._mutate(as_uuid(pipeline_id, "pipeline_id"), actor_id, step)

    def get(self, pipeline_id: UUID | str) -> Pipeline:
        with transactional(self._session_factory) as session:
            return ServiceOrchestrator(session, self._clock).pipelines.load(
                as_uuid(pipeline_id, "pipeline_id")
            )

    def get_as_dict(self, pipeline_id: UUID | str) -> dict[str, Any]:
        return pipeline_to_dict(self.get(pipeline_id))

    def task_history(
        self, pipeline_id: UUID | str, task_code: str | None = None
    ) -> list[TaskAction]:
        with transactional(self._session_factory) as session:
            return ServiceOrchestrator(session, self._clock).pipelines.history(
                as_uuid(pipeline_id, "pipeline_id"), task_code
            )

    # ------------------------------------------------------------------

    def _mutate(self, pipeline_id: UUID, actor_id: str, step, comment: str = "") -> Pipeline:
        with LogContext.bind(pipeline_id=pipeline_id, actor_id=actor_id):
            with self._locks.hold(pipeline_id):
                with transactional(self._session_factory) as session:
                    svc = ServiceOrchestrator(session, self._clock)
                    before = svc.pipelines.load(pipeline_id, for_update=True)
                    pipeline, transitions, events = step(svc, before)
                    pipeline = svc.pipelines.save(pipeline)
                    self._record(svc, pipeline, transitions, actor_id, comment)
                    if pipeline.status != before.status:
                        self._record_status(svc, pipeline, actor_id)
            self._notifier.publish(events)
        return pipeline

    def _record(
        self,
        svc: ServiceOrchestrator,
        pipeline: Pipeline,
        transitions: list[TaskTransition],
        actor_id: str,
        comment: str = "",
    ) -> None:
        now = self._clock.now()
        for transition in transitions:
            svc.pipelines.append_action(TaskAction(
                pipeline_id=pipeline.pipeline_id,
                task_code=transition.task_code,
                action=transition.action,
                actor_id=actor_id,
                from_status=transition.from_status,
                to_status=transition.to_status,
                outcome_code=transition.outcome_code,
                comment=comment if transition.outcome_code else "",
                occurred_at=now,
            ))
            if transition.to_status == TaskStatus.FAILED:
                action = AuditAction.TASK_FAILED
            elif transition.action == "outcome_selected":
                action = AuditAction.OUTCOME_SELECTED
            else:
                action = _TRANSITION_AUDIT.get(transition.action)
            if action is None:
                # resets are covered by the single ROLLBACK_APPLIED event
                continue
            svc.auditor.record_pipeline(
                pipeline.pipeline_id,
                action,
                actor_id,
                task_code=transition.task_code,
                from_status=transition.from_status.value if transition.from_status else None,
                to_status=transition.to_status.value,
                outcome_code=transition.outcome_code,
            )

    def _record_status(
        self, svc: ServiceOrchestrator, pipeline: Pipeline, actor_id: str
    ) -> None:
        if pipeline.status == PipelineStatus.HALTED:
            action = AuditAction.PIPELINE_HALTED
        elif pipeline.status == PipelineStatus.COMPLETED:
            action = AuditAction.PIPELINE_COMPLETED
        else:
            return
        svc.auditor.record_pipeline(pipeline.pipeline_id, action, actor_id)
        logger.info(
            "pipeline_status_changed",
            extra={
                "pipeline_id": str(pipeline.pipeline_id),
                "status": pipeline.status.value,
            },
        )
