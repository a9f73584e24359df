"""
approval_services.engine -- ApprovalEngine, the inbound API.

Responsibility:
    The one object callers (a REST layer, a CLI, a background sweep) talk
    to.  Owns transaction boundaries, per-instance locking, and the
    post-commit hand-off of notification events.  Every mutating call is:

        with locks.hold(instance_id):
            with transactional(session_factory) as session:
                load FOR UPDATE -> pure engine step -> persist -> audit
        notifier.publish(events)

Architecture position:
    Services -- top-level facade.  Composes ServiceOrchestrator (kernel
    services per transaction), StepAdvancer, the pure engines, and the
    Notifier.  Pipelines are exposed through ``ApprovalEngine.pipelines``
    (a RollbackCoordinator sharing the same lock registry and notifier).

Invariants enforced:
    - decide -> aggregate -> advance is atomic per instance: the keyed
      lock serialises it in-process; the row lock and ``lock_version``
      serialise it across processes.
    - Nothing is partially applied: any exception rolls the whole
      transaction back.
    - Notifications are published after commit only; delivery failure
      never undoes a committed transition.
    - An approved instance linked to a pipeline task completes that task
      in a second transaction, after its own has committed.

Failure modes:
    - Every typed ApprovalEngineError propagates unchanged to the caller.
    - DuplicateDecisionError is raised with no state change; callers treat
      it as success.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from approval_engines.aggregation import apply_decision
from approval_engines.approver_resolution import validate_self_selection
from approval_engines.instance_compiler import compile_instance
from approval_engines.step_machine import cancel_instance
from approval_kernel.db.engine import transactional
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.definition import (
    Definition,
    DefinitionGroup,
    DefinitionSpec,
    SelfSelectApprover,
)
from approval_kernel.domain.directory import OrgDirectory
from approval_kernel.domain.instance import (
    Decision,
    DecisionRecord,
    Instance,
    InstanceStatus,
    StepOutcome,
    SubmissionContext,
)
from approval_kernel.domain.pipeline import PipelineStatus, TaskStatus
from approval_kernel.domain.schema_codec import (
    as_uuid,
    instance_to_dict,
    parse_decision,
    parse_definition_spec,
    parse_self_selection,
)
from approval_kernel.exceptions import (
    CancellationNotAllowedError,
    FormValidationError,
    InstanceAlreadyTerminalError,
    PipelineStateError,
    StepNotActiveError,
    TaskNotFoundError,
    ValidationError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.services.auditor_service import AuditorService, AuditTrace
from approval_services.directory import TimeoutBoundedDirectory
from approval_services.locks import KeyedLockRegistry
from approval_services.notifications import (
    LoggingEventDispatcher,
    NotificationEvent,
    NotificationKind,
    Notifier,
)
from approval_services.orchestrator import ServiceOrchestrator
from approval_services.rollback_coordinator import RollbackCoordinator
from approval_services.step_advancer import StepAdvancer

logger = get_logger("services.engine")


def _as_spec(spec: DefinitionSpec | Mapping[str, Any]) -> DefinitionSpec:
    if isinstance(spec, DefinitionSpec):
        return spec
    return parse_definition_spec(spec)


def _task_link(
    pipeline_id: UUID | str | None, task_code: str | None
) -> tuple[UUID, str] | None:
    if pipeline_id is None and not task_code:
        return None
    if pipeline_id is None:
        raise ValidationError({"pipeline_id": "is required with task_code"})
    if not task_code:
        raise ValidationError({"task_code": "is required with pipeline_id"})
    return as_uuid(pipeline_id, "pipeline_id"), task_code


def _check_task_link(svc: ServiceOrchestrator, pipeline_id: UUID, task_code: str) -> None:
    """An instance may only gate a task that is being worked on."""
    pipeline = svc.pipelines.load(pipeline_id)
    task = pipeline.task(task_code)
    if task is None:
        raise TaskNotFoundError(str(pipeline_id), task_code)
    if pipeline.status != PipelineStatus.RUNNING or task.status != TaskStatus.IN_PROGRESS:
        raise PipelineStateError(
            str(pipeline_id),
            f"task {task_code} is {task.status.value}, not in_progress",
        )


class ApprovalEngine:
    """
    Definitions, submissions, decisions and cancellations.

    Contract:
        Receives a session factory and an organisational directory; every
        other collaborator has a default.
    Guarantees:
        - ``submit`` returns an instance whose first step is already
          activated, skipped or blocked.
        - ``decide`` returns a StepOutcome describing the settled state.
    Non-goals:
        - Authentication and authorisation beyond "approver is on the
          step" and "only the submitter cancels".
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: OrgDirectory,
        *,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        directory_timeout_seconds: float = 2.0,
        lock_registry: KeyedLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._notifier = notifier or Notifier(LoggingEventDispatcher())
        self._locks = lock_registry or KeyedLockRegistry()
        if isinstance(directory, TimeoutBoundedDirectory):
            self._directory = directory
        else:
            self._directory = TimeoutBoundedDirectory(
                directory, timeout_seconds=directory_timeout_seconds
            )
        self.pipelines = RollbackCoordinator(
            session_factory,
            clock=self._clock,
            notifier=self._notifier,
            lock_registry=self._locks,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        session_factory: sessionmaker[Session],
        directory: OrgDirectory,
        *,
        clock: Clock | None = None,
        dispatcher: Any = None,
    ) -> ApprovalEngine:
        """Build an engine from ``approval_config.EngineSettings``."""
        notifier = Notifier(
            dispatcher or LoggingEventDispatcher(),
            max_retries=settings.notification_max_retries,
        )
        return cls(
            session_factory,
            directory,
            clock=clock,
            notifier=notifier,
            directory_timeout_seconds=settings.directory_timeout_seconds,
        )

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    @property
    def locks(self) -> KeyedLockRegistry:
        return self._locks

    def close(self) -> None:
        self._directory.shutdown()

    def _services(self, session: Session) -> ServiceOrchestrator:
        return ServiceOrchestrator(session, self._clock)

    def _advancer(self, auditor: AuditorService) -> StepAdvancer:
        return StepAdvancer(auditor, self._directory, self._clock)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def create_draft(
        self, spec: DefinitionSpec | Mapping[str, Any], actor_id: str
    ) -> Definition:
        spec = _as_spec(spec)
        with LogContext.bind(definition_code=spec.code, actor_id=actor_id):
            with transactional(self._session_factory) as session:
                return self._services(session).definitions.create_draft(spec, actor_id)

    def update_draft(
        self,
        definition_id: UUID | str,
        changes: DefinitionSpec | Mapping[str, Any],
        actor_id: str,
    ) -> Definition:
        spec = _as_spec(changes)
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.update_draft(
                as_uuid(definition_id, "definition_id"), spec, actor_id
            )

    def delete_draft(self, definition_id: UUID | str, actor_id: str) -> None:
        with transactional(self._session_factory) as session:
            self._services(session).definitions.delete_draft(
                as_uuid(definition_id, "definition_id"), actor_id
            )

    def revise(
        self,
        definition_id: UUID | str,
        actor_id: str,
        changes: DefinitionSpec | Mapping[str, Any] | None = None,
    ) -> Definition:
        spec = _as_spec(changes) if changes is not None else None
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.revise(
                as_uuid(definition_id, "definition_id"), actor_id, spec
            )

    def publish(self, definition_id: UUID | str, actor_id: str) -> Definition:
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.publish(
                as_uuid(definition_id, "definition_id"), actor_id
            )

    def unpublish(self, definition_id: UUID | str, actor_id: str) -> Definition:
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.unpublish(
                as_uuid(definition_id, "definition_id"), actor_id
            )

    def get_definition(self, code: str, version: int | None = None) -> Definition:
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.get(code, version)

    def list_definitions(self, include_drafts: bool = False) -> list[DefinitionGroup]:
        with transactional(self._session_factory) as session:
            return self._services(session).definitions.list_grouped(include_drafts)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def submit(
        self,
        definition_id: UUID | str,
        form_data: Mapping[str, Any] | None,
        submitted_by: str,
        *,
        department_id: str | None = None,
        self_selected_approvers: Mapping[Any, Any] | None = None,
        title: str | None = None,
        pipeline_id: UUID | str | None = None,
        task_code: str | None = None,
    ) -> Instance:
        """
        Validate, compile and persist a new instance, then activate its
        first step.

        With ``pipeline_id`` and ``task_code`` the instance gates that
        pipeline task: the task must be in progress now, and it is
        completed (starting the task after it) once the instance is
        approved.

        Raises:
            DefinitionNotPublishedError, SubmissionNotAllowedError,
            FormValidationError, PipelineStateError.
        """
        instance_id = uuid4()
        context = SubmissionContext(
            user_id=submitted_by,
            department_id=department_id,
            self_selected=parse_self_selection(self_selected_approvers),
        )
        link = _task_link(pipeline_id, task_code)
        with LogContext.bind(instance_id=instance_id, actor_id=submitted_by):
            with self._locks.hold(instance_id):
                with transactional(self._session_factory) as session:
                    svc = self._services(session)
                    definition = svc.definitions.get_published(
                        as_uuid(definition_id, "definition_id")
                    )
                    instance = compile_instance(
                        definition,
                        form_data,
                        context,
                        instance_id=instance_id,
                        now=self._clock.now(),
                        title=title,
                    )
                    self._check_self_selection(instance)
                    if link is not None:
                        _check_task_link(svc, *link)
                        instance = replace(
                            instance, pipeline_id=link[0], task_code=link[1]
                        )
                    svc.instances.create(instance)
                    instance, events = self._advancer(svc.auditor).start(
                        instance, submitted_by
                    )
                    instance = svc.instances.save(instance)
            self._notifier.publish(events)
            self._complete_linked_task(instance, submitted_by)
        return instance

    def _check_self_selection(self, instance: Instance) -> None:
        errors: dict[str, str] = {}
        for index, chosen in instance.self_selected.items():
            node = instance.steps[index].node
            if isinstance(node.approver, SelfSelectApprover):
                errors.update(validate_self_selection(
                    node, chosen, self._directory, step_index=index
                ))
        if errors:
            raise FormValidationError(errors)

    def _complete_linked_task(self, instance: Instance, actor_id: str) -> None:
        """Runs after the approval commits, under the pipeline's own lock."""
        if instance.pipeline_id is None or instance.status != InstanceStatus.APPROVED:
            return
        logger.info(
            "linked_task_approved",
            extra={
                "instance_id": str(instance.instance_id),
                "pipeline_id": str(instance.pipeline_id),
                "task_code": instance.task_code,
            },
        )
        self.pipelines.complete_linked_task(
            instance.pipeline_id, instance.task_code, actor_id
        )

    def decide(
        self,
        instance_id: UUID | str,
        step_index: int,
        approver_id: str,
        decision: Decision | str,
        comment: str = "",
    ) -> StepOutcome:
        """
        Record one approver's decision and settle the instance.

        Raises:
            NotAnApproverError, DuplicateDecisionError, StepNotActiveError,
            OutOfTurnError, ValidationError (unknown decision or malformed id).
        """
        instance_id = as_uuid(instance_id, "instance_id")
        decision = parse_decision(decision)
        with LogContext.bind(instance_id=instance_id, actor_id=approver_id):
            with self._locks.hold(instance_id):
                with transactional(self._session_factory) as session:
                    svc = self._services(session)
                    instance = svc.instances.load(instance_id, for_update=True)
                    if not 0 <= step_index < len(instance.steps):
                        raise StepNotActiveError(step_index, "missing")

                    now = self._clock.now()
                    result = apply_decision(
                        instance.steps[step_index],
                        approver_id=approver_id,
                        decision=decision,
                        comment=comment,
                        decided_at=now,
                    )
                    svc.instances.record_decision(DecisionRecord(
                        decision_id=uuid4(),
                        instance_id=instance_id,
                        step_index=step_index,
                        approver_id=approver_id,
                        decision=decision,
                        comment=comment or "",
                        decided_at=now,
                    ))
                    instance = instance.with_step(result.step)
                    events = [NotificationEvent(
                        kind=NotificationKind.DECISION_RECORDED,
                        subject_id=str(instance_id),
                        recipients=(instance.submitted_by,),
                        payload={
                            "step_index": step_index,
                            "approver_id": approver_id,
                            "decision": decision.value,
                            "comment": comment or "",
                        },
                    )]
                    if result.resolved:
                        instance, settled = self._advancer(svc.auditor).settle(
                            instance, result.step, approver_id
                        )
                        events.extend(settled)
                    instance = svc.instances.save(instance)
            self._notifier.publish(events)
            self._complete_linked_task(instance, approver_id)

        active = instance.active_step
        activated = (
            active.index
            if active is not None and active.index != step_index
            else None
        )
        return StepOutcome(
            instance_id=instance_id,
            step_index=step_index,
            resolution=result.resolution,
            step_status=instance.steps[step_index].status,
            instance_status=instance.status,
            activated_step=activated,
            blocked=instance.blocked,
        )

    def cancel(self, instance_id: UUID | str, actor_id: str) -> Instance:
        """Submitter withdraws a pending instance."""
        instance_id = as_uuid(instance_id, "instance_id")
        with LogContext.bind(instance_id=instance_id, actor_id=actor_id):
            with self._locks.hold(instance_id):
                with transactional(self._session_factory) as session:
                    svc = self._services(session)
                    instance = svc.instances.load(instance_id, for_update=True)
                    if instance.is_terminal:
                        raise InstanceAlreadyTerminalError(
                            str(instance_id), instance.status.value
                        )
                    if actor_id != instance.submitted_by:
                        raise CancellationNotAllowedError(str(instance_id), actor_id)

                    active = instance.active_step
                    waiting = (
                        tuple(
                            a.user_id for a in active.approvers if not a.has_decided
                        )
                        if active is not None else ()
                    )
                    instance = cancel_instance(instance, self._clock.now())
                    svc.auditor.record_instance(
                        instance_id,
                        AuditAction.INSTANCE_CANCELLED,
                        actor_id,
                        skipped_step=active.index if active is not None else None,
                    )
                    instance = svc.instances.save(instance)
                    logger.info(
                        "instance_cancelled",
                        extra={"instance_id": str(instance_id)},
                    )
                    events = [NotificationEvent(
                        kind=NotificationKind.INSTANCE_TERMINAL,
                        subject_id=str(instance_id),
                        recipients=(instance.submitted_by,) + waiting,
                        cc=instance.cc_user_ids,
                        payload={"status": instance.status.value, "title": instance.title},
                    )]
            self._notifier.publish(events)
        return instance

    def retry_blocked(self, instance_id: UUID | str, actor_id: str) -> Instance:
        """
        Operator action: re-run approver resolution for a blocked instance.

        Raises:
            UnresolvedApproversError: resolution still fails; nothing changes.
            InvalidStateTransitionError: the instance is not blocked.
        """
        instance_id = as_uuid(instance_id, "instance_id")
        with LogContext.bind(instance_id=instance_id, actor_id=actor_id):
            with self._locks.hold(instance_id):
                with transactional(self._session_factory) as session:
                    svc = self._services(session)
                    instance = svc.instances.load(instance_id, for_update=True)
                    if instance.is_terminal:
                        raise InstanceAlreadyTerminalError(
                            str(instance_id), instance.status.value
                        )
                    instance, events = self._advancer(svc.auditor).retry(
                        instance, actor_id
                    )
                    instance = svc.instances.save(instance)
            logger.info(
                "instance_unblocked",
                extra={"instance_id": str(instance_id), "blocked": instance.blocked},
            )
            self._notifier.publish(events)
            self._complete_linked_task(instance, actor_id)
        return instance

    # ------------------------------------------------------------------
    # Reads (no instance lock)
    # ------------------------------------------------------------------

    def get(self, instance_id: UUID | str) -> Instance:
        with transactional(self._session_factory) as session:
            return self._services(session).instance_selector.get(
                as_uuid(instance_id, "instance_id")
            )

    def get_as_dict(self, instance_id: UUID | str) -> dict[str, Any]:
        return instance_to_dict(self.get(instance_id))

    def list_pending(self, approver_id: str) -> list[Instance]:
        """Instances on which ``approver_id`` may decide right now."""
        with transactional(self._session_factory) as session:
            return self._services(session).instance_selector.list_pending_for_approver(
                approver_id
            )

    def list_blocked(self) -> list[Instance]:
        with transactional(self._session_factory) as session:
            return self._services(session).instance_selector.list_blocked()

    def list_submitted(self, user_id: str) -> list[Instance]:
        with transactional(self._session_factory) as session:
            return self._services(session).instance_selector.list_by_submitter(user_id)

    def list_decisions(self, instance_id: UUID | str) -> list[DecisionRecord]:
        with transactional(self._session_factory) as session:
            return self._services(session).instances.list_decisions(
                as_uuid(instance_id, "instance_id")
            )

    def audit_trace(self, instance_id: UUID | str) -> AuditTrace:
        with transactional(self._session_factory) as session:
            return self._services(session).auditor.get_trace(
                AuditorService.INSTANCE, as_uuid(instance_id, "instance_id")
            )

