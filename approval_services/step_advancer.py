"""
approval_services.step_advancer -- Drives an instance through its steps.

Responsibility:
    Activates the next step of an instance: resolves its approvers through
    the (timeout-bounded) directory, then activates, skips (``when_self``
    skip) or blocks the step.  After a step resolves, settles the instance:
    approve it, reject it, or move on to the next step.

Architecture position:
    Services -- imperative shell around ``approval_engines.step_machine``
    and ``approval_engines.approver_resolution``.  Does not persist the
    instance itself; the facade saves once per transaction.  Audit events
    are written into the caller's session.

Invariants enforced:
    - Lazy resolution: approvers are resolved exactly once per step, at
      activation time.
    - An unresolved step never rejects the instance; it leaves it
      ``pending`` with ``blocked=True`` and a ``blocked_reason``.
    - Rejection short-circuits; no later step is activated.

Failure modes:
    - ``retry`` re-raises UnresolvedApproversError when resolution still
      fails, leaving the stored instance untouched.

Audit relevance:
    STEP_ACTIVATED, STEP_SKIPPED, INSTANCE_BLOCKED, STEP_RESOLVED,
    INSTANCE_APPROVED and INSTANCE_REJECTED are recorded here.
"""

from __future__ import annotations

from approval_engines.approver_resolution import resolve_approvers
from approval_engines.step_machine import activate_step, advance, block_step, skip_step
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.directory import OrgDirectory
from approval_kernel.domain.instance import Instance, InstanceStatus, Step
from approval_kernel.exceptions import (
    InvalidStateTransitionError,
    UnresolvedApproversError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.services.auditor_service import AuditorService
from approval_services.notifications import NotificationEvent, NotificationKind

logger = get_logger("services.step_advancer")


class StepAdvancer:
    def __init__(
        self,
        auditor: AuditorService,
        directory: OrgDirectory,
        clock: Clock,
    ) -> None:
        self._auditor = auditor
        self._directory = directory
        self._clock = clock

    def start(
        self, instance: Instance, actor_id: str
    ) -> tuple[Instance, list[NotificationEvent]]:
        """Activate the first step of a freshly compiled instance."""
        events: list[NotificationEvent] = []
        return self._run(instance, actor_id, events), events

    def settle(
        self, instance: Instance, resolved_step: Step, actor_id: str
    ) -> tuple[Instance, list[NotificationEvent]]:
        """Continue after ``resolved_step`` was approved or rejected."""
        self._auditor.record_instance(
            instance.instance_id,
            AuditAction.STEP_RESOLVED,
            actor_id,
            step_index=resolved_step.index,
            status=resolved_step.status.value,
        )
        events: list[NotificationEvent] = []
        return self._run(instance, actor_id, events), events

    def retry(
        self, instance: Instance, actor_id: str
    ) -> tuple[Instance, list[NotificationEvent]]:
        """Operator action: re-run activation of a blocked step."""
        if not instance.blocked:
            raise InvalidStateTransitionError("instance", "pending", "retry (not blocked)")
        events: list[NotificationEvent] = []
        instance = self._activate(instance, instance.current_step, actor_id, events, strict=True)
        if instance.blocked:
            return instance, events
        return self._run(instance, actor_id, events), events

    # ------------------------------------------------------------------

    def _run(
        self, instance: Instance, actor_id: str, events: list[NotificationEvent]
    ) -> Instance:
        while True:
            now = self._clock.now()
            instance, next_index = advance(instance, now)
            if instance.is_terminal:
                self._finish(instance, actor_id, events)
                return instance
            if next_index is None:
                return instance
            instance = self._activate(instance, next_index, actor_id, events)
            if instance.blocked:
                return instance

    def _activate(
        self,
        instance: Instance,
        index: int,
        actor_id: str,
        events: list[NotificationEvent],
        strict: bool = False,
    ) -> Instance:
        step = instance.steps[index]
        try:
            resolution = resolve_approvers(
                step.node,
                instance.context,
                self._directory,
                step_index=index,
            )
        except UnresolvedApproversError as exc:
            if strict:
                raise
            return self._block(instance, step, str(exc), actor_id, events)

        now = self._clock.now()
        if resolution.self_skipped:
            instance = skip_step(instance, index, now)
            self._auditor.record_instance(
                instance.instance_id,
                AuditAction.STEP_SKIPPED,
                actor_id,
                step_index=index,
                reason="submitter is the only approver and when_self is skip",
            )
            logger.info(
                "step_skipped",
                extra={"instance_id": str(instance.instance_id), "step_index": index},
            )
            return instance

        instance = activate_step(instance, index, resolution.approver_ids, now)
        self._auditor.record_instance(
            instance.instance_id,
            AuditAction.STEP_ACTIVATED,
            actor_id,
            step_index=index,
            node_name=step.node_name,
            approvers=list(resolution.approver_ids),
            policy=step.policy.value,
        )
        logger.info(
            "step_activated",
            extra={
                "instance_id": str(instance.instance_id),
                "step_index": index,
                "approvers": list(resolution.approver_ids),
                "policy": step.policy.value,
            },
        )
        events.append(NotificationEvent(
            kind=NotificationKind.STEP_ACTIVATED,
            subject_id=str(instance.instance_id),
            recipients=resolution.approver_ids,
            cc=step.node.cc_user_ids,
            payload={
                "step_index": index,
                "node_name": step.node_name,
                "title": instance.title,
            },
        ))
        return instance

    def _block(
        self,
        instance: Instance,
        step: Step,
        reason: str,
        actor_id: str,
        events: list[NotificationEvent],
    ) -> Instance:
        instance = block_step(instance, step.index, reason)
        self._auditor.record_instance(
            instance.instance_id,
            AuditAction.INSTANCE_BLOCKED,
            actor_id,
            step_index=step.index,
            reason=reason,
        )
        logger.warning(
            "instance_blocked",
            extra={
                "instance_id": str(instance.instance_id),
                "step_index": step.index,
                "reason": reason,
            },
        )
        events.append(NotificationEvent(
            kind=NotificationKind.INSTANCE_BLOCKED,
            subject_id=str(instance.instance_id),
            payload={"step_index": step.index, "reason": reason},
        ))
        return instance

    def _finish(
        self, instance: Instance, actor_id: str, events: list[NotificationEvent]
    ) -> None:
        action = (
            AuditAction.INSTANCE_APPROVED
            if instance.status == InstanceStatus.APPROVED
            else AuditAction.INSTANCE_REJECTED
        )
        self._auditor.record_instance(instance.instance_id, action, actor_id)
        logger.info(
            "instance_completed",
            extra={
                "instance_id": str(instance.instance_id),
                "status": instance.status.value,
            },
        )
        events.append(NotificationEvent(
            kind=NotificationKind.INSTANCE_TERMINAL,
            subject_id=str(instance.instance_id),
            recipients=(instance.submitted_by,),
            cc=instance.cc_user_ids,
            payload={"status": instance.status.value, "title": instance.title},
        ))
