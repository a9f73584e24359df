"""
approval_engines.step_machine -- Pure instance/step state transitions.

Responsibility:
    The state machine core, without I/O: activate a step with its resolved
    approvers, flag an instance blocked, skip a step, settle the instance
    after a step resolves, and cancel.

Architecture position:
    Engines -- pure.  ``approval_services.step_advancer.StepAdvancer``
    drives these functions, supplying resolved approvers and the clock.

Invariants enforced:
    - Step moves follow ``STEP_TRANSITIONS``; instance moves follow
      ``INSTANCE_TRANSITIONS``.  Anything else raises
      InvalidStateTransitionError.
    - A terminal instance is never transitioned again
      (InstanceAlreadyTerminalError).
    - Sequential steps start with exactly one eligible approver (the first).
    - Rejection short-circuits: a rejected step ends the instance and no
      further step activates.

Failure modes:
    - InvalidStateTransitionError, InstanceAlreadyTerminalError.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from approval_kernel.domain.definition import MultiApprovePolicy
from approval_kernel.domain.instance import (
    INSTANCE_TRANSITIONS,
    STEP_TRANSITIONS,
    Approver,
    ApproverStatus,
    Instance,
    InstanceStatus,
    Step,
    StepStatus,
)
from approval_kernel.exceptions import (
    InstanceAlreadyTerminalError,
    InvalidStateTransitionError,
)


def _require_pending(instance: Instance) -> None:
    if instance.is_terminal:
        raise InstanceAlreadyTerminalError(str(instance.instance_id), instance.status.value)


def _step_to(step: Step, target: StepStatus) -> Step:
    if target not in STEP_TRANSITIONS[step.status]:
        raise InvalidStateTransitionError(
            f"step {step.index}", step.status.value, target.value
        )
    return replace(step, status=target)


def _instance_to(instance: Instance, target: InstanceStatus, now: datetime) -> Instance:
    if target not in INSTANCE_TRANSITIONS[instance.status]:
        raise InvalidStateTransitionError("instance", instance.status.value, target.value)
    return replace(
        instance,
        status=target,
        completed_at=now,
        blocked=False,
        blocked_reason=None,
    )


def next_pending_index(instance: Instance) -> int | None:
    """Index of the next step to activate, or None when none remains."""
    for step in instance.steps:
        if step.status == StepStatus.PENDING:
            return step.index
        if step.status not in (StepStatus.APPROVED, StepStatus.SKIPPED):
            return None
    return None


def activate_step(
    instance: Instance,
    index: int,
    approver_ids: tuple[str, ...],
    now: datetime,
) -> Instance:
    """Mark step ``index`` active with its resolved approvers."""
    _require_pending(instance)
    if not approver_ids:
        raise InvalidStateTransitionError(f"step {index}", "pending", "active (no approvers)")
    step = _step_to(instance.steps[index], StepStatus.ACTIVE)
    step = replace(
        step,
        approvers=tuple(Approver(user_id=uid) for uid in approver_ids),
        eligible_position=0 if step.policy == MultiApprovePolicy.SEQUENTIAL else None,
        started_at=now,
    )
    return replace(
        instance.with_step(step),
        current_step=index,
        blocked=False,
        blocked_reason=None,
    )


def block_step(instance: Instance, index: int, reason: str) -> Instance:
    """Flag the instance for operator attention; step ``index`` stays pending."""
    _require_pending(instance)
    step = instance.steps[index]
    if step.status != StepStatus.PENDING:
        raise InvalidStateTransitionError(f"step {index}", step.status.value, "blocked")
    return replace(instance, current_step=index, blocked=True, blocked_reason=reason)


def skip_step(instance: Instance, index: int, now: datetime) -> Instance:
    """Skip a step: a pending one nobody needs to decide, or an active one on cancel."""
    _require_pending(instance)
    step = _step_to(instance.steps[index], StepStatus.SKIPPED)
    step = replace(
        step,
        approvers=tuple(
            replace(a, status=ApproverStatus.SKIPPED)
            if a.status == ApproverStatus.PENDING else a
            for a in step.approvers
        ),
        eligible_position=None,
        completed_at=now,
    )
    return replace(
        instance.with_step(step),
        current_step=index,
        blocked=False,
        blocked_reason=None,
    )


def advance(instance: Instance, now: datetime) -> tuple[Instance, int | None]:
    """
    Settle the instance after a step resolved.

    Returns:
        ``(instance, next_index)``.  A rejected step rejects the instance.
        When no step remains the instance is approved.  Otherwise the
        instance is unchanged and ``next_index`` names the step to activate.
    """
    _require_pending(instance)
    if any(step.status == StepStatus.REJECTED for step in instance.steps):
        return _instance_to(instance, InstanceStatus.REJECTED, now), None
    if instance.active_step is not None:
        return instance, None
    next_index = next_pending_index(instance)
    if next_index is None:
        return _instance_to(instance, InstanceStatus.APPROVED, now), None
    return instance, next_index


def cancel_instance(instance: Instance, now: datetime) -> Instance:
    """Skip the active step (and its undecided approvers) and cancel.

    Already decided steps and approvers keep their recorded status.
    """
    _require_pending(instance)
    active = instance.active_step
    if active is not None:
        instance = skip_step(instance, active.index, now)
    return _instance_to(instance, InstanceStatus.CANCELLED, now)
