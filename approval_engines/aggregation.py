"""
approval_engines.aggregation -- Decision aggregation under consensus policies.

Responsibility:
    Apply one approver's decision to an active step and report whether the
    step is now resolved, and how, under the step's ``multi_approve``
    policy.

Architecture position:
    Engines -- pure, zero I/O.  Called by the engine facade while it holds
    the per-instance lock, so check -> apply -> advance is atomic.

Invariants enforced:
    - ``all``: approved iff every approver approved; one rejection rejects.
    - ``any``: the first decision of either kind resolves the step.
    - ``sequential``: only the eligible approver may decide; an approval
      moves eligibility to the next approver, the last approval resolves
      the step; one rejection rejects.
    - On resolution every still-pending approver is marked ``skipped``.
    - An approver decides a step at most once.

Failure modes (checked in this order):
    - NotAnApproverError: approver is not on the step.
    - DuplicateDecisionError: approver already decided (treat as success).
    - StepNotActiveError: the step is not active.
    - OutOfTurnError: sequential step, not this approver's turn.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from approval_kernel.domain.definition import MultiApprovePolicy
from approval_kernel.domain.instance import (
    ApproverStatus,
    Decision,
    Step,
    StepResolution,
    StepStatus,
)
from approval_kernel.exceptions import (
    DuplicateDecisionError,
    NotAnApproverError,
    OutOfTurnError,
    StepNotActiveError,
)
from approval_engines.tracer import traced_engine


@dataclass(frozen=True)
class AggregationResult:
    step: Step
    resolution: StepResolution

    @property
    def resolved(self) -> bool:
        return self.resolution != StepResolution.UNRESOLVED


def check_decision(step: Step, approver_id: str) -> int:
    """
    Verify ``approver_id`` may decide ``step`` now.

    Returns:
        The approver's position on the step.
    """
    position = next(
        (i for i, a in enumerate(step.approvers) if a.user_id == approver_id), None
    )
    if position is None:
        raise NotAnApproverError(approver_id, step.index)
    entry = step.approvers[position]
    if entry.has_decided:
        raise DuplicateDecisionError(approver_id, step.index, entry.status.value)
    if step.status != StepStatus.ACTIVE:
        raise StepNotActiveError(step.index, step.status.value)
    if step.policy == MultiApprovePolicy.SEQUENTIAL and step.eligible_position != position:
        raise OutOfTurnError(approver_id, step.eligible_approver_id)
    return position


def _resolution(step: Step, position: int, decision: Decision) -> StepResolution:
    if decision == Decision.REJECT:
        return StepResolution.REJECTED
    if step.policy == MultiApprovePolicy.ANY:
        return StepResolution.APPROVED
    if step.policy == MultiApprovePolicy.SEQUENTIAL:
        if position == len(step.approvers) - 1:
            return StepResolution.APPROVED
        return StepResolution.UNRESOLVED
    if all(a.status == ApproverStatus.APPROVED for a in step.approvers):
        return StepResolution.APPROVED
    return StepResolution.UNRESOLVED


@traced_engine(
    "aggregation", "1.0", fingerprint_fields=("approver_id", "decision")
)
def apply_decision(
    step: Step,
    *,
    approver_id: str,
    decision: Decision,
    comment: str = "",
    decided_at: datetime,
) -> AggregationResult:
    """
    Apply one decision to ``step``.

    Returns:
        AggregationResult with the updated step and its resolution.
    """
    position = check_decision(step, approver_id)

    approvers = list(step.approvers)
    approvers[position] = replace(
        approvers[position],
        status=decision.approver_status,
        comment=comment or "",
        decided_at=decided_at,
    )
    step = replace(step, approvers=tuple(approvers))

    resolution = _resolution(step, position, decision)
    if resolution == StepResolution.UNRESOLVED:
        if step.policy == MultiApprovePolicy.SEQUENTIAL:
            step = replace(step, eligible_position=position + 1)
        return AggregationResult(step=step, resolution=resolution)

    step = replace(
        step,
        status=(
            StepStatus.APPROVED
            if resolution == StepResolution.APPROVED
            else StepStatus.REJECTED
        ),
        approvers=tuple(
            replace(a, status=ApproverStatus.SKIPPED)
            if a.status == ApproverStatus.PENDING else a
            for a in step.approvers
        ),
        eligible_position=None,
        completed_at=decided_at,
    )
    return AggregationResult(step=step, resolution=resolution)
