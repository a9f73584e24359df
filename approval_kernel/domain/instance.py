"""
Approval instance domain types (``approval_kernel.domain.instance``).

Responsibility
--------------
Pure value objects for one execution of a definition: the instance, its
steps (one per approve node), the resolved approvers on each step, and
the verbatim decision records.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``INSTANCE_TRANSITIONS`` / ``STEP_TRANSITIONS`` define the only valid
  status moves.  Terminal states have no outgoing edges.
* A step carries a snapshot of its approve node, so republishing the
  definition never alters an in-flight instance.
* ``blocked`` is a flag on a ``pending`` instance, not a status of its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from approval_kernel.domain.definition import ApproveNode, MultiApprovePolicy


# =========================================================================
# Status lifecycles
# =========================================================================


class InstanceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({
        InstanceStatus.APPROVED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
    }),
    InstanceStatus.APPROVED: frozenset(),
    InstanceStatus.REJECTED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}

TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.CANCELLED,
})


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.ACTIVE, StepStatus.SKIPPED}),
    StepStatus.ACTIVE: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
        StepStatus.SKIPPED,
    }),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

TERMINAL_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.APPROVED,
    StepStatus.REJECTED,
    StepStatus.SKIPPED,
})


class ApproverStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class Decision(str, Enum):
    """What an approver can decide."""

    APPROVE = "approve"
    REJECT = "reject"

    @property
    def approver_status(self) -> ApproverStatus:
        if self is Decision.APPROVE:
            return ApproverStatus.APPROVED
        return ApproverStatus.REJECTED


class StepResolution(str, Enum):
    """Aggregator verdict after applying one decision."""

    UNRESOLVED = "unresolved"
    APPROVED = "approved"
    REJECTED = "rejected"


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class Approver:
    """One resolved approver on a step, in resolution order."""

    user_id: str
    status: ApproverStatus = ApproverStatus.PENDING
    comment: str = ""
    decided_at: datetime | None = None

    @property
    def has_decided(self) -> bool:
        return self.status in (ApproverStatus.APPROVED, ApproverStatus.REJECTED)


@dataclass(frozen=True)
class Step:
    """Runtime record of one approve node.

    ``eligible_position`` is only meaningful under the sequential policy:
    it is the index into ``approvers`` of the one approver allowed to
    decide next.
    """

    index: int
    node: ApproveNode
    status: StepStatus = StepStatus.PENDING
    approvers: tuple[Approver, ...] = ()
    eligible_position: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def node_name(self) -> str:
        return self.node.name

    @property
    def policy(self) -> MultiApprovePolicy:
        return self.node.multi_approve

    @property
    def approver_ids(self) -> tuple[str, ...]:
        return tuple(a.user_id for a in self.approvers)

    @property
    def eligible_approver_id(self) -> str | None:
        """Approver whose turn it is under the sequential policy."""
        if self.eligible_position is None:
            return None
        if 0 <= self.eligible_position < len(self.approvers):
            return self.approvers[self.eligible_position].user_id
        return None

    def approver(self, user_id: str) -> Approver | None:
        for entry in self.approvers:
            if entry.user_id == user_id:
                return entry
        return None

    def can_act(self, user_id: str) -> bool:
        """True if ``user_id`` may decide this step right now."""
        if self.status != StepStatus.ACTIVE:
            return False
        entry = self.approver(user_id)
        if entry is None or entry.status != ApproverStatus.PENDING:
            return False
        if self.policy == MultiApprovePolicy.SEQUENTIAL:
            return self.eligible_approver_id == user_id
        return True


@dataclass(frozen=True)
class SubmissionContext:
    """Who submitted, where they sit, and which approvers they picked.

    ``self_selected`` maps a step index to the user ids chosen for that
    step's self_select node.
    """

    user_id: str
    department_id: str | None = None
    self_selected: Mapping[int, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class Instance:
    instance_id: UUID
    definition_id: UUID
    definition_code: str
    definition_version: int
    title: str
    form_data: Mapping[str, Any]
    submitted_by: str
    steps: tuple[Step, ...]
    status: InstanceStatus = InstanceStatus.PENDING
    current_step: int = 0
    submitter_department_id: str | None = None
    self_selected: Mapping[int, tuple[str, ...]] = field(default_factory=dict)
    cc_user_ids: tuple[str, ...] = ()
    blocked: bool = False
    blocked_reason: str | None = None
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    pipeline_id: UUID | None = None
    task_code: str | None = None
    lock_version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES

    @property
    def active_step(self) -> Step | None:
        for step in self.steps:
            if step.status == StepStatus.ACTIVE:
                return step
        return None

    @property
    def context(self) -> SubmissionContext:
        return SubmissionContext(
            user_id=self.submitted_by,
            department_id=self.submitter_department_id,
            self_selected=self.self_selected,
        )

    def with_step(self, step: Step) -> Instance:
        """Return a copy with ``step`` replacing the step at its index."""
        steps = list(self.steps)
        steps[step.index] = step
        return replace(self, steps=tuple(steps))


@dataclass(frozen=True)
class DecisionRecord:
    """Verbatim record of one decision.  Immutable once written."""

    decision_id: UUID
    instance_id: UUID
    step_index: int
    approver_id: str
    decision: Decision
    comment: str = ""
    decided_at: datetime | None = None


@dataclass(frozen=True)
class StepOutcome:
    """What ``decide`` reports back to its caller."""

    instance_id: UUID
    step_index: int
    resolution: StepResolution
    step_status: StepStatus
    instance_status: InstanceStatus
    activated_step: int | None = None
    blocked: bool = False

    @property
    def resolved(self) -> bool:
        return self.resolution != StepResolution.UNRESOLVED
