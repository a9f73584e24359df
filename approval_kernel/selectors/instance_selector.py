"""
Module: approval_kernel.selectors.instance_selector
Responsibility: Read-only queries over approval instances: a single
    instance, an approver's inbox, the operator's blocked queue, and a
    submitter's history.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - An instance appears in an approver's inbox only while that approver
      can act on its active step right now.  Under the sequential policy
      only the approver whose turn it is sees it.

Failure modes:
    - InstanceNotFoundError from ``get``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from approval_kernel.domain.instance import ApproverStatus, Instance, InstanceStatus, StepStatus
from approval_kernel.exceptions import InstanceNotFoundError
from approval_kernel.models.instance import (
    ApprovalInstanceModel,
    ApprovalStepModel,
    StepApproverModel,
)
from approval_kernel.selectors.base import BaseSelector


class InstanceSelector(BaseSelector):
    def get(self, instance_id: UUID) -> Instance:
        model = self.session.get(ApprovalInstanceModel, instance_id)
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model.to_dto()

    def list_pending_for_approver(self, approver_id: str) -> list[Instance]:
        """Pending instances whose active step ``approver_id`` may decide now."""
        waiting_on = (
            select(ApprovalStepModel.instance_id)
            .join(StepApproverModel, StepApproverModel.step_id == ApprovalStepModel.id)
            .where(
                ApprovalStepModel.status == StepStatus.ACTIVE.value,
                StepApproverModel.user_id == approver_id,
                StepApproverModel.status == ApproverStatus.PENDING.value,
            )
        )
        stmt = (
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == InstanceStatus.PENDING.value,
                ApprovalInstanceModel.id.in_(waiting_on),
            )
            .order_by(ApprovalInstanceModel.submitted_at)
        )
        pending = []
        for model in self.session.execute(stmt).scalars().all():
            instance = model.to_dto()
            step = instance.active_step
            if step is not None and step.can_act(approver_id):
                pending.append(instance)
        return pending

    def list_blocked(self) -> list[Instance]:
        """Pending instances waiting on operator action."""
        models = self.session.execute(
            select(ApprovalInstanceModel)
            .where(
                ApprovalInstanceModel.status == InstanceStatus.PENDING.value,
                ApprovalInstanceModel.blocked.is_(True),
            )
            .order_by(ApprovalInstanceModel.submitted_at)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def list_by_submitter(
        self, user_id: str, status: InstanceStatus | None = None
    ) -> list[Instance]:
        stmt = select(ApprovalInstanceModel).where(
            ApprovalInstanceModel.submitted_by == user_id
        )
        if status is not None:
            stmt = stmt.where(ApprovalInstanceModel.status == status.value)
        models = self.session.execute(
            stmt.order_by(ApprovalInstanceModel.submitted_at.desc())
        ).scalars().all()
        return [m.to_dto() for m in models]
