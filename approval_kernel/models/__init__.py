"""ORM models for the approval kernel."""

from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.models.definition import ApprovalDefinitionModel
from approval_kernel.models.instance import (
    ApprovalDecisionModel,
    ApprovalInstanceModel,
    ApprovalStepModel,
    StepApproverModel,
)
from approval_kernel.models.pipeline import (
    PipelineModel,
    PipelineTaskActionModel,
    PipelineTaskModel,
    PipelineTemplateModel,
)
from approval_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "ApprovalDecisionModel",
    "ApprovalDefinitionModel",
    "ApprovalInstanceModel",
    "ApprovalStepModel",
    "AuditAction",
    "AuditEvent",
    "PipelineModel",
    "PipelineTaskActionModel",
    "PipelineTaskModel",
    "PipelineTemplateModel",
    "SequenceCounter",
    "StepApproverModel",
]
