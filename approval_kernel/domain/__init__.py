"""
Pure domain layer.

Value objects and protocols with NO dependencies on the ORM, the database,
or wall-clock time.  All domain objects are immutable.
"""

from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.definition import (
    ApproveNode,
    ApproverType,
    Definition,
    DefinitionGroup,
    DefinitionSpec,
    DefinitionStatus,
    DeptLeaderApprover,
    DesignatedApprover,
    EndNode,
    FieldType,
    FlowSchema,
    FormField,
    MultiApprovePolicy,
    RoleApprover,
    SelectRange,
    SelectScope,
    SelfSelectApprover,
    SubmitNode,
    SubmitterApprover,
    SupervisorApprover,
    Visibility,
    VisibilityScope,
    WhenSelf,
)
from approval_kernel.domain.directory import OrgDirectory
from approval_kernel.domain.instance import (
    Approver,
    ApproverStatus,
    Decision,
    DecisionRecord,
    Instance,
    InstanceStatus,
    Step,
    StepOutcome,
    StepResolution,
    StepStatus,
    SubmissionContext,
)
from approval_kernel.domain.pipeline import (
    OutcomeType,
    Pipeline,
    PipelineStatus,
    PipelineTask,
    PipelineTemplate,
    ReviewOutcome,
    RollbackPlan,
    TaskAction,
    TaskStatus,
    TaskTemplate,
)

__all__ = [
    "ApproveNode",
    "Approver",
    "ApproverStatus",
    "ApproverType",
    "Clock",
    "Decision",
    "DecisionRecord",
    "Definition",
    "DefinitionGroup",
    "DefinitionSpec",
    "DefinitionStatus",
    "DeptLeaderApprover",
    "DesignatedApprover",
    "DeterministicClock",
    "EndNode",
    "FieldType",
    "FlowSchema",
    "FormField",
    "Instance",
    "InstanceStatus",
    "MultiApprovePolicy",
    "OrgDirectory",
    "OutcomeType",
    "Pipeline",
    "PipelineStatus",
    "PipelineTask",
    "PipelineTemplate",
    "ReviewOutcome",
    "RoleApprover",
    "RollbackPlan",
    "SelectRange",
    "SelectScope",
    "SelfSelectApprover",
    "Step",
    "StepOutcome",
    "StepResolution",
    "StepStatus",
    "SubmissionContext",
    "SubmitNode",
    "SubmitterApprover",
    "SupervisorApprover",
    "SystemClock",
    "TaskAction",
    "TaskStatus",
    "TaskTemplate",
    "Visibility",
    "VisibilityScope",
    "WhenSelf",
]
