"""
approval_engines.instance_compiler -- Definition + submission -> Instance.

Responsibility:
    Turn a published definition and a submission into a fresh instance:
    validate the form data, check the submitter may use the definition,
    and create one pending step per approve node in document order.

Architecture position:
    Engines -- pure, zero I/O, no clock access (``now`` is passed in).

Invariants enforced:
    - No partial instances: every error is collected and raised together.
    - Steps snapshot their approve node; submit and end nodes are not steps.
    - Approvers are NOT resolved here.  The first step is activated by the
      step advancer before submission returns.

Failure modes:
    - DefinitionNotPublishedError for a draft or retired version.
    - SubmissionNotAllowedError when visibility excludes the submitter.
    - FormValidationError with a field-keyed error map.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from approval_kernel.domain.definition import Definition, SelfSelectApprover
from approval_kernel.domain.instance import Instance, InstanceStatus, Step, SubmissionContext
from approval_kernel.exceptions import (
    DefinitionNotPublishedError,
    FormValidationError,
    SubmissionNotAllowedError,
)
from approval_engines.form_validation import validate_form_data
from approval_engines.tracer import traced_engine


def _self_selection_errors(
    definition: Definition, submitter: SubmissionContext
) -> dict[str, str]:
    errors: dict[str, str] = {}
    steps = definition.flow_schema.approve_nodes
    for index in submitter.self_selected:
        if not 0 <= index < len(steps) or not isinstance(
            steps[index].approver, SelfSelectApprover
        ):
            errors[f"self_selected_approvers.{index}"] = "not a self-select step"
    for index, node in enumerate(steps):
        if isinstance(node.approver, SelfSelectApprover) and not submitter.self_selected.get(index):
            errors[f"self_selected_approvers.{index}"] = (
                f"select at least one approver for step '{node.name}'"
            )
    return errors


@traced_engine("instance_compiler", "1.0", fingerprint_fields=("instance_id",))
def compile_instance(
    definition: Definition,
    form_data: Mapping[str, Any] | None,
    submitter: SubmissionContext,
    *,
    instance_id: UUID,
    now: datetime,
    title: str | None = None,
) -> Instance:
    """
    Compile a pending instance.

    Returns:
        Instance with ``len(definition.flow_schema.approve_nodes)`` pending
        steps and ``current_step`` 0.
    """
    if not definition.is_published:
        raise DefinitionNotPublishedError(
            str(definition.definition_id), definition.status.value
        )
    if not definition.visibility.allows(submitter.user_id, submitter.department_id):
        raise SubmissionNotAllowedError(definition.code, submitter.user_id)

    errors = validate_form_data(definition.form_schema, form_data)
    errors.update(_self_selection_errors(definition, submitter))
    if errors:
        raise FormValidationError(errors)

    steps = tuple(
        Step(index=index, node=node)
        for index, node in enumerate(definition.flow_schema.approve_nodes)
    )
    submit_node = definition.flow_schema.submit_node
    return Instance(
        instance_id=instance_id,
        definition_id=definition.definition_id,
        definition_code=definition.code,
        definition_version=definition.version,
        title=title or definition.name,
        form_data=dict(form_data or {}),
        submitted_by=submitter.user_id,
        steps=steps,
        status=InstanceStatus.PENDING,
        current_step=0,
        submitter_department_id=submitter.department_id,
        self_selected=dict(submitter.self_selected),
        cc_user_ids=submit_node.cc_user_ids if submit_node else (),
        submitted_at=now,
    )
