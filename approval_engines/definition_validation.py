"""
approval_engines.definition_validation -- Structural validation of definitions.

Responsibility:
    Check an authored definition before it is published: field keys and
    type-specific constraints on the form schema, the submit/approve/end
    shape of the flow schema, approver configuration, and visibility.

Architecture position:
    Engines -- pure, zero I/O.  Called by the DefinitionStore (through the
    validator injected by the service layer) at publish time.

Invariants enforced:
    - Exactly one submit node (first) and one end node (last), with at
      least one approve node between them.
    - Static approver types resolve to at least one potential approver:
      a designated node lists at least one user.
    - Dynamic approver types carry what they need to resolve at runtime
      (a role code for ``role``, a range value for scoped self-selection).

Failure modes:
    - Never raises.  Returns a field-keyed error map; empty means valid.
"""

from __future__ import annotations

from approval_kernel.domain.definition import (
    ApproveNode,
    AttachmentField,
    DefinitionSpec,
    DescriptionField,
    DesignatedApprover,
    EndNode,
    FieldType,
    FlowSchema,
    FormField,
    MoneyField,
    MultiSelectField,
    NumberField,
    RoleApprover,
    SelectField,
    SelectScope,
    SelfSelectApprover,
    SubmitNode,
    TableField,
    TextField,
    VisibilityScope,
)
from approval_engines.tracer import traced_engine


def _check_options(options: tuple[str, ...], path: str, errors: dict[str, str]) -> None:
    if not options:
        errors[path] = "at least one option is required"
    elif len(set(options)) != len(options):
        errors[path] = "options must be unique"


def _validate_field(form_field: FormField, path: str, errors: dict[str, str]) -> None:
    if not form_field.label:
        errors[f"{path}.label"] = "is required"

    if isinstance(form_field, TextField):
        if form_field.max_length is not None and form_field.max_length <= 0:
            errors[f"{path}.max_length"] = "must be positive"
    elif isinstance(form_field, (NumberField, MoneyField)):
        low, high = form_field.min_value, form_field.max_value
        if low is not None and high is not None and low > high:
            errors[f"{path}.min"] = "must not exceed max"
        if isinstance(form_field, MoneyField) and not form_field.currency:
            errors[f"{path}.currency"] = "is required"
    elif isinstance(form_field, (SelectField, MultiSelectField)):
        _check_options(form_field.options, f"{path}.options", errors)
    elif isinstance(form_field, AttachmentField):
        if form_field.max_files is not None and form_field.max_files < 1:
            errors[f"{path}.max_files"] = "must be at least 1"
    elif isinstance(form_field, TableField):
        if not form_field.columns:
            errors[f"{path}.columns"] = "a table needs at least one column"
        if form_field.min_rows < 0:
            errors[f"{path}.min_rows"] = "must not be negative"
        seen: set[str] = set()
        for j, column in enumerate(form_field.columns):
            cpath = f"{path}.columns[{j}]"
            if not column.key:
                errors[f"{cpath}.key"] = "is required"
            elif column.key in seen:
                errors[f"{cpath}.key"] = f"duplicate column key '{column.key}'"
            seen.add(column.key)
            if column.column_type == FieldType.SELECT:
                _check_options(column.options, f"{cpath}.options", errors)
    elif isinstance(form_field, DescriptionField):
        if form_field.required:
            errors[f"{path}.required"] = "a description field carries no input"


def validate_form_schema(form_schema: tuple[FormField, ...]) -> dict[str, str]:
    errors: dict[str, str] = {}
    seen: set[str] = set()
    for i, form_field in enumerate(form_schema):
        path = f"form_schema[{i}]"
        if not form_field.key:
            errors[f"{path}.key"] = "is required"
        elif form_field.key in seen:
            errors[f"{path}.key"] = f"duplicate field key '{form_field.key}'"
        seen.add(form_field.key)
        _validate_field(form_field, path, errors)
    return errors


def _validate_approve_node(node: ApproveNode, path: str, errors: dict[str, str]) -> None:
    approver = node.approver
    if isinstance(approver, DesignatedApprover):
        if not approver.user_ids:
            errors[f"{path}.approver_ids"] = "a designated node needs at least one approver"
        elif len(set(approver.user_ids)) != len(approver.user_ids):
            errors[f"{path}.approver_ids"] = "approver ids must be unique"
    elif isinstance(approver, RoleApprover):
        if not approver.role_code:
            errors[f"{path}.role_code"] = "is required for a role node"
    elif isinstance(approver, SelfSelectApprover):
        select_range = approver.select_range
        if select_range.scope in (SelectScope.DEPARTMENT, SelectScope.ROLE):
            if not select_range.value:
                errors[f"{path}.select_range.value"] = (
                    f"is required for scope '{select_range.scope.value}'"
                )
        elif select_range.scope == SelectScope.USERS and not select_range.user_ids:
            errors[f"{path}.select_range.user_ids"] = "is required for scope 'users'"


def validate_flow_schema(flow_schema: FlowSchema) -> dict[str, str]:
    errors: dict[str, str] = {}
    nodes = flow_schema.nodes
    if not nodes:
        errors["flow_schema.nodes"] = "is required"
        return errors

    submits = [i for i, n in enumerate(nodes) if isinstance(n, SubmitNode)]
    ends = [i for i, n in enumerate(nodes) if isinstance(n, EndNode)]
    if submits != [0]:
        errors["flow_schema.nodes[0]"] = "exactly one submit node is required, and it must come first"
    if ends != [len(nodes) - 1]:
        errors[f"flow_schema.nodes[{len(nodes) - 1}]"] = (
            "exactly one end node is required, and it must come last"
        )
    if not flow_schema.approve_nodes:
        errors["flow_schema.nodes"] = "at least one approve node is required"

    seen: set[str] = set()
    for i, node in enumerate(nodes):
        path = f"flow_schema.nodes[{i}]"
        if not node.name:
            errors[f"{path}.name"] = "is required"
        elif node.name in seen:
            errors[f"{path}.name"] = f"duplicate node name '{node.name}'"
        seen.add(node.name)
        if isinstance(node, ApproveNode):
            _validate_approve_node(node, f"{path}.config", errors)
    return errors


@traced_engine("definition_validation", "1.0")
def validate_definition(spec: DefinitionSpec) -> dict[str, str]:
    """
    Validate a definition for publishing.

    Returns:
        Field-keyed error map.  Empty when the definition can be published.
    """
    errors: dict[str, str] = {}
    if not spec.code:
        errors["code"] = "is required"
    if not spec.name:
        errors["name"] = "is required"
    errors.update(validate_form_schema(spec.form_schema))
    errors.update(validate_flow_schema(spec.flow_schema))

    visibility = spec.visibility
    if visibility.scope == VisibilityScope.SPECIFIED and not (
        visibility.user_ids or visibility.department_ids
    ):
        errors["visibility"] = "a specified visibility needs at least one user or department"
    return errors
