"""
Schema codec (``approval_kernel.domain.schema_codec``).

Responsibility
--------------
Converts JSON-shaped records (API payloads, YAML config, JSON columns) to
and from the tagged-union domain types.  Parsing collects every problem
into one field-keyed error map before raising, so a caller sees all
mistakes in a definition at once.

Architecture position
---------------------
**Kernel domain layer** -- pure functions, ZERO I/O.

Failure modes
-------------
* ``DefinitionValidationError`` for unknown field/node/approver tags or
  wrongly shaped attributes.
* ``PipelineTemplateError`` for malformed pipeline templates.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence
from uuid import UUID

from approval_kernel.domain.definition import (
    ApproveNode,
    ApproverSpec,
    ApproverType,
    AttachmentField,
    DateField,
    DateRangeField,
    Definition,
    DefinitionSpec,
    DeptLeaderApprover,
    DescriptionField,
    DesignatedApprover,
    EndNode,
    FieldType,
    FlowNode,
    FlowSchema,
    FormField,
    MoneyField,
    MultiApprovePolicy,
    MultiSelectField,
    NodeType,
    NumberField,
    RoleApprover,
    SelectField,
    SelectRange,
    SelectScope,
    SelfSelectApprover,
    SubmitNode,
    SubmitterApprover,
    SupervisorApprover,
    TableColumn,
    TableField,
    TextField,
    UserField,
    Visibility,
    VisibilityScope,
    WhenSelf,
)
from approval_kernel.domain.instance import Decision, Instance, Step
from approval_kernel.domain.pipeline import (
    OutcomeType,
    Pipeline,
    PipelineTemplate,
    ReviewOutcome,
    TaskTemplate,
)
from approval_kernel.exceptions import (
    DefinitionValidationError,
    FormValidationError,
    PipelineTemplateError,
    ValidationError,
)


class _Errors:
    """Accumulates field-keyed error messages while parsing."""

    def __init__(self) -> None:
        self.items: dict[str, str] = {}

    def add(self, path: str, message: str) -> None:
        self.items.setdefault(path, message)

    def __bool__(self) -> bool:
        return bool(self.items)


def _enum(enum_cls, raw: Any, path: str, errors: _Errors, default=None):
    if raw is None:
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errors.add(path, f"unknown value '{raw}' (expected one of: {allowed})")
        return default


def _decimal(raw: Any, path: str, errors: _Errors) -> Decimal | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        errors.add(path, "must be a number")
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        errors.add(path, "must be a number")
        return None


def _int(raw: Any, path: str, errors: _Errors) -> int | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        errors.add(path, "must be an integer")
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        errors.add(path, "must be an integer")
        return None


def _str_tuple(raw: Any, path: str, errors: _Errors) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Sequence):
        errors.add(path, "must be a list")
        return ()
    return tuple(str(v) for v in raw)


def _options(raw: Any, path: str, errors: _Errors) -> tuple[str, ...]:
    # Options may be plain strings or {"label": ..., "value": ...} records.
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Sequence):
        errors.add(path, "must be a list")
        return ()
    values: list[str] = []
    for option in raw:
        if isinstance(option, Mapping):
            value = option.get("value", option.get("label"))
            if value is None:
                errors.add(path, "option records need a value")
                continue
            values.append(str(value))
        else:
            values.append(str(option))
    return tuple(values)


# =========================================================================
# Form schema
# =========================================================================


def _parse_column(raw: Any, path: str, errors: _Errors) -> TableColumn | None:
    if not isinstance(raw, Mapping):
        errors.add(path, "column must be an object")
        return None
    return TableColumn(
        key=str(raw.get("key", "")),
        label=str(raw.get("label", raw.get("key", ""))),
        column_type=_enum(
            FieldType, raw.get("type"), f"{path}.type", errors, FieldType.TEXT
        ),
        required=bool(raw.get("required", False)),
        options=_options(raw.get("options"), f"{path}.options", errors),
    )


def parse_form_field(raw: Any, path: str, errors: _Errors) -> FormField | None:
    if not isinstance(raw, Mapping):
        errors.add(path, "field must be an object")
        return None
    field_type = _enum(FieldType, raw.get("type"), f"{path}.type", errors)
    if field_type is None:
        if "type" not in raw:
            errors.add(f"{path}.type", "is required")
        return None

    key = str(raw.get("key", ""))
    label = str(raw.get("label", key))
    required = bool(raw.get("required", False))

    if field_type in (FieldType.TEXT, FieldType.TEXTAREA):
        return TextField(
            key, label, required,
            multiline=field_type == FieldType.TEXTAREA,
            max_length=_int(raw.get("max_length"), f"{path}.max_length", errors),
        )
    if field_type == FieldType.NUMBER:
        return NumberField(
            key, label, required,
            min_value=_decimal(raw.get("min"), f"{path}.min", errors),
            max_value=_decimal(raw.get("max"), f"{path}.max", errors),
        )
    if field_type == FieldType.MONEY:
        return MoneyField(
            key, label, required,
            currency=str(raw.get("currency", raw.get("prefix", "CNY")) or "CNY"),
            min_value=_decimal(raw.get("min"), f"{path}.min", errors),
            max_value=_decimal(raw.get("max"), f"{path}.max", errors),
        )
    if field_type == FieldType.SELECT:
        return SelectField(
            key, label, required,
            options=_options(raw.get("options"), f"{path}.options", errors),
        )
    if field_type == FieldType.MULTISELECT:
        return MultiSelectField(
            key, label, required,
            options=_options(raw.get("options"), f"{path}.options", errors),
        )
    if field_type == FieldType.DATE:
        return DateField(key, label, required)
    if field_type == FieldType.DATERANGE:
        return DateRangeField(key, label, required)
    if field_type == FieldType.USER:
        return UserField(key, label, required, multiple=bool(raw.get("multiple", False)))
    if field_type == FieldType.ATTACHMENT:
        return AttachmentField(
            key, label, required,
            max_files=_int(raw.get("max_files"), f"{path}.max_files", errors),
        )
    if field_type == FieldType.TABLE:
        raw_columns = raw.get("columns") or []
        columns = []
        for i, raw_column in enumerate(raw_columns):
            column = _parse_column(raw_column, f"{path}.columns[{i}]", errors)
            if column is not None:
                columns.append(column)
        return TableField(
            key, label, required,
            columns=tuple(columns),
            min_rows=_int(raw.get("min_rows"), f"{path}.min_rows", errors) or 0,
        )
    return DescriptionField(key, label, False, content=str(raw.get("content", "")))


def parse_form_schema(raw: Any, errors: _Errors | None = None) -> tuple[FormField, ...]:
    """Parse a form schema list.  Raises when called without an accumulator."""
    own = errors is None
    if errors is None:
        errors = _Errors()
    fields: list[FormField] = []
    if raw is None:
        raw = []
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        errors.add("form_schema", "must be a list of fields")
    else:
        for i, raw_field in enumerate(raw):
            parsed = parse_form_field(raw_field, f"form_schema[{i}]", errors)
            if parsed is not None:
                fields.append(parsed)
    if own and errors:
        raise DefinitionValidationError(errors.items)
    return tuple(fields)


def _num(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def form_field_to_dict(form_field: FormField) -> dict[str, Any]:
    data: dict[str, Any] = {
        "key": form_field.key,
        "label": form_field.label,
        "type": form_field.field_type.value,
        "required": form_field.required,
    }
    if isinstance(form_field, TextField):
        data["max_length"] = form_field.max_length
    elif isinstance(form_field, (NumberField, MoneyField)):
        data["min"] = _num(form_field.min_value)
        data["max"] = _num(form_field.max_value)
        if isinstance(form_field, MoneyField):
            data["currency"] = form_field.currency
    elif isinstance(form_field, (SelectField, MultiSelectField)):
        data["options"] = list(form_field.options)
    elif isinstance(form_field, UserField):
        data["multiple"] = form_field.multiple
    elif isinstance(form_field, AttachmentField):
        data["max_files"] = form_field.max_files
    elif isinstance(form_field, TableField):
        data["min_rows"] = form_field.min_rows
        data["columns"] = [
            {
                "key": c.key,
                "label": c.label,
                "type": c.column_type.value,
                "required": c.required,
                "options": list(c.options),
            }
            for c in form_field.columns
        ]
    elif isinstance(form_field, DescriptionField):
        data["content"] = form_field.content
    return data


# =========================================================================
# Flow schema
# =========================================================================


def _parse_approver(config: Mapping[str, Any], path: str, errors: _Errors) -> ApproverSpec:
    approver_type = _enum(
        ApproverType, config.get("approver_type"), f"{path}.approver_type", errors
    )
    if approver_type is None:
        if "approver_type" not in config:
            errors.add(f"{path}.approver_type", "is required")
        return SubmitterApprover()
    if approver_type == ApproverType.SUBMITTER:
        return SubmitterApprover()
    if approver_type == ApproverType.SUPERVISOR:
        return SupervisorApprover()
    if approver_type == ApproverType.DEPT_LEADER:
        return DeptLeaderApprover()
    if approver_type == ApproverType.DESIGNATED:
        return DesignatedApprover(
            user_ids=_str_tuple(config.get("approver_ids"), f"{path}.approver_ids", errors)
        )
    if approver_type == ApproverType.ROLE:
        return RoleApprover(role_code=str(config.get("role_code") or ""))
    raw_range = config.get("select_range") or {}
    if not isinstance(raw_range, Mapping):
        errors.add(f"{path}.select_range", "must be an object")
        raw_range = {}
    return SelfSelectApprover(
        select_range=SelectRange(
            scope=_enum(
                SelectScope, raw_range.get("scope"),
                f"{path}.select_range.scope", errors, SelectScope.ALL,
            ),
            value=raw_range.get("value"),
            user_ids=_str_tuple(
                raw_range.get("user_ids"), f"{path}.select_range.user_ids", errors
            ),
        )
    )


def parse_flow_node(raw: Any, path: str, errors: _Errors) -> FlowNode | None:
    if not isinstance(raw, Mapping):
        errors.add(path, "node must be an object")
        return None
    node_type = _enum(NodeType, raw.get("type"), f"{path}.type", errors)
    if node_type is None:
        if "type" not in raw:
            errors.add(f"{path}.type", "is required")
        return None
    config = raw.get("config") or {}
    if not isinstance(config, Mapping):
        errors.add(f"{path}.config", "must be an object")
        config = {}
    name = str(raw.get("name") or node_type.value)
    cc = _str_tuple(config.get("cc_users"), f"{path}.config.cc_users", errors)

    if node_type == NodeType.SUBMIT:
        return SubmitNode(name=name, cc_user_ids=cc)
    if node_type == NodeType.END:
        return EndNode(name=name)
    return ApproveNode(
        name=name,
        approver=_parse_approver(config, f"{path}.config", errors),
        multi_approve=_enum(
            MultiApprovePolicy, config.get("multi_approve"),
            f"{path}.config.multi_approve", errors, MultiApprovePolicy.ALL,
        ),
        when_self=_enum(
            WhenSelf, config.get("when_self"),
            f"{path}.config.when_self", errors, WhenSelf.SELF,
        ),
        cc_user_ids=cc,
    )


def parse_flow_schema(raw: Any, errors: _Errors | None = None) -> FlowSchema:
    own = errors is None
    if errors is None:
        errors = _Errors()
    nodes: list[FlowNode] = []
    if isinstance(raw, Mapping):
        raw = raw.get("nodes")
    if raw is None:
        raw = []
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        errors.add("flow_schema", "must be a list of nodes")
    else:
        for i, raw_node in enumerate(raw):
            parsed = parse_flow_node(raw_node, f"flow_schema.nodes[{i}]", errors)
            if parsed is not None:
                nodes.append(parsed)
    if own and errors:
        raise DefinitionValidationError(errors.items)
    return FlowSchema(nodes=tuple(nodes))


def approver_to_dict(approver: ApproverSpec) -> dict[str, Any]:
    data: dict[str, Any] = {"approver_type": approver.approver_type.value}
    if isinstance(approver, DesignatedApprover):
        data["approver_ids"] = list(approver.user_ids)
    elif isinstance(approver, RoleApprover):
        data["role_code"] = approver.role_code
    elif isinstance(approver, SelfSelectApprover):
        data["select_range"] = {
            "scope": approver.select_range.scope.value,
            "value": approver.select_range.value,
            "user_ids": list(approver.select_range.user_ids),
        }
    return data


def flow_node_to_dict(node: FlowNode) -> dict[str, Any]:
    data: dict[str, Any] = {"type": node.node_type.value, "name": node.name}
    if isinstance(node, SubmitNode):
        data["config"] = {"cc_users": list(node.cc_user_ids)}
    elif isinstance(node, ApproveNode):
        config = approver_to_dict(node.approver)
        config["multi_approve"] = node.multi_approve.value
        config["when_self"] = node.when_self.value
        config["cc_users"] = list(node.cc_user_ids)
        data["config"] = config
    return data


def flow_schema_to_dict(flow: FlowSchema) -> dict[str, Any]:
    return {"nodes": [flow_node_to_dict(n) for n in flow.nodes]}


# =========================================================================
# Definitions
# =========================================================================


def parse_visibility(raw: Any, errors: _Errors | None = None) -> Visibility:
    own = errors is None
    if errors is None:
        errors = _Errors()
    visibility = _parse_visibility(raw, errors)
    if own and errors:
        raise DefinitionValidationError(errors.items)
    return visibility


def _parse_visibility(raw: Any, errors: _Errors) -> Visibility:
    if raw is None:
        return Visibility()
    if isinstance(raw, str):
        return Visibility(scope=_enum(VisibilityScope, raw, "visibility", errors, VisibilityScope.ALL))
    if not isinstance(raw, Mapping):
        errors.add("visibility", "must be a string or an object")
        return Visibility()
    return Visibility(
        scope=_enum(
            VisibilityScope, raw.get("scope"), "visibility.scope", errors,
            VisibilityScope.ALL,
        ),
        user_ids=_str_tuple(raw.get("user_ids"), "visibility.user_ids", errors),
        department_ids=_str_tuple(
            raw.get("department_ids"), "visibility.department_ids", errors
        ),
    )


def visibility_to_dict(visibility: Visibility) -> dict[str, Any]:
    return {
        "scope": visibility.scope.value,
        "user_ids": list(visibility.user_ids),
        "department_ids": list(visibility.department_ids),
    }


def parse_definition_spec(raw: Mapping[str, Any]) -> DefinitionSpec:
    """Parse an authoring payload into a ``DefinitionSpec``.

    Raises:
        DefinitionValidationError: with every problem found, keyed by path.
    """
    errors = _Errors()
    if not isinstance(raw, Mapping):
        raise DefinitionValidationError({"definition": "must be an object"})
    code = str(raw.get("code") or "").strip()
    name = str(raw.get("name") or "").strip()
    if not code:
        errors.add("code", "is required")
    if not name:
        errors.add("name", "is required")
    form_schema = parse_form_schema(raw.get("form_schema"), errors)
    flow_schema = parse_flow_schema(raw.get("flow_schema"), errors)
    visibility = parse_visibility(raw.get("visibility"), errors)
    sort_order = raw.get("sort_order", 0)
    if not isinstance(sort_order, int) or isinstance(sort_order, bool):
        errors.add("sort_order", "must be an integer")
        sort_order = 0
    if errors:
        raise DefinitionValidationError(errors.items)
    return DefinitionSpec(
        code=code,
        name=name,
        form_schema=form_schema,
        flow_schema=flow_schema,
        description=str(raw.get("description") or ""),
        icon=str(raw.get("icon") or "approval"),
        group_name=str(raw.get("group_name") or "Other"),
        sort_order=sort_order,
        admin_user_id=raw.get("admin_user_id"),
        visibility=visibility,
    )


def schema_document(
    form_schema: Sequence[FormField], flow_schema: FlowSchema
) -> dict[str, Any]:
    """The canonical document hashed into ``schema_hash``."""
    return {
        "form_schema": [form_field_to_dict(f) for f in form_schema],
        "flow_schema": flow_schema_to_dict(flow_schema),
    }


def _ts(value) -> str | None:
    return value.isoformat() if value is not None else None


def definition_to_dict(definition: Definition) -> dict[str, Any]:
    data = {
        "id": str(definition.definition_id),
        "code": definition.code,
        "version": definition.version,
        "status": definition.status.value,
        "name": definition.name,
        "description": definition.description,
        "icon": definition.icon,
        "group_name": definition.group_name,
        "sort_order": definition.sort_order,
        "admin_user_id": definition.admin_user_id,
        "visibility": visibility_to_dict(definition.visibility),
        "schema_hash": definition.schema_hash,
        "created_by": definition.created_by,
        "created_at": _ts(definition.created_at),
        "published_at": _ts(definition.published_at),
    }
    data.update(schema_document(definition.form_schema, definition.flow_schema))
    return data


# =========================================================================
# Instances
# =========================================================================


def step_to_dict(step: Step) -> dict[str, Any]:
    return {
        "index": step.index,
        "node_name": step.node_name,
        "node": flow_node_to_dict(step.node),
        "status": step.status.value,
        "multi_approve": step.policy.value,
        "eligible_approver_id": step.eligible_approver_id,
        "approvers": [
            {
                "user_id": a.user_id,
                "status": a.status.value,
                "comment": a.comment,
                "decided_at": _ts(a.decided_at),
            }
            for a in step.approvers
        ],
        "started_at": _ts(step.started_at),
        "completed_at": _ts(step.completed_at),
    }


def instance_to_dict(instance: Instance) -> dict[str, Any]:
    return {
        "id": str(instance.instance_id),
        "definition_id": str(instance.definition_id),
        "definition_code": instance.definition_code,
        "definition_version": instance.definition_version,
        "title": instance.title,
        "form_data": dict(instance.form_data),
        "submitted_by": instance.submitted_by,
        "status": instance.status.value,
        "current_step": instance.current_step,
        "blocked": instance.blocked,
        "blocked_reason": instance.blocked_reason,
        "steps": [step_to_dict(s) for s in instance.steps],
        "submitted_at": _ts(instance.submitted_at),
        "completed_at": _ts(instance.completed_at),
        "pipeline_id": str(instance.pipeline_id) if instance.pipeline_id else None,
        "task_code": instance.task_code,
        "lock_version": instance.lock_version,
    }


# =========================================================================
# Pipelines
# =========================================================================


def parse_pipeline_template(raw: Mapping[str, Any]) -> PipelineTemplate:
    """Parse a pipeline template record.

    Only the shape is checked here; rollback targets are checked by the
    rollback engine's template validation.
    """
    errors = _Errors()
    if not isinstance(raw, Mapping):
        raise PipelineTemplateError({"template": "must be an object"})
    code = str(raw.get("code") or "")
    if not code:
        errors.add("code", "is required")
    tasks: list[TaskTemplate] = []
    for i, raw_task in enumerate(raw.get("tasks") or []):
        path = f"tasks[{i}]"
        if not isinstance(raw_task, Mapping):
            errors.add(path, "task must be an object")
            continue
        outcomes: list[ReviewOutcome] = []
        for j, raw_outcome in enumerate(raw_task.get("outcomes") or []):
            opath = f"{path}.outcomes[{j}]"
            if not isinstance(raw_outcome, Mapping):
                errors.add(opath, "outcome must be an object")
                continue
            outcome_type = _enum(
                OutcomeType, raw_outcome.get("type"), f"{opath}.type", errors
            )
            if outcome_type is None:
                if "type" not in raw_outcome:
                    errors.add(f"{opath}.type", "is required")
                continue
            outcomes.append(
                ReviewOutcome(
                    code=str(raw_outcome.get("code") or outcome_type.value),
                    name=str(raw_outcome.get("name") or raw_outcome.get("code") or ""),
                    outcome_type=outcome_type,
                    rollback_to_task_code=raw_outcome.get("rollback_to_task_code"),
                )
            )
        task_code = str(raw_task.get("code") or "")
        if not task_code:
            errors.add(f"{path}.code", "is required")
        tasks.append(
            TaskTemplate(
                code=task_code,
                name=str(raw_task.get("name") or task_code),
                is_review=bool(raw_task.get("is_review", bool(outcomes))),
                outcomes=tuple(outcomes),
            )
        )
    if errors:
        raise PipelineTemplateError(errors.items)
    return PipelineTemplate(code=code, name=str(raw.get("name") or code), tasks=tuple(tasks))


def outcome_to_dict(outcome: ReviewOutcome) -> dict[str, Any]:
    return {
        "code": outcome.code,
        "name": outcome.name,
        "type": outcome.outcome_type.value,
        "rollback_to_task_code": outcome.rollback_to_task_code,
    }


def parse_outcome(raw: Mapping[str, Any]) -> ReviewOutcome:
    return ReviewOutcome(
        code=raw["code"],
        name=raw.get("name", raw["code"]),
        outcome_type=OutcomeType(raw["type"]),
        rollback_to_task_code=raw.get("rollback_to_task_code"),
    )


def pipeline_to_dict(pipeline: Pipeline) -> dict[str, Any]:
    return {
        "id": str(pipeline.pipeline_id),
        "template_code": pipeline.template_code,
        "status": pipeline.status.value,
        "tasks": [
            {
                "code": t.code,
                "name": t.name,
                "position": t.position,
                "status": t.status.value,
                "is_review": t.is_review,
                "owner_id": t.owner_id,
                "selected_outcome": t.selected_outcome,
                "reset_count": t.reset_count,
                "work_product": dict(t.work_product),
                "outcomes": [outcome_to_dict(o) for o in t.outcomes],
            }
            for t in pipeline.tasks
        ],
        "created_at": _ts(pipeline.created_at),
        "completed_at": _ts(pipeline.completed_at),
    }


def parse_self_selection(raw: Mapping[Any, Any] | None) -> dict[int, tuple[str, ...]]:
    """Normalise ``{step_index: [user ids]}`` with string or int keys."""
    if not raw:
        return {}
    selected: dict[int, tuple[str, ...]] = {}
    errors = _Errors()
    for key, users in raw.items():
        try:
            index = int(key)
        except (TypeError, ValueError):
            errors.add(f"self_selected_approvers.{key}", "key must be a step index")
            continue
        selected[index] = _str_tuple(users, f"self_selected_approvers.{key}", errors)
    if errors:
        raise FormValidationError(errors.items)
    return selected


def as_uuid(value: UUID | str, field: str = "id") -> UUID:
    """Coerce an inbound id; a malformed one is a ValidationError keyed by ``field``."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError({field: "is not a valid id"}) from None


def parse_decision(value: Decision | str) -> Decision:
    try:
        return Decision(value)
    except ValueError:
        choices = " or ".join(d.value for d in Decision)
        raise ValidationError({"decision": f"must be {choices}"}) from None


def parse_approve_node(raw: Mapping[str, Any]) -> ApproveNode:
    """Parse a stored step snapshot back into its ``ApproveNode``."""
    errors = _Errors()
    node = parse_flow_node(raw, "node", errors)
    if not isinstance(node, ApproveNode):
        errors.add("node.type", "step snapshot must be an approve node")
    if errors:
        raise DefinitionValidationError(errors.items)
    return node


def pipeline_template_to_dict(template: PipelineTemplate) -> dict[str, Any]:
    return {
        "code": template.code,
        "name": template.name,
        "tasks": [
            {
                "code": t.code,
                "name": t.name,
                "is_review": t.is_review,
                "outcomes": [outcome_to_dict(o) for o in t.outcomes],
            }
            for t in template.tasks
        ],
    }
