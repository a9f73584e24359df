"""
Tests for the schema codec (``approval_kernel.domain.schema_codec``).

The codec turns JSON-shaped payloads into tagged-union domain types and
reports every problem in one field-keyed error map.
"""

from decimal import Decimal

import pytest

from approval_kernel.domain.definition import (
    ApproveNode,
    DeptLeaderApprover,
    DesignatedApprover,
    MoneyField,
    MultiApprovePolicy,
    RoleApprover,
    SelectScope,
    SelfSelectApprover,
    SubmitNode,
    TableField,
    TextField,
    VisibilityScope,
    WhenSelf,
)
from approval_kernel.domain.pipeline import OutcomeType
from approval_kernel.domain.schema_codec import (
    flow_schema_to_dict,
    parse_definition_spec,
    parse_flow_schema,
    parse_pipeline_template,
    parse_self_selection,
    pipeline_template_to_dict,
)
from approval_kernel.exceptions import (
    DefinitionValidationError,
    FormValidationError,
    PipelineTemplateError,
)
from tests.builders import REVIEW_PIPELINE, approve_node, definition_payload


class TestParseDefinitionSpec:
    def test_defaults_for_metadata(self):
        spec = parse_definition_spec(definition_payload(approve_node("L1", "supervisor")))
        assert spec.icon == "approval"
        assert spec.group_name == "Other"
        assert spec.sort_order == 0
        assert spec.visibility.scope == VisibilityScope.ALL

    def test_field_types_become_tagged_variants(self):
        spec = parse_definition_spec(definition_payload(
            approve_node("L1", "supervisor"),
            form_schema=[
                {"key": "why", "label": "Why", "type": "textarea", "max_length": 10},
                {"key": "cost", "label": "Cost", "type": "money", "min": "1.50"},
                {
                    "key": "rows",
                    "label": "Rows",
                    "type": "table",
                    "min_rows": 1,
                    "columns": [{"key": "qty", "type": "number", "required": True}],
                },
            ],
        ))
        why, cost, rows = spec.form_schema
        assert isinstance(why, TextField) and why.multiline and why.max_length == 10
        assert isinstance(cost, MoneyField) and cost.min_value == Decimal("1.50")
        assert isinstance(rows, TableField) and rows.min_rows == 1
        assert rows.columns[0].required

    def test_approver_variants_and_policies(self):
        spec = parse_definition_spec(definition_payload(
            approve_node("A", "designated", approver_ids=["u1", "u2"], multi_approve="sequential"),
            approve_node("B", "role", role_code="legal", multi_approve="any"),
            approve_node("C", "dept_leader", when_self="skip"),
            approve_node(
                "D", "self_select",
                select_range={"scope": "users", "user_ids": ["u9"]},
            ),
            submit_cc=["cc1"],
        ))
        flow = spec.flow_schema
        assert isinstance(flow.nodes[0], SubmitNode)
        assert flow.submit_node.cc_user_ids == ("cc1",)
        a, b, c, d = flow.approve_nodes
        assert isinstance(a.approver, DesignatedApprover)
        assert a.approver.user_ids == ("u1", "u2")
        assert a.multi_approve == MultiApprovePolicy.SEQUENTIAL
        assert isinstance(b.approver, RoleApprover) and b.multi_approve == MultiApprovePolicy.ANY
        assert isinstance(c.approver, DeptLeaderApprover) and c.when_self == WhenSelf.SKIP
        assert isinstance(d.approver, SelfSelectApprover)
        assert d.approver.select_range.scope == SelectScope.USERS

    def test_every_error_is_reported_at_once(self):
        payload = definition_payload(
            approve_node("A", "nobody"),
            form_schema=[{"key": "x", "type": "hologram"}],
        )
        payload["code"] = ""
        with pytest.raises(DefinitionValidationError) as exc_info:
            parse_definition_spec(payload)
        errors = exc_info.value.errors
        assert "code" in errors
        assert "form_schema[0].type" in errors
        assert "flow_schema.nodes[1].config.approver_type" in errors

    def test_non_integer_sort_order_rejected(self):
        payload = definition_payload(approve_node("A", "supervisor"), sort_order="first")
        with pytest.raises(DefinitionValidationError) as exc_info:
            parse_definition_spec(payload)
        assert "sort_order" in exc_info.value.errors

    def test_flow_schema_document_is_stable(self):
        flow = parse_flow_schema(definition_payload(
            approve_node("A", "role", role_code="legal"),
        )["flow_schema"])
        assert parse_flow_schema(flow_schema_to_dict(flow)) == flow
        node = flow.approve_nodes[0]
        assert isinstance(node, ApproveNode) and node.when_self == WhenSelf.SELF


class TestParseSelfSelection:
    def test_string_keys_become_step_indexes(self):
        assert parse_self_selection({"1": ["u1", "u2"], 0: ["u3"]}) == {
            1: ("u1", "u2"),
            0: ("u3",),
        }

    def test_empty_is_empty(self):
        assert parse_self_selection(None) == {}

    def test_non_index_key_rejected(self):
        with pytest.raises(FormValidationError) as exc_info:
            parse_self_selection({"first": ["u1"]})
        assert "self_selected_approvers.first" in exc_info.value.errors


class TestParsePipelineTemplate:
    def test_review_tasks_and_outcomes(self):
        template = parse_pipeline_template(REVIEW_PIPELINE)
        assert [t.code for t in template.tasks] == ["draft", "edit", "review", "publish"]
        review = template.tasks[2]
        assert review.is_review
        assert review.outcome("redo").outcome_type == OutcomeType.FAIL_ROLLBACK
        assert review.outcome("redo").rollback_to_task_code == "draft"
        assert template.position_of("publish") == 3

    def test_serialises_back_to_the_same_template(self):
        template = parse_pipeline_template(REVIEW_PIPELINE)
        assert parse_pipeline_template(pipeline_template_to_dict(template)) == template

    def test_missing_outcome_type_rejected(self):
        raw = {"code": "p", "tasks": [{"code": "r", "outcomes": [{"code": "ok"}]}]}
        with pytest.raises(PipelineTemplateError) as exc_info:
            parse_pipeline_template(raw)
        assert "tasks[0].outcomes[0].type" in exc_info.value.errors
