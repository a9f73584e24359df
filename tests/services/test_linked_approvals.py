"""
Approvals that gate a pipeline task.

An instance submitted with ``pipeline_id`` and ``task_code`` completes
that task once approved, which starts the task after it.  A review task
takes its first ``pass`` outcome.

Pipeline: draft -> edit -> review (accept / reject / redo -> draft) -> publish.
"""

from uuid import uuid4

import pytest

from approval_kernel.domain.instance import InstanceStatus
from approval_kernel.domain.pipeline import TaskStatus
from approval_kernel.exceptions import (
    PipelineNotFoundError,
    PipelineStateError,
    TaskNotFoundError,
    ValidationError,
)
from tests.builders import REVIEW_PIPELINE, approve_node

OWNERS = {"draft": "alice", "edit": "bob", "review": "carol", "publish": "dave"}


@pytest.fixture
def pipelines(approval_engine):
    coordinator = approval_engine.pipelines
    coordinator.register_template(REVIEW_PIPELINE, "admin")
    return coordinator


@pytest.fixture
def pipeline_id(pipelines):
    return pipelines.start_pipeline("doc_review", OWNERS, "alice").pipeline_id


@pytest.fixture
def definition(publish_definition):
    return publish_definition(approve_node("Manager", "supervisor"))


class TestApprovalCompletesTheTask:
    def test_work_task_completes_and_the_next_starts(
        self, approval_engine, pipelines, pipeline_id, definition, valid_form
    ):
        instance = approval_engine.submit(
            definition.definition_id, valid_form, "alice",
            pipeline_id=pipeline_id, task_code="draft",
        )
        assert instance.pipeline_id == pipeline_id
        assert instance.task_code == "draft"
        assert pipelines.get(pipeline_id).task("draft").status == TaskStatus.IN_PROGRESS

        outcome = approval_engine.decide(instance.instance_id, 0, "bob", "approve")

        assert outcome.instance_status == InstanceStatus.APPROVED
        pipeline = pipelines.get(pipeline_id)
        assert pipeline.task("draft").status == TaskStatus.COMPLETED
        assert pipeline.task("edit").status == TaskStatus.IN_PROGRESS
        history = pipelines.task_history(pipeline_id, "draft")
        assert [(a.action, a.actor_id) for a in history] == [
            ("started", "alice"),
            ("completed", "bob"),
        ]

    def test_review_task_takes_its_pass_outcome(
        self, approval_engine, pipelines, pipeline_id, definition, valid_form
    ):
        pipelines.complete_task(pipeline_id, "draft", "alice")
        pipelines.complete_task(pipeline_id, "edit", "bob")
        instance = approval_engine.submit(
            definition.definition_id, valid_form, "alice",
            pipeline_id=str(pipeline_id), task_code="review",
        )

        approval_engine.decide(instance.instance_id, 0, "bob", "approve")

        pipeline = pipelines.get(pipeline_id)
        assert pipeline.task("review").status == TaskStatus.COMPLETED
        assert pipeline.task("review").selected_outcome == "accept"
        assert pipeline.task("publish").status == TaskStatus.IN_PROGRESS

    def test_approved_at_submission(
        self, approval_engine, pipelines, pipeline_id, publish_definition, valid_form
    ):
        definition = publish_definition(approve_node("Head", "dept_leader", when_self="skip"))

        instance = approval_engine.submit(
            definition.definition_id, valid_form, "carol",
            pipeline_id=pipeline_id, task_code="draft",
        )

        assert instance.status == InstanceStatus.APPROVED
        assert pipelines.get(pipeline_id).task("edit").status == TaskStatus.IN_PROGRESS

    def test_link_is_part_of_the_instance_record(
        self, approval_engine, pipeline_id, definition, valid_form
    ):
        iid = approval_engine.submit(
            definition.definition_id, valid_form, "alice",
            pipeline_id=pipeline_id, task_code="draft",
        ).instance_id

        data = approval_engine.get_as_dict(iid)
        assert data["pipeline_id"] == str(pipeline_id)
        assert data["task_code"] == "draft"


class TestTaskLeftAlone:
    def test_rejection_keeps_the_task_in_progress(
        self, approval_engine, pipelines, pipeline_id, definition, valid_form
    ):
        instance = approval_engine.submit(
            definition.definition_id, valid_form, "alice",
            pipeline_id=pipeline_id, task_code="draft",
        )

        outcome = approval_engine.decide(instance.instance_id, 0, "bob", "reject")

        assert outcome.instance_status == InstanceStatus.REJECTED
        pipeline = pipelines.get(pipeline_id)
        assert pipeline.task("draft").status == TaskStatus.IN_PROGRESS
        assert pipeline.task("edit").status == TaskStatus.NOT_STARTED

    def test_task_that_moved_on_is_not_touched(
        self, approval_engine, pipelines, pipeline_id, definition, valid_form, captured_logs
    ):
        instance = approval_engine.submit(
            definition.definition_id, valid_form, "alice",
            pipeline_id=pipeline_id, task_code="draft",
        )
        pipelines.complete_task(pipeline_id, "draft", "alice")

        outcome = approval_engine.decide(instance.instance_id, 0, "bob", "approve")

        assert outcome.instance_status == InstanceStatus.APPROVED
        pipeline = pipelines.get(pipeline_id)
        assert pipeline.task("edit").status == TaskStatus.IN_PROGRESS
        assert pipeline.task("review").status == TaskStatus.NOT_STARTED
        assert any(r["message"] == "linked_task_not_in_progress" for r in captured_logs())


class TestLinkValidation:
    def test_task_must_be_in_progress(
        self, approval_engine, pipeline_id, definition, valid_form
    ):
        with pytest.raises(PipelineStateError):
            approval_engine.submit(
                definition.definition_id, valid_form, "alice",
                pipeline_id=pipeline_id, task_code="edit",
            )
        assert approval_engine.list_submitted("alice") == []

    def test_unknown_task(self, approval_engine, pipeline_id, definition, valid_form):
        with pytest.raises(TaskNotFoundError):
            approval_engine.submit(
                definition.definition_id, valid_form, "alice",
                pipeline_id=pipeline_id, task_code="translate",
            )

    def test_unknown_pipeline(self, approval_engine, definition, valid_form):
        with pytest.raises(PipelineNotFoundError):
            approval_engine.submit(
                definition.definition_id, valid_form, "alice",
                pipeline_id=uuid4(), task_code="draft",
            )

    def test_task_code_needs_a_pipeline(self, approval_engine, definition, valid_form):
        with pytest.raises(ValidationError) as exc_info:
            approval_engine.submit(
                definition.definition_id, valid_form, "alice", task_code="draft",
            )
        assert exc_info.value.errors == {"pipeline_id": "is required with task_code"}
