"""
Tests for the pipeline coordinator (``approval_engine.pipelines``).

Pipeline: draft -> edit -> review (accept / reject / redo -> draft) -> publish.
"""

from uuid import uuid4

import pytest

from approval_kernel.domain.pipeline import PipelineStatus, TaskStatus
from approval_kernel.exceptions import (
    PipelineNotFoundError,
    PipelineStateError,
    PipelineTemplateError,
    PipelineTemplateNotFoundError,
    RollbackTargetError,
)
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.services.auditor_service import AuditorService
from approval_services.notifications import NotificationKind
from approval_services.orchestrator import ServiceOrchestrator
from tests.builders import REVIEW_PIPELINE

OWNERS = {"draft": "alice", "edit": "bob", "review": "carol", "publish": "dave"}


@pytest.fixture
def pipelines(approval_engine):
    coordinator = approval_engine.pipelines
    coordinator.register_template(REVIEW_PIPELINE, "admin")
    return coordinator


@pytest.fixture
def at_review(pipelines):
    pipeline = pipelines.start_pipeline("doc_review", OWNERS, "alice")
    pipelines.complete_task(pipeline.pipeline_id, "draft", "alice")
    pipelines.complete_task(pipeline.pipeline_id, "edit", "bob")
    return pipeline.pipeline_id


class TestTemplates:
    def test_register_is_idempotent(self, pipelines):
        again = pipelines.register_template(REVIEW_PIPELINE, "admin")
        assert again == pipelines.get_template("doc_review")

    def test_conflicting_registration_rejected(self, pipelines):
        changed = {**REVIEW_PIPELINE, "name": "Something else"}
        with pytest.raises(PipelineTemplateError):
            pipelines.register_template(changed, "admin")

    def test_forward_rollback_target_rejected_at_registration(self, approval_engine):
        template = {
            "code": "bad",
            "tasks": [
                {"code": "review", "outcomes": [
                    {"code": "redo", "type": "fail_rollback", "rollback_to_task_code": "write"},
                ]},
                {"code": "write"},
            ],
        }
        with pytest.raises(RollbackTargetError):
            approval_engine.pipelines.register_template(template, "admin")
        with pytest.raises(PipelineTemplateNotFoundError):
            approval_engine.pipelines.get_template("bad")

    def test_unknown_template(self, pipelines):
        with pytest.raises(PipelineTemplateNotFoundError):
            pipelines.start_pipeline("nope", {}, "alice")


class TestTaskFlow:
    def test_happy_path_completes(self, pipelines, at_review):
        pipeline = pipelines.apply_outcome(at_review, "review", "accept", "carol")
        assert pipeline.task("publish").status == TaskStatus.IN_PROGRESS

        pipeline = pipelines.complete_task(at_review, "publish", "dave")
        assert pipeline.status == PipelineStatus.COMPLETED
        assert all(t.status == TaskStatus.COMPLETED for t in pipeline.tasks)

    def test_fail_halts_until_reopened(self, pipelines, at_review):
        halted = pipelines.apply_outcome(at_review, "review", "reject", "carol", "not ready")
        assert halted.status == PipelineStatus.HALTED

        with pytest.raises(PipelineStateError):
            pipelines.complete_task(at_review, "publish", "dave")

        resumed = pipelines.reopen_failed_task(at_review, "review", "ops")
        assert resumed.status == PipelineStatus.RUNNING
        assert resumed.task("review").status == TaskStatus.IN_PROGRESS

    def test_rollback_keeps_work_products(self, pipelines, at_review, dispatcher):
        pipelines.attach_work_product(at_review, "draft", {"doc": "v1"}, "alice")

        pipeline = pipelines.apply_outcome(at_review, "review", "redo", "carol", "rewrite intro")

        assert pipeline.status == PipelineStatus.RUNNING
        assert pipeline.task("draft").status == TaskStatus.IN_PROGRESS
        assert pipeline.task("draft").work_product == {"doc": "v1"}
        assert pipeline.task("edit").status == TaskStatus.NOT_STARTED
        assert pipeline.task("review").status == TaskStatus.NOT_STARTED
        assert pipeline.task("review").reset_count == 1

        [event] = [e for e in dispatcher.events if e.kind == NotificationKind.ROLLBACK_APPLIED]
        assert event.recipients == ("alice", "bob", "carol")
        assert event.payload["target"] == "draft"
        assert event.payload["comment"] == "rewrite intro"

        stored = pipelines.get(at_review)
        assert stored == pipeline
        assert pipelines.get_as_dict(at_review)["status"] == "running"

    def test_task_history(self, pipelines, at_review):
        pipelines.apply_outcome(at_review, "review", "redo", "carol", "again")

        review = pipelines.task_history(at_review, "review")
        assert [(a.action, a.to_status) for a in review] == [
            ("started", TaskStatus.IN_PROGRESS),
            ("outcome_selected", TaskStatus.IN_PROGRESS),
            ("reset", TaskStatus.NOT_STARTED),
        ]
        assert review[1].outcome_code == "redo"
        assert review[1].comment == "again"

        draft = pipelines.task_history(at_review, "draft")
        assert [a.action for a in draft] == ["started", "completed", "reset", "resumed"]
        assert len(pipelines.task_history(at_review)) == 10

    def test_audit_trail(self, pipelines, at_review, session_factory):
        pipelines.apply_outcome(at_review, "review", "reject", "carol")

        with session_factory() as session:
            trace = ServiceOrchestrator(session).auditor.get_trace(
                AuditorService.PIPELINE, at_review
            )
        assert trace.actions[0] == AuditAction.PIPELINE_STARTED
        assert trace.actions[-2:] == (AuditAction.TASK_FAILED, AuditAction.PIPELINE_HALTED)
        assert AuditAction.TASK_COMPLETED in trace.actions

    def test_unknown_pipeline(self, pipelines):
        with pytest.raises(PipelineNotFoundError):
            pipelines.get(uuid4())
