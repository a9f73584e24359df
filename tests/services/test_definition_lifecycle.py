"""
Tests for definition versioning through the engine facade.

Invariants tested:
- Published versions are immutable; edits go through a new draft version.
- Publishing supersedes the previous published version.
- A version can only be published while it is the newest.
- Listing groups published definitions by group_name.
"""

import pytest

from approval_kernel.domain.definition import DefinitionStatus
from approval_kernel.exceptions import (
    DefinitionAlreadyPublishedError,
    DefinitionNotEditableError,
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    DefinitionValidationError,
    NewerDraftExistsError,
)
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.services.auditor_service import AuditorService
from approval_services.orchestrator import ServiceOrchestrator
from tests.builders import approve_node, definition_payload

ADMIN = "admin"


def _payload(**kwargs):
    return definition_payload(approve_node("Manager", "supervisor"), **kwargs)


class TestDrafts:
    def test_draft_gets_version_one(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        assert draft.version == 1
        assert draft.status == DefinitionStatus.DRAFT
        assert draft.schema_hash is None
        assert draft.created_by == ADMIN

    def test_update_draft_replaces_content(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        updated = approval_engine.update_draft(
            draft.definition_id, _payload(name="Renamed"), ADMIN
        )
        assert updated.name == "Renamed"
        assert updated.version == 1

    def test_update_cannot_change_code(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        with pytest.raises(DefinitionValidationError) as exc_info:
            approval_engine.update_draft(draft.definition_id, _payload(code="other"), ADMIN)
        assert "code" in exc_info.value.errors

    def test_published_version_is_not_editable(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.publish(draft.definition_id, ADMIN)
        with pytest.raises(DefinitionNotEditableError):
            approval_engine.update_draft(draft.definition_id, _payload(name="x"), ADMIN)
        with pytest.raises(DefinitionNotEditableError):
            approval_engine.delete_draft(draft.definition_id, ADMIN)

    def test_delete_draft(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.delete_draft(draft.definition_id, ADMIN)
        with pytest.raises(DefinitionNotFoundError):
            approval_engine.get_definition("purchase_request", version=1)

    def test_malformed_payload_is_rejected_before_storage(self, approval_engine):
        with pytest.raises(DefinitionValidationError):
            approval_engine.create_draft(
                definition_payload(approve_node("A", "nobody")), ADMIN
            )


class TestPublishing:
    def test_publish_stamps_hash_and_time(self, approval_engine, clock):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        published = approval_engine.publish(draft.definition_id, ADMIN)
        assert published.status == DefinitionStatus.PUBLISHED
        assert len(published.schema_hash) == 64
        assert published.published_at == clock.now()
        assert approval_engine.get_definition("purchase_request") == published

    def test_invalid_schema_cannot_be_published(self, approval_engine):
        draft = approval_engine.create_draft(
            definition_payload(approve_node("Panel", "designated")), ADMIN
        )
        with pytest.raises(DefinitionValidationError) as exc_info:
            approval_engine.publish(draft.definition_id, ADMIN)
        assert "flow_schema.nodes[1].config.approver_ids" in exc_info.value.errors
        assert approval_engine.get_definition("purchase_request", 1).status == (
            DefinitionStatus.DRAFT
        )

    def test_publish_twice_conflicts(self, approval_engine):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.publish(draft.definition_id, ADMIN)
        with pytest.raises(DefinitionAlreadyPublishedError):
            approval_engine.publish(draft.definition_id, ADMIN)

    def test_revision_supersedes_the_published_version(self, approval_engine):
        v1 = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.publish(v1.definition_id, ADMIN)

        v2 = approval_engine.revise(v1.definition_id, ADMIN, _payload(name="Purchase v2"))
        assert v2.version == 2
        assert v2.status == DefinitionStatus.DRAFT
        assert approval_engine.get_definition("purchase_request").version == 1

        approval_engine.publish(v2.definition_id, ADMIN)
        assert approval_engine.get_definition("purchase_request").name == "Purchase v2"
        old = approval_engine.get_definition("purchase_request", 1)
        assert old.status == DefinitionStatus.SUPERSEDED
        assert old.retired_at is not None

    def test_revise_without_changes_copies_content(self, approval_engine):
        v1 = approval_engine.create_draft(_payload(), ADMIN)
        v2 = approval_engine.revise(v1.definition_id, ADMIN)
        assert v2.flow_schema == v1.flow_schema
        assert v2.version == 2

    def test_older_draft_cannot_be_published(self, approval_engine):
        v1 = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.revise(v1.definition_id, ADMIN)
        with pytest.raises(NewerDraftExistsError) as exc_info:
            approval_engine.publish(v1.definition_id, ADMIN)
        assert exc_info.value.newer_version == 2

    def test_unpublish(self, approval_engine, valid_form):
        draft = approval_engine.create_draft(_payload(), ADMIN)
        published = approval_engine.publish(draft.definition_id, ADMIN)

        retired = approval_engine.unpublish(published.definition_id, ADMIN)

        assert retired.status == DefinitionStatus.UNPUBLISHED
        with pytest.raises(DefinitionNotPublishedError):
            approval_engine.submit(published.definition_id, valid_form, "alice")
        with pytest.raises(DefinitionNotFoundError):
            approval_engine.get_definition("purchase_request")

    def test_lifecycle_is_audited(self, approval_engine, session_factory):
        v1 = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.publish(v1.definition_id, ADMIN)
        v2 = approval_engine.revise(v1.definition_id, ADMIN)
        approval_engine.publish(v2.definition_id, ADMIN)

        with session_factory() as session:
            auditor = ServiceOrchestrator(session).auditor
            assert auditor.get_trace(AuditorService.DEFINITION, v1.definition_id).actions == (
                AuditAction.DEFINITION_DRAFTED,
                AuditAction.DEFINITION_PUBLISHED,
                AuditAction.DEFINITION_SUPERSEDED,
            )
            assert auditor.validate_chain()


class TestListing:
    def test_groups_in_sort_order(self, approval_engine, publish_definition):
        publish_definition(
            approve_node("Manager", "supervisor"),
            code="travel", name="Travel", group_name="Finance", sort_order=2,
        )
        publish_definition(
            approve_node("Manager", "supervisor"),
            code="expense", name="Expense", group_name="Finance", sort_order=1,
        )
        publish_definition(
            approve_node("Manager", "supervisor"),
            code="leave", name="Leave", group_name="People", sort_order=5,
        )
        approval_engine.create_draft(
            _payload(code="draft_only", name="Draft only", group_name="People"), ADMIN
        )

        groups = approval_engine.list_definitions()
        assert [(g.group_name, [d.code for d in g.definitions]) for g in groups] == [
            ("Finance", ["expense", "travel"]),
            ("People", ["leave"]),
        ]

    def test_include_drafts_lists_latest_versions(self, approval_engine):
        v1 = approval_engine.create_draft(_payload(), ADMIN)
        approval_engine.publish(v1.definition_id, ADMIN)
        approval_engine.revise(v1.definition_id, ADMIN)

        [group] = approval_engine.list_definitions(include_drafts=True)
        [latest] = group.definitions
        assert latest.version == 2
        assert latest.status == DefinitionStatus.DRAFT
