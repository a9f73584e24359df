"""
Kernel-level tests for DefinitionStore, driven through one open session.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from approval_kernel.domain.schema_codec import definition_to_dict, parse_definition_spec
from approval_kernel.exceptions import DefinitionNotFoundError, ImmutabilityViolationError
from approval_kernel.models.definition import ApprovalDefinitionModel
from approval_kernel.services.definition_store import compute_schema_hash
from tests.builders import approve_node, definition_payload


def _spec(**kwargs):
    return parse_definition_spec(
        definition_payload(approve_node("Manager", "supervisor"), **kwargs)
    )


class TestDefinitionStore:
    def test_versions_are_listed_in_order(self, services):
        store = services.definitions
        v1 = store.create_draft(_spec(), "admin")
        store.publish(v1.definition_id, "admin")
        store.revise(v1.definition_id, "admin")

        assert [d.version for d in store.list_versions("purchase_request")] == [1, 2]
        assert store.list_versions("unknown") == []

    def test_get_by_id(self, services):
        draft = services.definitions.create_draft(_spec(), "admin")
        assert services.definitions.get_by_id(draft.definition_id) == draft
        with pytest.raises(DefinitionNotFoundError):
            services.definitions.get_by_id(uuid4())

    def test_schema_hash_ignores_metadata(self, services):
        store = services.definitions
        published = store.publish(store.create_draft(_spec(), "admin").definition_id, "admin")

        assert published.schema_hash == compute_schema_hash(_spec(name="Renamed", sort_order=9))
        assert published.schema_hash != compute_schema_hash(
            parse_definition_spec(definition_payload(approve_node("Head", "dept_leader")))
        )

    def test_published_content_is_immutable(self, services, session):
        store = services.definitions
        published = store.publish(store.create_draft(_spec(), "admin").definition_id, "admin")

        model = session.execute(
            select(ApprovalDefinitionModel).where(
                ApprovalDefinitionModel.id == published.definition_id
            )
        ).scalar_one()
        model.name = "Tampered"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_definition_as_dict(self, services):
        store = services.definitions
        published = store.publish(store.create_draft(_spec(), "admin").definition_id, "admin")

        data = definition_to_dict(published)

        assert data["code"] == "purchase_request"
        assert data["status"] == "published"
        assert data["version"] == 1
        assert data["group_name"] == "Other"
        assert data["schema_hash"] == published.schema_hash
        assert [n["type"] for n in data["flow_schema"]["nodes"]] == ["submit", "approve", "end"]
        assert [f["key"] for f in data["form_schema"]] == ["reason", "amount"]
