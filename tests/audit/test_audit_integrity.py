"""
Persistence integrity: the audit hash chain, append-only records and
optimistic locking on instances.
"""

import pytest
from sqlalchemy import select, text

from approval_kernel.exceptions import (
    AuditChainBrokenError,
    ConcurrentModificationError,
    ImmutabilityViolationError,
)
from approval_kernel.models.audit_event import AuditAction, AuditEvent
from approval_kernel.models.instance import ApprovalDecisionModel
from approval_kernel.services.auditor_service import AuditorService
from approval_services.orchestrator import ServiceOrchestrator
from tests.builders import approve_node


@pytest.fixture
def submitted(approval_engine, publish_definition, valid_form):
    definition = publish_definition(
        approve_node("Panel", "designated", approver_ids=["frank", "grace"]),
    )
    return approval_engine.submit(definition.definition_id, valid_form, "alice").instance_id


class TestHashChain:
    def test_empty_chain_is_valid(self, services):
        assert services.auditor.validate_chain()

    def test_events_link_to_their_predecessor(self, services):
        first = services.auditor.record_instance("i-1", AuditAction.INSTANCE_SUBMITTED, "alice")
        second = services.auditor.record_instance(
            "i-1", AuditAction.DECISION_RECORDED, "bob", step_index=0, decision="approve"
        )

        assert first.is_genesis
        assert second.prev_hash == first.hash
        assert second.seq == first.seq + 1
        assert services.auditor.validate_chain()

        trace = services.auditor.get_trace(AuditorService.INSTANCE, "i-1")
        assert trace.actions == (AuditAction.INSTANCE_SUBMITTED, AuditAction.DECISION_RECORDED)
        assert trace.entries[1].payload == {"step_index": 0, "decision": "approve"}

    def test_tampered_payload_breaks_the_chain(self, submitted, approval_engine, session_factory):
        approval_engine.decide(submitted, 0, "frank", "approve")
        with session_factory() as session:
            # Raw SQL sidesteps the ORM guards, like a direct database edit.
            session.execute(text("UPDATE audit_events SET payload_hash = 'forged' WHERE seq = 2"))
            session.commit()

        with session_factory() as session:
            with pytest.raises(AuditChainBrokenError):
                ServiceOrchestrator(session).auditor.validate_chain()


class TestAppendOnly:
    def test_audit_event_cannot_be_modified(self, submitted, session_factory):
        with session_factory() as session:
            event = session.execute(select(AuditEvent).limit(1)).scalar_one()
            event.actor_id = "mallory"
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
            session.rollback()

    def test_decision_cannot_be_deleted(self, submitted, approval_engine, session_factory):
        approval_engine.decide(submitted, 0, "frank", "approve")
        with session_factory() as session:
            decision = session.execute(select(ApprovalDecisionModel)).scalar_one()
            session.delete(decision)
            with pytest.raises(ImmutabilityViolationError):
                session.flush()
            session.rollback()


class TestOptimisticLocking:
    def test_stale_writer_is_refused(self, submitted, approval_engine, session_factory, clock):
        stale_session = session_factory()
        try:
            stale = ServiceOrchestrator(stale_session, clock)
            snapshot = stale.instances.load(submitted)
            stale_session.commit()

            approval_engine.decide(submitted, 0, "frank", "approve")

            with pytest.raises(ConcurrentModificationError) as exc_info:
                stale.instances.save(snapshot)
            assert exc_info.value.entity_id == str(submitted)
        finally:
            stale_session.rollback()
            stale_session.close()

        assert [d.approver_id for d in approval_engine.list_decisions(submitted)] == ["frank"]

    def test_refused_write_leaves_the_committed_approval(
        self, submitted, approval_engine, session_factory, clock
    ):
        stale_session = session_factory()
        try:
            stale = ServiceOrchestrator(stale_session, clock)
            snapshot = stale.instances.load(submitted)
            stale_session.commit()

            approval_engine.decide(submitted, 0, "frank", "approve")

            with pytest.raises(ConcurrentModificationError):
                stale.instances.save(snapshot)
        finally:
            stale_session.rollback()
            stale_session.close()

        step = approval_engine.get(submitted).steps[0]
        assert [(a.user_id, a.status.value) for a in step.approvers] == [
            ("frank", "approved"),
            ("grace", "pending"),
        ]

    def test_every_write_moves_the_version(self, submitted, approval_engine):
        before = approval_engine.get(submitted).lock_version

        approval_engine.decide(submitted, 0, "frank", "approve")

        assert approval_engine.get(submitted).lock_version == before + 1

    def test_fresh_read_in_the_same_session_saves(self, submitted, services):
        instance = services.instances.load(submitted, for_update=True)

        saved = services.instances.save(instance)

        assert saved.lock_version == instance.lock_version + 1
