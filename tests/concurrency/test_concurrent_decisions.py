"""
Concurrent decisions against one instance.

Approvers race from worker threads through a single ApprovalEngine.  The
keyed instance lock (plus row locks on server databases) must leave the
instance with exactly one resolution per step and exactly one terminal
notification, whatever the interleaving.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from approval_kernel.domain.instance import ApproverStatus, InstanceStatus, StepStatus
from approval_kernel.exceptions import (
    ConcurrentModificationError,
    DuplicateDecisionError,
    StepNotActiveError,
)
from approval_services.notifications import NotificationKind
from tests.builders import approve_node

pytestmark = pytest.mark.concurrency


def _race(approval_engine, instance_id, approvers, decision="approve"):
    """Run one decision per approver, all released at the same moment."""
    barrier = Barrier(len(approvers))

    def decide(approver_id):
        barrier.wait()
        try:
            return approval_engine.decide(instance_id, 0, approver_id, decision)
        except (StepNotActiveError, ConcurrentModificationError, DuplicateDecisionError) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(approvers)) as pool:
        return list(pool.map(decide, approvers))


def _terminal_events(dispatcher, instance_id):
    return [
        e for e in dispatcher.events
        if e.kind == NotificationKind.INSTANCE_TERMINAL and e.subject_id == str(instance_id)
    ]


class TestConcurrentDecisions:
    def test_any_step_resolves_once(
        self, approval_engine, publish_definition, valid_form, dispatcher
    ):
        definition = publish_definition(
            approve_node(
                "Panel", "designated",
                approver_ids=["carol", "frank", "grace"],
                multi_approve="any",
            ),
        )
        iid = approval_engine.submit(definition.definition_id, valid_form, "alice").instance_id

        results = _race(approval_engine, iid, ["carol", "frank", "grace"])

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 2
        assert winners[0].instance_status == InstanceStatus.APPROVED

        instance = approval_engine.get(iid)
        assert instance.status == InstanceStatus.APPROVED
        assert len(approval_engine.list_decisions(iid)) == 1
        statuses = sorted(a.status.value for a in instance.steps[0].approvers)
        assert statuses == sorted([
            ApproverStatus.APPROVED.value,
            ApproverStatus.SKIPPED.value,
            ApproverStatus.SKIPPED.value,
        ])
        assert len(_terminal_events(dispatcher, iid)) == 1

    def test_all_step_counts_every_decision(
        self, approval_engine, publish_definition, valid_form, dispatcher
    ):
        approvers = ["bob", "carol", "dave", "frank", "grace"]
        definition = publish_definition(
            approve_node("Panel", "designated", approver_ids=approvers, multi_approve="all"),
        )
        iid = approval_engine.submit(definition.definition_id, valid_form, "alice").instance_id

        results = _race(approval_engine, iid, approvers)

        assert not [r for r in results if isinstance(r, Exception)]
        assert sum(1 for r in results if r.step_status == StepStatus.APPROVED) == 1

        instance = approval_engine.get(iid)
        assert instance.status == InstanceStatus.APPROVED
        assert len(approval_engine.list_decisions(iid)) == len(approvers)
        assert len(_terminal_events(dispatcher, iid)) == 1

    def test_concurrent_reject_and_approve_settle_once(
        self, approval_engine, publish_definition, valid_form, dispatcher
    ):
        definition = publish_definition(
            approve_node("Panel", "designated", approver_ids=["frank", "grace"]),
        )
        iid = approval_engine.submit(definition.definition_id, valid_form, "alice").instance_id
        barrier = Barrier(2)

        def decide(approver_id, decision):
            barrier.wait()
            try:
                return approval_engine.decide(iid, 0, approver_id, decision)
            except (StepNotActiveError, ConcurrentModificationError) as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(decide, "frank", "reject"),
                pool.submit(decide, "grace", "approve"),
            ]
            results = [f.result() for f in futures]

        # Either the rejection lands first and closes the step, or the
        # approval lands first and the rejection then closes it.
        assert not isinstance(results[0], Exception)
        assert approval_engine.get(iid).status == InstanceStatus.REJECTED
        assert len(_terminal_events(dispatcher, iid)) == 1

    def test_same_approver_twice(self, approval_engine, publish_definition, valid_form):
        definition = publish_definition(
            approve_node("Panel", "designated", approver_ids=["frank", "grace"]),
        )
        iid = approval_engine.submit(definition.definition_id, valid_form, "alice").instance_id

        results = _race(approval_engine, iid, ["frank", "frank"])

        assert sum(1 for r in results if isinstance(r, DuplicateDecisionError)) == 1
        assert len(approval_engine.list_decisions(iid)) == 1
        assert approval_engine.get(iid).status == InstanceStatus.PENDING
