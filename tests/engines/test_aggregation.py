"""
Tests for decision aggregation under the three consensus policies.

Invariants tested:
- all: approved iff every approver approved; one rejection rejects.
- any: the first decision resolves the step.
- sequential: one eligible approver at a time, in resolution order.
- Resolution marks the remaining approvers skipped.
- Error precedence: not an approver, duplicate, not active, out of turn.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from approval_kernel.domain.definition import (
    ApproveNode,
    DesignatedApprover,
    MultiApprovePolicy,
)
from approval_kernel.domain.instance import (
    Approver,
    ApproverStatus,
    Decision,
    Step,
    StepResolution,
    StepStatus,
)
from approval_kernel.exceptions import (
    DuplicateDecisionError,
    NotAnApproverError,
    OutOfTurnError,
    StepNotActiveError,
)
from approval_engines.aggregation import apply_decision

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
USERS = ("u1", "u2", "u3")


def _active(policy: MultiApprovePolicy, users=USERS) -> Step:
    node = ApproveNode(
        name="L1",
        approver=DesignatedApprover(user_ids=tuple(users)),
        multi_approve=policy,
    )
    return Step(
        index=0,
        node=node,
        status=StepStatus.ACTIVE,
        approvers=tuple(Approver(u) for u in users),
        eligible_position=0 if policy == MultiApprovePolicy.SEQUENTIAL else None,
        started_at=NOW,
    )


def _decide(step, approver_id, decision=Decision.APPROVE, comment=""):
    return apply_decision(
        step,
        approver_id=approver_id,
        decision=decision,
        comment=comment,
        decided_at=NOW,
    )


class TestAllPolicy:
    def test_waits_for_every_approver(self):
        step = _active(MultiApprovePolicy.ALL)
        result = _decide(step, "u2", comment="fine")
        assert result.resolution == StepResolution.UNRESOLVED
        assert not result.resolved
        assert result.step.approver("u2").status == ApproverStatus.APPROVED
        assert result.step.approver("u2").comment == "fine"
        assert result.step.status == StepStatus.ACTIVE

        result = _decide(result.step, "u1")
        result = _decide(result.step, "u3")
        assert result.resolution == StepResolution.APPROVED
        assert result.step.status == StepStatus.APPROVED
        assert result.step.completed_at == NOW

    def test_one_rejection_rejects_and_skips_the_rest(self):
        step = _decide(_active(MultiApprovePolicy.ALL), "u1").step
        result = _decide(step, "u2", Decision.REJECT)
        assert result.resolution == StepResolution.REJECTED
        assert result.step.status == StepStatus.REJECTED
        assert [a.status for a in result.step.approvers] == [
            ApproverStatus.APPROVED,
            ApproverStatus.REJECTED,
            ApproverStatus.SKIPPED,
        ]


class TestAnyPolicy:
    def test_first_approval_resolves(self):
        result = _decide(_active(MultiApprovePolicy.ANY), "u3")
        assert result.resolution == StepResolution.APPROVED
        assert result.step.approver("u1").status == ApproverStatus.SKIPPED

    def test_first_rejection_resolves(self):
        result = _decide(_active(MultiApprovePolicy.ANY), "u1", Decision.REJECT)
        assert result.resolution == StepResolution.REJECTED


class TestSequentialPolicy:
    def test_eligibility_moves_down_the_list(self):
        step = _active(MultiApprovePolicy.SEQUENTIAL)
        result = _decide(step, "u1")
        assert result.resolution == StepResolution.UNRESOLVED
        assert result.step.eligible_approver_id == "u2"

        result = _decide(result.step, "u2")
        result = _decide(result.step, "u3")
        assert result.resolution == StepResolution.APPROVED
        assert result.step.eligible_position is None

    def test_out_of_turn(self):
        with pytest.raises(OutOfTurnError) as exc_info:
            _decide(_active(MultiApprovePolicy.SEQUENTIAL), "u2")
        assert exc_info.value.eligible_approver_id == "u1"

    def test_rejection_by_eligible_approver_ends_the_step(self):
        step = _decide(_active(MultiApprovePolicy.SEQUENTIAL), "u1").step
        result = _decide(step, "u2", Decision.REJECT)
        assert result.resolution == StepResolution.REJECTED
        assert result.step.approver("u3").status == ApproverStatus.SKIPPED


class TestErrors:
    def test_stranger(self):
        with pytest.raises(NotAnApproverError):
            _decide(_active(MultiApprovePolicy.ALL), "mallory")

    def test_duplicate_is_reported_with_the_recorded_decision(self):
        step = _decide(_active(MultiApprovePolicy.ALL), "u1").step
        with pytest.raises(DuplicateDecisionError) as exc_info:
            _decide(step, "u1", Decision.REJECT)
        assert exc_info.value.recorded == "approved"

    def test_duplicate_wins_over_inactive_step(self):
        resolved = _decide(_active(MultiApprovePolicy.ANY), "u1").step
        with pytest.raises(DuplicateDecisionError):
            _decide(resolved, "u1")

    def test_skipped_approver_on_a_resolved_step(self):
        resolved = _decide(_active(MultiApprovePolicy.ANY), "u1").step
        with pytest.raises(StepNotActiveError):
            _decide(resolved, "u2")


decision_lists = st.lists(st.sampled_from(list(Decision)), min_size=1, max_size=6)


def _run(policy: MultiApprovePolicy, decisions: list[Decision]):
    users = tuple(f"u{i}" for i in range(len(decisions)))
    step = _active(policy, users)
    result = None
    applied = []
    for user, decision in zip(users, decisions):
        result = _decide(step, user, decision)
        applied.append(decision)
        step = result.step
        if result.resolved:
            break
    return result, applied


class TestAggregationProperties:
    @settings(max_examples=200, deadline=None)
    @given(decisions=decision_lists)
    def test_all_approves_only_when_everyone_approves(self, decisions):
        result, applied = _run(MultiApprovePolicy.ALL, decisions)
        if all(d == Decision.APPROVE for d in decisions):
            assert result.resolution == StepResolution.APPROVED
            assert len(applied) == len(decisions)
        else:
            assert result.resolution == StepResolution.REJECTED
            assert applied[-1] == Decision.REJECT
            assert Decision.REJECT not in applied[:-1]

    @settings(max_examples=200, deadline=None)
    @given(decisions=decision_lists)
    def test_any_resolves_on_the_first_decision(self, decisions):
        result, applied = _run(MultiApprovePolicy.ANY, decisions)
        assert len(applied) == 1
        expected = (
            StepResolution.APPROVED
            if decisions[0] == Decision.APPROVE
            else StepResolution.REJECTED
        )
        assert result.resolution == expected

    @settings(max_examples=200, deadline=None)
    @given(decisions=decision_lists)
    def test_sequential_matches_all(self, decisions):
        sequential, _ = _run(MultiApprovePolicy.SEQUENTIAL, decisions)
        everyone, _ = _run(MultiApprovePolicy.ALL, decisions)
        assert sequential.resolution == everyone.resolution

    @settings(max_examples=100, deadline=None)
    @given(
        policy=st.sampled_from(list(MultiApprovePolicy)),
        decisions=decision_lists,
    )
    def test_resolved_step_has_no_pending_approvers(self, policy, decisions):
        result, _ = _run(policy, decisions)
        if result.resolved:
            assert all(a.status != ApproverStatus.PENDING for a in result.step.approvers)
            assert result.step.status in (StepStatus.APPROVED, StepStatus.REJECTED)
