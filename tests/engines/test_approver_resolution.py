"""
Tests for approver resolution.

Resolution is evaluated at step activation against the organisational
directory; ``when_self`` is applied to the resolved list.
"""

import pytest

from approval_kernel.domain.definition import (
    ApproveNode,
    DeptLeaderApprover,
    DesignatedApprover,
    RoleApprover,
    SelectRange,
    SelectScope,
    SelfSelectApprover,
    SubmitterApprover,
    SupervisorApprover,
    WhenSelf,
)
from approval_kernel.domain.instance import SubmissionContext
from approval_kernel.exceptions import UnresolvedApproversError
from approval_engines.approver_resolution import (
    Resolution,
    resolve_approvers,
    validate_self_selection,
)


def _node(approver, **kwargs):
    return ApproveNode(name="L1", approver=approver, **kwargs)


class TestResolveApprovers:
    def test_supervisor_is_the_manager(self, org_directory):
        result = resolve_approvers(
            _node(SupervisorApprover()), SubmissionContext("alice"), org_directory
        )
        assert result == Resolution(approver_ids=("bob",))

    def test_missing_manager_is_unresolved(self, org_directory):
        with pytest.raises(UnresolvedApproversError) as exc_info:
            resolve_approvers(
                _node(SupervisorApprover()), SubmissionContext("carol"), org_directory
            )
        assert exc_info.value.approver_type == "supervisor"

    def test_dept_leader_prefers_the_submitted_department(self, org_directory):
        node = _node(DeptLeaderApprover())
        from_directory = resolve_approvers(node, SubmissionContext("alice"), org_directory)
        from_context = resolve_approvers(
            node, SubmissionContext("alice", department_id="fin"), org_directory
        )
        assert from_directory.approver_ids == ("carol",)
        assert from_context.approver_ids == ("frank",)

    def test_dept_leader_without_department_is_unresolved(self, org_directory):
        with pytest.raises(UnresolvedApproversError):
            resolve_approvers(
                _node(DeptLeaderApprover()), SubmissionContext("stranger"), org_directory
            )

    def test_designated_keeps_order_and_drops_duplicates(self, org_directory):
        node = _node(DesignatedApprover(user_ids=("grace", "frank", "grace")))
        result = resolve_approvers(node, SubmissionContext("alice"), org_directory)
        assert result.approver_ids == ("grace", "frank")

    def test_role_members_in_directory_order(self, org_directory):
        result = resolve_approvers(
            _node(RoleApprover(role_code="finance_reviewer")),
            SubmissionContext("alice"),
            org_directory,
        )
        assert result.approver_ids == ("frank", "grace")

    def test_empty_role_is_unresolved(self, org_directory):
        with pytest.raises(UnresolvedApproversError) as exc_info:
            resolve_approvers(
                _node(RoleApprover(role_code="legal")), SubmissionContext("alice"), org_directory
            )
        assert "legal" in exc_info.value.reason

    def test_self_select_reads_the_step_index(self, org_directory):
        context = SubmissionContext("alice", self_selected={2: ("dave",)})
        node = _node(SelfSelectApprover())
        assert resolve_approvers(node, context, org_directory, step_index=2).approver_ids == (
            "dave",
        )
        with pytest.raises(UnresolvedApproversError):
            resolve_approvers(node, context, org_directory, step_index=0)

    def test_submitter_approver_is_the_submitter(self, org_directory):
        result = resolve_approvers(
            _node(SubmitterApprover()), SubmissionContext("alice"), org_directory
        )
        assert result.approver_ids == ("alice",)


class TestWhenSelf:
    def test_self_keeps_the_submitter(self, org_directory):
        node = _node(DesignatedApprover(user_ids=("alice", "bob")))
        result = resolve_approvers(node, SubmissionContext("alice"), org_directory)
        assert result.approver_ids == ("alice", "bob")

    def test_skip_removes_the_submitter(self, org_directory):
        node = _node(DesignatedApprover(user_ids=("alice", "bob")), when_self=WhenSelf.SKIP)
        result = resolve_approvers(node, SubmissionContext("alice"), org_directory)
        assert result == Resolution(approver_ids=("bob",))

    def test_skip_with_nobody_left_skips_the_step(self, org_directory):
        node = _node(DeptLeaderApprover(), when_self=WhenSelf.SKIP)
        result = resolve_approvers(node, SubmissionContext("carol"), org_directory)
        assert result == Resolution(approver_ids=(), self_skipped=True)

    def test_supervisor_replaces_the_submitter_in_place(self, org_directory):
        node = _node(
            DesignatedApprover(user_ids=("dave", "bob", "frank")),
            when_self=WhenSelf.SUPERVISOR,
        )
        result = resolve_approvers(node, SubmissionContext("dave"), org_directory)
        # dave's manager is bob, already on the list
        assert result.approver_ids == ("bob", "frank")

    def test_supervisor_without_manager_is_unresolved(self, org_directory):
        node = _node(DeptLeaderApprover(), when_self=WhenSelf.SUPERVISOR)
        with pytest.raises(UnresolvedApproversError):
            resolve_approvers(node, SubmissionContext("carol"), org_directory)


class TestValidateSelfSelection:
    def test_any_user_within_scope_all(self, org_directory):
        node = _node(SelfSelectApprover())
        assert validate_self_selection(node, ("zed",), org_directory) == {}

    def test_users_scope(self, org_directory):
        node = _node(SelfSelectApprover(
            select_range=SelectRange(scope=SelectScope.USERS, user_ids=("bob", "carol"))
        ))
        assert validate_self_selection(node, ("bob",), org_directory, step_index=1) == {}
        errors = validate_self_selection(node, ("bob", "dave"), org_directory, step_index=1)
        assert set(errors) == {"self_selected_approvers.1"}
        assert "dave" in errors["self_selected_approvers.1"]

    def test_department_scope(self, org_directory):
        node = _node(SelfSelectApprover(
            select_range=SelectRange(scope=SelectScope.DEPARTMENT, value="fin")
        ))
        assert validate_self_selection(node, ("frank", "grace"), org_directory) == {}
        assert validate_self_selection(node, ("alice",), org_directory)

    def test_role_scope(self, org_directory):
        node = _node(SelfSelectApprover(
            select_range=SelectRange(scope=SelectScope.ROLE, value="finance_reviewer")
        ))
        assert validate_self_selection(node, ("grace",), org_directory) == {}
        assert validate_self_selection(node, ("bob",), org_directory)

    def test_duplicates_and_empty_rejected(self, org_directory):
        node = _node(SelfSelectApprover())
        assert validate_self_selection(node, (), org_directory)
        assert validate_self_selection(node, ("bob", "bob"), org_directory)

    def test_not_a_self_select_node(self, org_directory):
        errors = validate_self_selection(_node(SupervisorApprover()), ("bob",), org_directory)
        assert "does not take self-selected approvers" in errors["self_selected_approvers.0"]
