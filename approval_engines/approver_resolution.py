"""
approval_engines.approver_resolution -- Concrete approvers for an approve node.

Responsibility:
    Given an approve node's approver configuration and the submission
    context, compute the ordered user ids empowered to decide the step.
    Also checks self-selected approvers against a node's ``select_range``
    at submission time.

Architecture position:
    Engines -- pure logic.  Its only collaborator is the injected
    ``OrgDirectory`` protocol; it never stores organisational data.

Invariants enforced:
    - Resolution is lazy: it is called once per step, when the step is
      activated, so manager and role changes after submission are honoured.
    - Results preserve directory/configuration order with duplicates removed
      (sequential steps depend on this order).
    - ``when_self`` is applied after resolution: ``skip`` removes the
      submitter, ``supervisor`` replaces them with their manager.

Failure modes:
    - UnresolvedApproversError when no approver remains (other than by a
      ``when_self=skip`` removal, which is reported as ``self_skipped``).
    - DirectoryUnavailableError raised by a bounded directory propagates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from approval_kernel.domain.definition import (
    ApproveNode,
    ApproverType,
    DeptLeaderApprover,
    DesignatedApprover,
    RoleApprover,
    SelectScope,
    SelfSelectApprover,
    SubmitterApprover,
    SupervisorApprover,
    WhenSelf,
)
from approval_kernel.domain.directory import OrgDirectory
from approval_kernel.domain.instance import SubmissionContext
from approval_kernel.exceptions import UnresolvedApproversError
from approval_engines.tracer import traced_engine


@dataclass(frozen=True)
class Resolution:
    """Resolved approvers for one step.

    ``self_skipped`` is True when ``when_self=skip`` removed the submitter
    and nobody else remained; the step is then skipped instead of blocked.
    """

    approver_ids: tuple[str, ...]
    self_skipped: bool = False


def _unique(user_ids: Iterable[str | None]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for user_id in user_ids:
        if user_id and user_id not in seen:
            seen[user_id] = None
    return tuple(seen)


def _unresolved(node: ApproveNode, reason: str) -> UnresolvedApproversError:
    return UnresolvedApproversError(node.name, node.approver_type.value, reason)


def _candidates(
    node: ApproveNode,
    context: SubmissionContext,
    directory: OrgDirectory,
    step_index: int,
) -> tuple[str, ...]:
    approver = node.approver
    if isinstance(approver, SubmitterApprover):
        return (context.user_id,)

    if isinstance(approver, SupervisorApprover):
        manager = directory.get_manager(context.user_id)
        if not manager:
            raise _unresolved(node, f"submitter {context.user_id} has no manager")
        return (manager,)

    if isinstance(approver, DeptLeaderApprover):
        department = context.department_id or directory.get_user_department(context.user_id)
        if not department:
            raise _unresolved(node, f"submitter {context.user_id} has no department")
        head = directory.get_department_head(department)
        if not head:
            raise _unresolved(node, f"department {department} has no head")
        return (head,)

    if isinstance(approver, DesignatedApprover):
        return _unique(approver.user_ids)

    if isinstance(approver, SelfSelectApprover):
        chosen = context.self_selected.get(step_index, ())
        if not chosen:
            raise _unresolved(node, "no approvers were selected at submission")
        return _unique(chosen)

    if isinstance(approver, RoleApprover):
        members = _unique(directory.get_role_members(approver.role_code))
        if not members:
            raise _unresolved(node, f"role {approver.role_code} has no active members")
        return members

    raise _unresolved(node, f"unsupported approver configuration {approver!r}")


@traced_engine("approver_resolution", "1.0", fingerprint_fields=("step_index",))
def resolve_approvers(
    node: ApproveNode,
    context: SubmissionContext,
    directory: OrgDirectory,
    *,
    step_index: int = 0,
) -> Resolution:
    """
    Resolve the approvers of ``node`` for the submission in ``context``.

    Args:
        node: The approve node (the step's snapshot).
        context: Submitter, their department, and self-selected approvers.
        directory: Organisational lookups.
        step_index: Position of the step; keys ``context.self_selected``.

    Raises:
        UnresolvedApproversError: nobody can decide this step.
    """
    approvers = _candidates(node, context, directory, step_index)

    submitter = context.user_id
    if node.approver_type != ApproverType.SUBMITTER and submitter in approvers:
        if node.when_self == WhenSelf.SKIP:
            approvers = tuple(a for a in approvers if a != submitter)
            if not approvers:
                return Resolution(approver_ids=(), self_skipped=True)
        elif node.when_self == WhenSelf.SUPERVISOR:
            manager = directory.get_manager(submitter)
            approvers = _unique(manager if a == submitter else a for a in approvers)

    if not approvers:
        raise _unresolved(node, "resolution produced no approvers")
    return Resolution(approver_ids=approvers)


def validate_self_selection(
    node: ApproveNode,
    chosen: Iterable[str],
    directory: OrgDirectory,
    *,
    step_index: int = 0,
) -> dict[str, str]:
    """
    Check a submitter's picks for a self_select node against its range.

    Returns:
        Field-keyed error map keyed ``self_selected_approvers.<index>``.
    """
    path = f"self_selected_approvers.{step_index}"
    approver = node.approver
    if not isinstance(approver, SelfSelectApprover):
        return {path: f"step '{node.name}' does not take self-selected approvers"}

    chosen = tuple(chosen)
    if not chosen:
        return {path: f"select at least one approver for step '{node.name}'"}
    if len(set(chosen)) != len(chosen):
        return {path: "selected approvers must be unique"}

    select_range = approver.select_range
    if select_range.scope == SelectScope.ALL:
        return {}
    if select_range.scope == SelectScope.USERS:
        allowed = set(select_range.user_ids)
        outside = [u for u in chosen if u not in allowed]
    elif select_range.scope == SelectScope.ROLE:
        allowed = set(directory.get_role_members(select_range.value or ""))
        outside = [u for u in chosen if u not in allowed]
    else:
        outside = [
            u for u in chosen
            if directory.get_user_department(u) != select_range.value
        ]
    if outside:
        return {
            path: (
                f"{', '.join(outside)} outside the allowed "
                f"{select_range.scope.value} range"
            )
        }
    return {}
