"""
Module: approval_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    engine sub-modules.  This is the canonical import surface for the
    service layer (approval_services).

Architecture position:
    Engines -- pure layer, zero I/O.
    May only import approval_kernel.domain and approval_kernel.exceptions
    (and sibling engine modules).  MUST NOT import approval_services.

Invariants enforced:
    - Purity: engines never read the clock.  Timestamps are passed in.
    - Determinism: identical inputs always produce identical outputs; the
      only outside collaborator is the injected OrgDirectory.

Usage:
    from approval_engines.aggregation import apply_decision
    from approval_engines.approver_resolution import resolve_approvers
    from approval_engines.rollback import plan_outcome, apply_plan
"""

from approval_kernel.logging_config import get_logger

logger = get_logger("engines")

from approval_engines.aggregation import AggregationResult, apply_decision, check_decision
from approval_engines.approver_resolution import (
    Resolution,
    resolve_approvers,
    validate_self_selection,
)
from approval_engines.definition_validation import (
    validate_definition,
    validate_flow_schema,
    validate_form_schema,
)
from approval_engines.form_validation import validate_form_data
from approval_engines.instance_compiler import compile_instance
from approval_engines.rollback import (
    TaskTransition,
    apply_plan,
    attach_work_product,
    complete_task,
    instantiate_pipeline,
    plan_outcome,
    reopen_task,
    resolve_outcome,
    validate_pipeline_template,
)
from approval_engines.step_machine import (
    activate_step,
    advance,
    block_step,
    cancel_instance,
    next_pending_index,
    skip_step,
)

__all__ = [
    "AggregationResult",
    "Resolution",
    "TaskTransition",
    "activate_step",
    "advance",
    "apply_decision",
    "apply_plan",
    "attach_work_product",
    "block_step",
    "cancel_instance",
    "check_decision",
    "compile_instance",
    "complete_task",
    "instantiate_pipeline",
    "next_pending_index",
    "plan_outcome",
    "reopen_task",
    "resolve_approvers",
    "resolve_outcome",
    "skip_step",
    "validate_definition",
    "validate_flow_schema",
    "validate_form_data",
    "validate_form_schema",
    "validate_pipeline_template",
    "validate_self_selection",
]
