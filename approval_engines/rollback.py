"""
approval_engines.rollback -- Pipeline template validation, task transitions
and review-outcome rollback planning.

Responsibility:
    Everything about the enclosing task pipeline that needs no I/O:
    validating a template's tasks and rollback targets, instantiating a
    pipeline, completing and reopening tasks, and turning a selected review
    outcome into a plan (advance, halt, or roll back) that is then applied.

Architecture position:
    Engines -- pure, zero I/O.  Driven by
    ``approval_services.rollback_coordinator.RollbackCoordinator``.

Invariants enforced:
    - Rollback targets point strictly backward within the same template;
      anything else is a configuration error raised at validation time.
    - Task moves follow ``TASK_TRANSITIONS``.
    - A rollback resets every task from the target through the reviewing
      task to ``not_started`` and then starts the target.  Work products
      are kept; only status reverts.
    - Review tasks complete only through an outcome.

Failure modes:
    - PipelineTemplateError for structural template problems.
    - RollbackTargetError for forward, self or unknown rollback targets.
    - PipelineStateError / UnknownOutcomeError for illegal runtime moves.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from approval_kernel.domain.pipeline import (
    TASK_TRANSITIONS,
    OutcomeType,
    Pipeline,
    PipelineStatus,
    PipelineTask,
    PipelineTemplate,
    ReviewOutcome,
    RollbackPlan,
    TaskStatus,
)
from approval_kernel.exceptions import (
    PipelineStateError,
    PipelineTemplateError,
    RollbackTargetError,
    TaskNotFoundError,
    UnknownOutcomeError,
)
from approval_engines.tracer import traced_engine


@dataclass(frozen=True)
class TaskTransition:
    """One task status change, for the task history log."""

    task_code: str
    action: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    outcome_code: str | None = None


# =========================================================================
# Template validation
# =========================================================================


def validate_pipeline_template(template: PipelineTemplate) -> None:
    """
    Check a template before it is registered.

    Raises:
        PipelineTemplateError: structural problems (field-keyed).
        RollbackTargetError: the first rollback target that does not point
            strictly backward within this template.
    """
    errors: dict[str, str] = {}
    if not template.code:
        errors["code"] = "is required"
    if not template.tasks:
        errors["tasks"] = "a pipeline needs at least one task"

    seen: set[str] = set()
    for i, task in enumerate(template.tasks):
        path = f"tasks[{i}]"
        if task.code in seen:
            errors[f"{path}.code"] = f"duplicate task code '{task.code}'"
        seen.add(task.code)
        if task.is_review and not task.outcomes:
            errors[f"{path}.outcomes"] = "a review task needs at least one outcome"
        if not task.is_review and task.outcomes:
            errors[f"{path}.outcomes"] = "only review tasks carry outcomes"
        outcome_codes: set[str] = set()
        for j, outcome in enumerate(task.outcomes):
            opath = f"{path}.outcomes[{j}]"
            if outcome.code in outcome_codes:
                errors[f"{opath}.code"] = f"duplicate outcome code '{outcome.code}'"
            outcome_codes.add(outcome.code)
            if outcome.outcome_type == OutcomeType.FAIL_ROLLBACK:
                if not outcome.rollback_to_task_code:
                    errors[f"{opath}.rollback_to_task_code"] = (
                        "is required for a fail_rollback outcome"
                    )
            elif outcome.rollback_to_task_code:
                errors[f"{opath}.rollback_to_task_code"] = (
                    f"only fail_rollback outcomes roll back ({outcome.outcome_type.value})"
                )
    if errors:
        raise PipelineTemplateError(errors)

    for position, task in enumerate(template.tasks):
        for outcome in task.outcomes:
            target = outcome.rollback_to_task_code
            if outcome.outcome_type != OutcomeType.FAIL_ROLLBACK or target is None:
                continue
            target_position = template.position_of(target)
            if target_position is None:
                raise RollbackTargetError(
                    task.code, outcome.code, target, "target is not a task of this pipeline"
                )
            if target_position == position:
                raise RollbackTargetError(
                    task.code, outcome.code, target, "a task cannot roll back to itself"
                )
            if target_position > position:
                raise RollbackTargetError(
                    task.code, outcome.code, target, "rollback targets must point backward"
                )


# =========================================================================
# Task transitions
# =========================================================================


def _task(pipeline: Pipeline, task_code: str) -> PipelineTask:
    task = pipeline.task(task_code)
    if task is None:
        raise TaskNotFoundError(str(pipeline.pipeline_id), task_code)
    return task


def _move(task: PipelineTask, target: TaskStatus, pipeline_id: UUID) -> PipelineTask:
    if target not in TASK_TRANSITIONS[task.status]:
        raise PipelineStateError(
            str(pipeline_id),
            f"task {task.code} cannot move from {task.status.value} to {target.value}",
        )
    return replace(task, status=target)


def _with_task(pipeline: Pipeline, task: PipelineTask) -> Pipeline:
    tasks = tuple(task if t.code == task.code else t for t in pipeline.tasks)
    return replace(pipeline, tasks=tasks)


def _require_running(pipeline: Pipeline) -> None:
    if pipeline.status != PipelineStatus.RUNNING:
        raise PipelineStateError(
            str(pipeline.pipeline_id), f"pipeline is {pipeline.status.value}"
        )


def _start(
    pipeline: Pipeline, task_code: str, now: datetime, action: str = "started"
) -> tuple[Pipeline, TaskTransition]:
    task = _task(pipeline, task_code)
    started = replace(
        _move(task, TaskStatus.IN_PROGRESS, pipeline.pipeline_id),
        started_at=now,
        completed_at=None,
    )
    transition = TaskTransition(task_code, action, task.status, TaskStatus.IN_PROGRESS)
    return _with_task(pipeline, started), transition


def _finish_or_advance(
    pipeline: Pipeline, task: PipelineTask, now: datetime
) -> tuple[Pipeline, list[TaskTransition]]:
    following = [t for t in pipeline.tasks if t.position > task.position]
    if not following:
        return replace(pipeline, status=PipelineStatus.COMPLETED, completed_at=now), []
    pipeline, transition = _start(pipeline, following[0].code, now)
    return pipeline, [transition]


def instantiate_pipeline(
    template: PipelineTemplate,
    *,
    pipeline_id: UUID,
    owners: Mapping[str, str] | None,
    now: datetime,
) -> tuple[Pipeline, list[TaskTransition]]:
    """A running pipeline with its first task started."""
    owners = owners or {}
    unknown = sorted(set(owners) - {t.code for t in template.tasks})
    if unknown:
        raise TaskNotFoundError(str(pipeline_id), ", ".join(unknown))
    tasks = tuple(
        PipelineTask(
            code=t.code,
            name=t.name,
            position=position,
            is_review=t.is_review,
            outcomes=t.outcomes,
            owner_id=owners.get(t.code),
        )
        for position, t in enumerate(template.tasks)
    )
    pipeline = Pipeline(
        pipeline_id=pipeline_id,
        template_code=template.code,
        status=PipelineStatus.RUNNING,
        tasks=tasks,
        created_at=now,
    )
    pipeline, transition = _start(pipeline, tasks[0].code, now)
    return pipeline, [transition]


def complete_task(
    pipeline: Pipeline, task_code: str, now: datetime
) -> tuple[Pipeline, list[TaskTransition]]:
    """Complete a non-review task and start the next one."""
    _require_running(pipeline)
    task = _task(pipeline, task_code)
    if task.is_review:
        raise PipelineStateError(
            str(pipeline.pipeline_id),
            f"review task {task_code} completes only by selecting an outcome",
        )
    done = replace(
        _move(task, TaskStatus.COMPLETED, pipeline.pipeline_id), completed_at=now
    )
    pipeline = _with_task(pipeline, done)
    transitions = [TaskTransition(task_code, "completed", task.status, TaskStatus.COMPLETED)]
    pipeline, more = _finish_or_advance(pipeline, done, now)
    return pipeline, transitions + more


def reopen_task(
    pipeline: Pipeline, task_code: str, now: datetime
) -> tuple[Pipeline, list[TaskTransition]]:
    """Operator remediation: restart a failed task and resume a halted pipeline."""
    if pipeline.status != PipelineStatus.HALTED:
        raise PipelineStateError(
            str(pipeline.pipeline_id), f"pipeline is {pipeline.status.value}, not halted"
        )
    task = _task(pipeline, task_code)
    if task.status != TaskStatus.FAILED:
        raise PipelineStateError(
            str(pipeline.pipeline_id), f"task {task_code} is {task.status.value}, not failed"
        )
    reopened = replace(task, selected_outcome=None)
    pipeline = _with_task(pipeline, reopened)
    pipeline, transition = _start(pipeline, task_code, now, action="reopened")
    return replace(pipeline, status=PipelineStatus.RUNNING), [transition]


def attach_work_product(
    pipeline: Pipeline, task_code: str, work_product: Mapping[str, Any]
) -> Pipeline:
    if pipeline.status == PipelineStatus.COMPLETED:
        raise PipelineStateError(str(pipeline.pipeline_id), "pipeline is completed")
    task = _task(pipeline, task_code)
    return _with_task(pipeline, replace(task, work_product=dict(work_product)))


# =========================================================================
# Outcomes
# =========================================================================


def resolve_outcome(
    pipeline: Pipeline, task_code: str, outcome_code: str
) -> tuple[PipelineTask, ReviewOutcome]:
    """The reviewing task and its selected outcome, checked for selection."""
    _require_running(pipeline)
    task = _task(pipeline, task_code)
    if not task.is_review:
        raise PipelineStateError(
            str(pipeline.pipeline_id), f"task {task_code} is not a review task"
        )
    if task.status != TaskStatus.IN_PROGRESS:
        raise PipelineStateError(
            str(pipeline.pipeline_id),
            f"task {task_code} is {task.status.value}, not in_progress",
        )
    outcome = task.outcome(outcome_code)
    if outcome is None:
        raise UnknownOutcomeError(str(pipeline.pipeline_id), task_code, outcome_code)
    return task, outcome


@traced_engine("rollback_plan", "1.0", fingerprint_fields=("task_code",))
def plan_outcome(
    pipeline: Pipeline, *, task_code: str, outcome: ReviewOutcome
) -> RollbackPlan:
    """Decide what selecting ``outcome`` on ``task_code`` does to the pipeline."""
    task = _task(pipeline, task_code)

    if outcome.outcome_type == OutcomeType.PASS:
        following = [t for t in pipeline.tasks if t.position > task.position]
        return RollbackPlan(
            task_code=task_code,
            outcome=outcome,
            resume_code=following[0].code if following else None,
            completes=not following,
        )

    if outcome.outcome_type == OutcomeType.FAIL:
        return RollbackPlan(task_code=task_code, outcome=outcome, halts=True)

    target = pipeline.task(outcome.rollback_to_task_code or "")
    if target is None or target.position >= task.position:
        # Templates are validated on registration; a snapshot cannot get here.
        raise PipelineStateError(
            str(pipeline.pipeline_id),
            f"outcome {outcome.code} has no backward target in this pipeline",
        )
    reset_codes = tuple(
        t.code for t in pipeline.tasks if target.position <= t.position <= task.position
    )
    return RollbackPlan(
        task_code=task_code,
        outcome=outcome,
        reset_codes=reset_codes,
        resume_code=target.code,
    )


def apply_plan(
    pipeline: Pipeline, plan: RollbackPlan, now: datetime
) -> tuple[Pipeline, list[TaskTransition]]:
    """Apply a plan computed by ``plan_outcome``."""
    task = _task(pipeline, plan.task_code)
    outcome = plan.outcome
    transitions: list[TaskTransition] = []

    if outcome.outcome_type == OutcomeType.PASS:
        done = replace(
            _move(task, TaskStatus.COMPLETED, pipeline.pipeline_id),
            selected_outcome=outcome.code,
            completed_at=now,
        )
        pipeline = _with_task(pipeline, done)
        transitions.append(TaskTransition(
            task.code, "outcome_selected", task.status, TaskStatus.COMPLETED, outcome.code
        ))
        pipeline, more = _finish_or_advance(pipeline, done, now)
        return pipeline, transitions + more

    if outcome.outcome_type == OutcomeType.FAIL:
        failed = replace(
            _move(task, TaskStatus.FAILED, pipeline.pipeline_id),
            selected_outcome=outcome.code,
            completed_at=now,
        )
        pipeline = replace(_with_task(pipeline, failed), status=PipelineStatus.HALTED)
        transitions.append(TaskTransition(
            task.code, "outcome_selected", task.status, TaskStatus.FAILED, outcome.code
        ))
        return pipeline, transitions

    transitions.append(TaskTransition(
        task.code, "outcome_selected", task.status, task.status, outcome.code
    ))
    for code in plan.reset_codes:
        current = _task(pipeline, code)
        if current.status == TaskStatus.NOT_STARTED:
            continue
        reset = replace(
            _move(current, TaskStatus.NOT_STARTED, pipeline.pipeline_id),
            selected_outcome=None,
            reset_count=current.reset_count + 1,
            started_at=None,
            completed_at=None,
        )
        pipeline = _with_task(pipeline, reset)
        transitions.append(TaskTransition(
            code, "reset", current.status, TaskStatus.NOT_STARTED, outcome.code
        ))
    if plan.resume_code is not None:
        pipeline, transition = _start(pipeline, plan.resume_code, now, action="resumed")
        transitions.append(transition)
    return replace(pipeline, status=PipelineStatus.RUNNING, completed_at=None), transitions
