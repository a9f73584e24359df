"""
Pipeline domain types (``approval_kernel.domain.pipeline``).

Responsibility
--------------
Pure value objects for the enclosing multi-phase task pipeline: task
templates with their review outcomes, the running pipeline, and the
rollback plan computed when a reviewer selects an outcome.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``TASK_TRANSITIONS`` defines the only valid task status moves.  Rollback
  is the single path from ``completed``/``in_progress`` back to
  ``not_started``.
* Outcomes are static configuration on the template.  They are selected,
  never created, at review time.
* Rollback reverts status only; ``work_product`` survives.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID


class OutcomeType(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    FAIL_ROLLBACK = "fail_rollback"


@dataclass(frozen=True)
class ReviewOutcome:
    code: str
    name: str
    outcome_type: OutcomeType
    rollback_to_task_code: str | None = None


@dataclass(frozen=True)
class TaskTemplate:
    code: str
    name: str
    is_review: bool = False
    outcomes: tuple[ReviewOutcome, ...] = ()

    def outcome(self, code: str) -> ReviewOutcome | None:
        for candidate in self.outcomes:
            if candidate.code == code:
                return candidate
        return None


@dataclass(frozen=True)
class PipelineTemplate:
    code: str
    name: str
    tasks: tuple[TaskTemplate, ...] = ()

    def position_of(self, task_code: str) -> int | None:
        for position, task in enumerate(self.tasks):
            if task.code == task_code:
                return position
        return None


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.NOT_STARTED,
    }),
    TaskStatus.COMPLETED: frozenset({TaskStatus.NOT_STARTED}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.NOT_STARTED}),
}


class PipelineStatus(str, Enum):
    RUNNING = "running"
    HALTED = "halted"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PipelineTask:
    code: str
    name: str
    position: int
    status: TaskStatus = TaskStatus.NOT_STARTED
    is_review: bool = False
    outcomes: tuple[ReviewOutcome, ...] = ()
    owner_id: str | None = None
    work_product: Mapping[str, Any] = field(default_factory=dict)
    selected_outcome: str | None = None
    reset_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def outcome(self, code: str) -> ReviewOutcome | None:
        for candidate in self.outcomes:
            if candidate.code == code:
                return candidate
        return None


@dataclass(frozen=True)
class Pipeline:
    pipeline_id: UUID
    template_code: str
    status: PipelineStatus
    tasks: tuple[PipelineTask, ...]
    created_at: datetime | None = None
    completed_at: datetime | None = None

    def task(self, code: str) -> PipelineTask | None:
        for task in self.tasks:
            if task.code == code:
                return task
        return None

    @property
    def current_task(self) -> PipelineTask | None:
        """First task in position order that is not completed."""
        for task in self.tasks:
            if task.status != TaskStatus.COMPLETED:
                return task
        return None


@dataclass(frozen=True)
class RollbackPlan:
    """What selecting an outcome will do to the pipeline.

    ``reset_codes`` lists the tasks reverted to not_started, in position
    order.  ``resume_code`` is the task started next (None when the
    pipeline completes or halts).
    """

    task_code: str
    outcome: ReviewOutcome
    reset_codes: tuple[str, ...] = ()
    resume_code: str | None = None
    halts: bool = False
    completes: bool = False


@dataclass(frozen=True)
class TaskAction:
    """Append-only history entry for one pipeline task."""

    pipeline_id: UUID
    task_code: str
    action: str
    actor_id: str
    from_status: TaskStatus | None
    to_status: TaskStatus
    outcome_code: str | None = None
    comment: str = ""
    occurred_at: datetime | None = None
