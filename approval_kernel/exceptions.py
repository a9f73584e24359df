"""
Typed Exception Hierarchy for the Approval Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the engine (a REST layer, a background sweep, a CLI) have to react
differently to a bad form submission, an out-of-turn decision and a directory
outage.  Matching on message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        engine.decide(instance_id, 0, "u2", Decision.APPROVE)
    except DuplicateDecisionError:
        pass  # retried request, treat as success
    except OutOfTurnError as e:
        api_response(code=e.code, eligible=e.eligible_approver_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalEngineError (base)
    |
    +-- ValidationError                  (errors: field -> message)
    |   +-- DefinitionValidationError
    |   +-- FormValidationError
    |   +-- PipelineTemplateError
    |
    +-- NotFoundError
    |   +-- DefinitionNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- PipelineNotFoundError
    |   +-- PipelineTemplateNotFoundError
    |   +-- TaskNotFoundError
    |
    +-- ConflictError
    |   +-- DefinitionAlreadyPublishedError
    |   +-- NewerDraftExistsError
    |   +-- DefinitionNotEditableError
    |   +-- DefinitionNotPublishedError
    |   +-- ConcurrentModificationError
    |
    +-- UnresolvedApproversError
    |   +-- DirectoryUnavailableError
    |
    +-- DecisionError
    |   +-- OutOfTurnError
    |   +-- DuplicateDecisionError
    |   +-- StepNotActiveError
    |   +-- NotAnApproverError
    |
    +-- InstanceStateError
    |   +-- InstanceAlreadyTerminalError
    |   +-- InvalidStateTransitionError
    |   +-- CancellationNotAllowedError
    |   +-- SubmissionNotAllowedError
    |
    +-- RollbackTargetError
    |
    +-- PipelineStateError
    |   +-- UnknownOutcomeError
    |
    +-- ImmutabilityViolationError
    |
    +-- AuditChainBrokenError

===============================================================================
PROPAGATION
===============================================================================

Everything raised here is returned synchronously to the caller of the
mutating operation; nothing is swallowed.  The only failures that never
reach the caller are notification-delivery failures, which are logged and
queued for retry by the notifier.
"""


class ApprovalEngineError(Exception):
    """
    Base exception for all approval engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"


# Validation


class ValidationError(ApprovalEngineError):
    """
    Malformed input, reported as a field-keyed error map.

    Always recoverable by the caller and never partially applied.
    """

    code: str = "VALIDATION_ERROR"

    def __init__(self, errors: dict[str, str], subject: str = "input"):
        self.errors = dict(errors)
        self.subject = subject
        summary = "; ".join(f"{k}: {v}" for k, v in sorted(self.errors.items()))
        super().__init__(f"Invalid {subject}: {summary}")


class DefinitionValidationError(ValidationError):
    """Form or flow schema of a definition is structurally invalid."""

    code: str = "DEFINITION_INVALID"

    def __init__(self, errors: dict[str, str]):
        super().__init__(errors, subject="definition")


class FormValidationError(ValidationError):
    """Submitted form data does not satisfy the form schema."""

    code: str = "FORM_INVALID"

    def __init__(self, errors: dict[str, str]):
        super().__init__(errors, subject="form data")


class PipelineTemplateError(ValidationError):
    """Pipeline template is structurally invalid."""

    code: str = "PIPELINE_TEMPLATE_INVALID"

    def __init__(self, errors: dict[str, str]):
        super().__init__(errors, subject="pipeline template")


# Lookups


class NotFoundError(ApprovalEngineError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class DefinitionNotFoundError(NotFoundError):
    code: str = "DEFINITION_NOT_FOUND"

    def __init__(self, reference: str, version: int | None = None):
        self.reference = reference
        self.version = version
        suffix = f" v{version}" if version is not None else ""
        super().__init__(f"Definition not found: {reference}{suffix}")


class InstanceNotFoundError(NotFoundError):
    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Approval instance not found: {instance_id}")


class PipelineNotFoundError(NotFoundError):
    code: str = "PIPELINE_NOT_FOUND"

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}")


class PipelineTemplateNotFoundError(NotFoundError):
    code: str = "PIPELINE_TEMPLATE_NOT_FOUND"

    def __init__(self, template_code: str):
        self.template_code = template_code
        super().__init__(f"Pipeline template not registered: {template_code}")


class TaskNotFoundError(NotFoundError):
    code: str = "TASK_NOT_FOUND"

    def __init__(self, pipeline_id: str, task_code: str):
        self.pipeline_id = pipeline_id
        self.task_code = task_code
        super().__init__(f"Task {task_code} not found in pipeline {pipeline_id}")


# Conflicts


class ConflictError(ApprovalEngineError):
    """Base exception for publish races and stale versions."""

    code: str = "CONFLICT"


class DefinitionAlreadyPublishedError(ConflictError):
    """Republishing a version that already left the draft state."""

    code: str = "DEFINITION_ALREADY_PUBLISHED"

    def __init__(self, code: str, version: int, status: str):
        self.definition_code = code
        self.version = version
        self.status = status
        super().__init__(
            f"Definition {code} v{version} cannot be published: status is {status}"
        )


class NewerDraftExistsError(ConflictError):
    code: str = "NEWER_DRAFT_EXISTS"

    def __init__(self, code: str, version: int, newer_version: int):
        self.definition_code = code
        self.version = version
        self.newer_version = newer_version
        super().__init__(
            f"Cannot publish {code} v{version}: newer draft v{newer_version} exists"
        )


class DefinitionNotEditableError(ConflictError):
    """Only drafts may be edited or deleted."""

    code: str = "DEFINITION_NOT_EDITABLE"

    def __init__(self, definition_id: str, status: str):
        self.definition_id = definition_id
        self.status = status
        super().__init__(
            f"Definition {definition_id} is {status}; only drafts can be changed"
        )


class DefinitionNotPublishedError(ConflictError):
    """Submitting against, or unpublishing, a version that is not published."""

    code: str = "DEFINITION_NOT_PUBLISHED"

    def __init__(self, definition_id: str, status: str):
        self.definition_id = definition_id
        self.status = status
        super().__init__(f"Definition {definition_id} is {status}, not published")


class ConcurrentModificationError(ConflictError):
    """Row was modified by another transaction (stale lock_version)."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} was modified by another transaction"
        )


# Approver resolution


class UnresolvedApproversError(ApprovalEngineError):
    """
    A step cannot activate because no approver could be resolved.

    The instance is flagged ``blocked`` and waits for operator action.
    """

    code: str = "UNRESOLVED_APPROVERS"

    def __init__(self, node_name: str, approver_type: str, reason: str):
        self.node_name = node_name
        self.approver_type = approver_type
        self.reason = reason
        super().__init__(
            f"No approvers resolved for node '{node_name}' ({approver_type}): {reason}"
        )


class DirectoryUnavailableError(UnresolvedApproversError):
    """The organisational directory timed out or failed."""

    code: str = "DIRECTORY_UNAVAILABLE"

    def __init__(self, lookup: str, reason: str):
        self.lookup = lookup
        super().__init__(node_name="directory", approver_type=lookup, reason=reason)


# Decisions


class DecisionError(ApprovalEngineError):
    """Base exception for rejected decision attempts."""

    code: str = "DECISION_ERROR"


class OutOfTurnError(DecisionError):
    code: str = "OUT_OF_TURN"

    def __init__(self, approver_id: str, eligible_approver_id: str | None):
        self.approver_id = approver_id
        self.eligible_approver_id = eligible_approver_id
        super().__init__(
            f"Approver {approver_id} is out of turn; "
            f"waiting on {eligible_approver_id}"
        )


class DuplicateDecisionError(DecisionError):
    """
    Approver already decided this step.

    Callers should treat this as success: the first decision stands and no
    state changed.
    """

    code: str = "DUPLICATE_DECISION"

    def __init__(self, approver_id: str, step_index: int, recorded: str):
        self.approver_id = approver_id
        self.step_index = step_index
        self.recorded = recorded
        super().__init__(
            f"Approver {approver_id} already decided step {step_index} ({recorded})"
        )


class StepNotActiveError(DecisionError):
    code: str = "STEP_NOT_ACTIVE"

    def __init__(self, step_index: int, status: str):
        self.step_index = step_index
        self.status = status
        super().__init__(f"Step {step_index} is {status}, not active")


class NotAnApproverError(DecisionError):
    code: str = "NOT_AN_APPROVER"

    def __init__(self, approver_id: str, step_index: int):
        self.approver_id = approver_id
        self.step_index = step_index
        super().__init__(f"{approver_id} is not an approver of step {step_index}")


# Instance lifecycle


class InstanceStateError(ApprovalEngineError):
    """Base exception for illegal instance lifecycle requests."""

    code: str = "INSTANCE_STATE_ERROR"


class InstanceAlreadyTerminalError(InstanceStateError):
    code: str = "INSTANCE_TERMINAL"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Instance {instance_id} is already {status}")


class InvalidStateTransitionError(InstanceStateError):
    code: str = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity} transition: {from_status} -> {to_status}"
        )


class CancellationNotAllowedError(InstanceStateError):
    code: str = "CANCELLATION_NOT_ALLOWED"

    def __init__(self, instance_id: str, actor_id: str):
        self.instance_id = instance_id
        self.actor_id = actor_id
        super().__init__(
            f"Only the submitter may cancel instance {instance_id} (got {actor_id})"
        )


class SubmissionNotAllowedError(InstanceStateError):
    code: str = "SUBMISSION_NOT_ALLOWED"

    def __init__(self, definition_code: str, user_id: str):
        self.definition_code = definition_code
        self.user_id = user_id
        super().__init__(f"User {user_id} may not submit {definition_code}")


# Pipelines


class RollbackTargetError(ApprovalEngineError):
    """
    A fail_rollback outcome points forward, at itself, or outside the pipeline.

    Raised only while validating a pipeline template, never at rollback time.
    """

    code: str = "ROLLBACK_TARGET_INVALID"

    def __init__(self, task_code: str, outcome_code: str, target: str, reason: str):
        self.task_code = task_code
        self.outcome_code = outcome_code
        self.target = target
        self.reason = reason
        super().__init__(
            f"Outcome {outcome_code} on task {task_code} targets {target}: {reason}"
        )


class PipelineStateError(ApprovalEngineError):
    code: str = "PIPELINE_STATE_ERROR"

    def __init__(self, pipeline_id: str, message: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline {pipeline_id}: {message}")


class UnknownOutcomeError(PipelineStateError):
    code: str = "UNKNOWN_OUTCOME"

    def __init__(self, pipeline_id: str, task_code: str, outcome_code: str):
        self.task_code = task_code
        self.outcome_code = outcome_code
        super().__init__(
            pipeline_id, f"task {task_code} has no outcome {outcome_code}"
        )


# Integrity


class ImmutabilityViolationError(ApprovalEngineError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(ApprovalEngineError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )
