"""
approval_kernel.services.definition_store -- Versioned definition storage.

Responsibility:
    Owns approval definitions: drafting, editing and deleting drafts,
    cloning any version into a new draft, publishing, unpublishing, and
    lookup by code/version or id.  Structural validation is delegated to an
    injected validator (the pure definition-validation engine).

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Append-only publishing: a version that left ``draft`` is never
      published again (DefinitionAlreadyPublishedError) and never edited
      (ORM listener backs this up).
    - Publishing is ordered: a version cannot be published while a newer
      version of the same code exists (NewerDraftExistsError).
    - At most one published version per code: publishing supersedes the
      previous one in the same transaction.

Failure modes:
    - DefinitionNotFoundError, DefinitionNotEditableError,
      DefinitionNotPublishedError, DefinitionValidationError.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, Mapping
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.definition import (
    DEFINITION_TRANSITIONS,
    Definition,
    DefinitionGroup,
    DefinitionSpec,
    DefinitionStatus,
)
from approval_kernel.domain.schema_codec import schema_document
from approval_kernel.exceptions import (
    DefinitionAlreadyPublishedError,
    DefinitionNotEditableError,
    DefinitionNotFoundError,
    DefinitionNotPublishedError,
    DefinitionValidationError,
    InvalidStateTransitionError,
    NewerDraftExistsError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.audit_event import AuditAction
from approval_kernel.models.definition import ApprovalDefinitionModel
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.utils.hashing import hash_payload

logger = get_logger("services.definition_store")

DefinitionValidator = Callable[[DefinitionSpec], Mapping[str, str]]


def compute_schema_hash(definition: Definition | DefinitionSpec) -> str:
    """SHA-256 over the canonical form + flow schema document."""
    return hash_payload(schema_document(definition.form_schema, definition.flow_schema))


class DefinitionStore:
    """Versioned definition persistence and lifecycle."""

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        validator: DefinitionValidator,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._auditor = auditor
        self._validator = validator
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def create_draft(self, spec: DefinitionSpec, actor_id: str) -> Definition:
        """Create the next version of ``spec.code`` as a draft."""
        version = self._max_version(spec.code) + 1
        now = self._clock.now()
        dto = Definition(
            definition_id=uuid4(),
            code=spec.code,
            version=version,
            status=DefinitionStatus.DRAFT,
            name=spec.name,
            form_schema=spec.form_schema,
            flow_schema=spec.flow_schema,
            description=spec.description,
            icon=spec.icon,
            group_name=spec.group_name,
            sort_order=spec.sort_order,
            admin_user_id=spec.admin_user_id,
            visibility=spec.visibility,
            created_by=actor_id,
            created_at=now,
        )
        model = ApprovalDefinitionModel.from_dto(dto)
        self._session.add(model)
        self._session.flush()

        self._auditor.record_definition(
            dto.definition_id, AuditAction.DEFINITION_DRAFTED, actor_id,
            code=dto.code, version=version,
        )
        logger.info(
            "definition_draft_created",
            extra={"definition_code": dto.code, "version": version},
        )
        return model.to_dto()

    def update_draft(
        self, definition_id: UUID, spec: DefinitionSpec, actor_id: str
    ) -> Definition:
        """Replace a draft's authored content.  The code cannot change."""
        model = self._load_model(definition_id, for_update=True)
        if model.status != DefinitionStatus.DRAFT.value:
            raise DefinitionNotEditableError(str(definition_id), model.status)
        if spec.code != model.code:
            raise DefinitionValidationError(
                {"code": f"cannot change code of an existing definition ({model.code})"}
            )
        current = model.to_dto()
        updated = replace(
            current,
            name=spec.name,
            form_schema=spec.form_schema,
            flow_schema=spec.flow_schema,
            description=spec.description,
            icon=spec.icon,
            group_name=spec.group_name,
            sort_order=spec.sort_order,
            admin_user_id=spec.admin_user_id,
            visibility=spec.visibility,
        )
        model.apply_content(updated)
        model.updated_at = self._clock.now()
        model.updated_by = actor_id
        self._session.flush()

        self._auditor.record_definition(
            definition_id, AuditAction.DEFINITION_UPDATED, actor_id,
            code=model.code, version=model.version,
        )
        logger.info(
            "definition_draft_updated",
            extra={"definition_code": model.code, "version": model.version},
        )
        return model.to_dto()

    def delete_draft(self, definition_id: UUID, actor_id: str) -> None:
        model = self._load_model(definition_id, for_update=True)
        if model.status != DefinitionStatus.DRAFT.value:
            raise DefinitionNotEditableError(str(definition_id), model.status)
        code, version = model.code, model.version
        self._session.delete(model)
        self._session.flush()

        self._auditor.record_definition(
            definition_id, AuditAction.DEFINITION_DELETED, actor_id,
            code=code, version=version,
        )
        logger.info(
            "definition_draft_deleted",
            extra={"definition_code": code, "version": version},
        )

    def revise(
        self,
        definition_id: UUID,
        actor_id: str,
        changes: DefinitionSpec | None = None,
    ) -> Definition:
        """Start a new draft version from an existing one.

        Edits to a published definition always go through here: the
        published row stays untouched.
        """
        source = self._load_model(definition_id).to_dto()
        new_spec = changes or source.to_spec()
        if new_spec.code != source.code:
            raise DefinitionValidationError(
                {"code": f"a revision must keep code {source.code}"}
            )
        return self.create_draft(new_spec, actor_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def publish(self, definition_id: UUID, actor_id: str) -> Definition:
        """
        Publish a draft.

        Raises:
            DefinitionAlreadyPublishedError: the version is not a draft.
            NewerDraftExistsError: a higher version of the code exists.
            DefinitionValidationError: the schema is structurally invalid.
        """
        model = self._load_model(definition_id, for_update=True)
        status = DefinitionStatus(model.status)
        if status != DefinitionStatus.DRAFT:
            raise DefinitionAlreadyPublishedError(model.code, model.version, status.value)

        newest = self._max_version(model.code)
        if newest > model.version:
            raise NewerDraftExistsError(model.code, model.version, newest)

        dto = model.to_dto()
        errors = dict(self._validator(dto.to_spec()))
        if errors:
            logger.warning(
                "definition_publish_rejected",
                extra={"definition_code": dto.code, "version": dto.version, "errors": errors},
            )
            raise DefinitionValidationError(errors)

        now = self._clock.now()
        previous = self._current_published_model(model.code, for_update=True)
        if previous is not None:
            self._transition(previous, DefinitionStatus.SUPERSEDED)
            previous.retired_at = now
            previous.updated_at = now
            previous.updated_by = actor_id
            self._session.flush()
            self._auditor.record_definition(
                previous.id, AuditAction.DEFINITION_SUPERSEDED, actor_id,
                code=previous.code, version=previous.version,
                superseded_by=model.version,
            )

        self._transition(model, DefinitionStatus.PUBLISHED)
        model.schema_hash = compute_schema_hash(dto)
        model.published_at = now
        model.updated_at = now
        model.updated_by = actor_id
        self._session.flush()

        self._auditor.record_definition(
            model.id, AuditAction.DEFINITION_PUBLISHED, actor_id,
            code=model.code, version=model.version, schema_hash=model.schema_hash,
        )
        logger.info(
            "definition_published",
            extra={
                "definition_code": model.code,
                "version": model.version,
                "schema_hash": model.schema_hash,
                "superseded_version": previous.version if previous else None,
            },
        )
        return model.to_dto()

    def unpublish(self, definition_id: UUID, actor_id: str) -> Definition:
        """Withdraw a published version.  In-flight instances keep running."""
        model = self._load_model(definition_id, for_update=True)
        if model.status != DefinitionStatus.PUBLISHED.value:
            raise DefinitionNotPublishedError(str(definition_id), model.status)
        now = self._clock.now()
        self._transition(model, DefinitionStatus.UNPUBLISHED)
        model.retired_at = now
        model.updated_at = now
        model.updated_by = actor_id
        self._session.flush()

        self._auditor.record_definition(
            model.id, AuditAction.DEFINITION_UNPUBLISHED, actor_id,
            code=model.code, version=model.version,
        )
        logger.info(
            "definition_unpublished",
            extra={"definition_code": model.code, "version": model.version},
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, code: str, version: int | None = None) -> Definition:
        """A specific version, or the currently published one."""
        if version is None:
            model = self._current_published_model(code)
        else:
            model = self._session.execute(
                select(ApprovalDefinitionModel).where(
                    ApprovalDefinitionModel.code == code,
                    ApprovalDefinitionModel.version == version,
                )
            ).scalar_one_or_none()
        if model is None:
            raise DefinitionNotFoundError(code, version)
        return model.to_dto()

    def get_by_id(self, definition_id: UUID) -> Definition:
        return self._load_model(definition_id).to_dto()

    def get_published(self, definition_id: UUID) -> Definition:
        """The version ``definition_id``, which must currently be published."""
        definition = self.get_by_id(definition_id)
        if not definition.is_published:
            raise DefinitionNotPublishedError(str(definition_id), definition.status.value)
        return definition

    def list_versions(self, code: str) -> list[Definition]:
        models = self._session.execute(
            select(ApprovalDefinitionModel)
            .where(ApprovalDefinitionModel.code == code)
            .order_by(ApprovalDefinitionModel.version)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def list_grouped(self, include_drafts: bool = False) -> list[DefinitionGroup]:
        """
        Definitions grouped by ``group_name``.

        By default only published versions are listed.  With
        ``include_drafts`` the latest version of every code is listed
        instead, whatever its status.  Within a group, definitions are
        ordered by ``sort_order`` then creation time; groups appear in the
        order of their first definition.
        """
        stmt = select(ApprovalDefinitionModel)
        if not include_drafts:
            stmt = stmt.where(
                ApprovalDefinitionModel.status == DefinitionStatus.PUBLISHED.value
            )
        else:
            latest = (
                select(
                    ApprovalDefinitionModel.code,
                    func.max(ApprovalDefinitionModel.version).label("version"),
                )
                .group_by(ApprovalDefinitionModel.code)
                .subquery()
            )
            stmt = stmt.join(
                latest,
                (ApprovalDefinitionModel.code == latest.c.code)
                & (ApprovalDefinitionModel.version == latest.c.version),
            )
        models = self._session.execute(
            stmt.order_by(
                ApprovalDefinitionModel.sort_order,
                ApprovalDefinitionModel.created_at,
                ApprovalDefinitionModel.code,
            )
        ).scalars().all()

        grouped: dict[str, list[Definition]] = {}
        for model in models:
            grouped.setdefault(model.group_name, []).append(model.to_dto())
        return [
            DefinitionGroup(group_name=name, definitions=tuple(defs))
            for name, defs in grouped.items()
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_model(
        self, definition_id: UUID, for_update: bool = False
    ) -> ApprovalDefinitionModel:
        stmt = select(ApprovalDefinitionModel).where(
            ApprovalDefinitionModel.id == definition_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise DefinitionNotFoundError(str(definition_id))
        return model

    def _max_version(self, code: str) -> int:
        return self._session.execute(
            select(func.coalesce(func.max(ApprovalDefinitionModel.version), 0)).where(
                ApprovalDefinitionModel.code == code
            )
        ).scalar_one()

    def _current_published_model(
        self, code: str, for_update: bool = False
    ) -> ApprovalDefinitionModel | None:
        stmt = select(ApprovalDefinitionModel).where(
            ApprovalDefinitionModel.code == code,
            ApprovalDefinitionModel.status == DefinitionStatus.PUBLISHED.value,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _transition(model: ApprovalDefinitionModel, target: DefinitionStatus) -> None:
        current = DefinitionStatus(model.status)
        if target not in DEFINITION_TRANSITIONS[current]:
            raise InvalidStateTransitionError("definition", current.value, target.value)
        model.status = target.value
