"""
Module: approval_kernel.models.definition
Responsibility: ORM persistence for versioned approval definitions.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - UNIQUE(code, version): one row per definition version.
    - Append-only publishing: once a version leaves ``draft`` only its
      lifecycle columns (status, retired_at, updated_at, updated_by) may
      change, and it can never be deleted.

Failure modes:
    - IntegrityError on a duplicate (code, version).
    - ImmutabilityViolationError on a schema edit or delete of a
      non-draft version.

Audit relevance:
    In-flight instances pin a definition version; freezing published rows
    means the contract an instance was created under can always be read back.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, CheckConstraint, Index, String, Text, UniqueConstraint, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import TrackedBase
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.definition import Definition


class ApprovalDefinitionModel(TrackedBase):
    """Persistent definition version.

    Contract:
        Drafts are freely editable.  Published, superseded and unpublished
        versions are frozen apart from their lifecycle columns.
    """

    __tablename__ = "approval_definitions"

    __table_args__ = (
        UniqueConstraint("code", "version", name="uq_approval_definitions_code_version"),
        CheckConstraint(
            "status IN ('draft', 'published', 'superseded', 'unpublished')",
            name="ck_approval_definitions_valid_status",
        ),
        Index("ix_approval_definitions_code_status", "code", "status"),
        Index("ix_approval_definitions_group", "group_name", "sort_order"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    icon: Mapped[str] = mapped_column(String(100), nullable=False, default="approval")
    group_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Other")
    sort_order: Mapped[int] = mapped_column(nullable=False, default=0)
    admin_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    visibility: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    form_schema: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    flow_schema: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    schema_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalDefinition {self.code} v{self.version} status={self.status}>"

    def to_dto(self) -> Definition:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.definition import (
            Definition as DefinitionDTO,
            DefinitionStatus,
        )
        from approval_kernel.domain.schema_codec import (
            parse_flow_schema,
            parse_form_schema,
            parse_visibility,
        )

        return DefinitionDTO(
            definition_id=self.id,
            code=self.code,
            version=self.version,
            status=DefinitionStatus(self.status),
            name=self.name,
            form_schema=parse_form_schema(self.form_schema),
            flow_schema=parse_flow_schema(self.flow_schema),
            description=self.description,
            icon=self.icon,
            group_name=self.group_name,
            sort_order=self.sort_order,
            admin_user_id=self.admin_user_id,
            visibility=parse_visibility(self.visibility),
            schema_hash=self.schema_hash,
            created_by=self.created_by,
            created_at=self.created_at,
            published_at=self.published_at,
            retired_at=self.retired_at,
        )

    @classmethod
    def from_dto(cls, dto: Definition) -> ApprovalDefinitionModel:
        """Create ORM model from domain DTO."""
        model = cls(
            id=dto.definition_id,
            code=dto.code,
            version=dto.version,
            status=dto.status.value,
            created_by=dto.created_by or "system",
            created_at=dto.created_at,
            updated_at=dto.created_at,
        )
        model.apply_content(dto)
        return model

    def apply_content(self, dto: Definition) -> None:
        """Copy authored content (not identity or lifecycle) from ``dto``."""
        from approval_kernel.domain.schema_codec import (
            flow_schema_to_dict,
            form_field_to_dict,
            visibility_to_dict,
        )

        self.name = dto.name
        self.description = dto.description
        self.icon = dto.icon
        self.group_name = dto.group_name
        self.sort_order = dto.sort_order
        self.admin_user_id = dto.admin_user_id
        self.visibility = visibility_to_dict(dto.visibility)
        self.form_schema = [form_field_to_dict(f) for f in dto.form_schema]
        self.flow_schema = flow_schema_to_dict(dto.flow_schema)


# =============================================================================
# ORM-Level Immutability for non-draft versions
# =============================================================================

_LIFECYCLE_COLUMNS = frozenset({"status", "retired_at", "updated_at", "updated_by"})
# Publishing itself writes these alongside the status change.
_PUBLISH_COLUMNS = frozenset({"schema_hash", "published_at"})


def _previous_status(target: ApprovalDefinitionModel) -> str:
    history = sa_inspect(target).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return target.status


@event.listens_for(ApprovalDefinitionModel, "before_update")
def prevent_published_definition_update(mapper, connection, target):
    """Only lifecycle columns may change once a version has been published."""
    previous = _previous_status(target)
    state = sa_inspect(target)
    changed = {
        attr.key for attr in state.attrs if attr.history.has_changes()
    }
    allowed = set(_LIFECYCLE_COLUMNS)
    if previous == "draft":
        allowed |= _PUBLISH_COLUMNS
        if target.status == "draft":
            return
    illegal = changed - allowed
    if illegal:
        raise ImmutabilityViolationError(
            entity_type="ApprovalDefinition",
            entity_id=str(target.id),
            reason=(
                f"{target.code} v{target.version} is {previous}; "
                f"cannot modify {', '.join(sorted(illegal))}"
            ),
        )


@event.listens_for(ApprovalDefinitionModel, "before_delete")
def prevent_published_definition_delete(mapper, connection, target):
    previous = _previous_status(target)
    if previous != "draft":
        raise ImmutabilityViolationError(
            entity_type="ApprovalDefinition",
            entity_id=str(target.id),
            reason=f"{target.code} v{target.version} is {previous}; cannot delete",
        )
