"""
Approval definition domain types (``approval_kernel.domain.definition``).

Responsibility
--------------
Pure value objects describing an authored approval process: the form
schema (typed fields), the flow schema (submit / approve / end nodes),
visibility, and the versioned ``Definition`` record held by the store.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Field and node configuration are tagged unions: each variant carries
  exactly the attributes it needs, so validation is structural.
* ``DEFINITION_TRANSITIONS`` defines the only valid version lifecycle
  moves.  ``superseded`` and ``unpublished`` are terminal for a version.
* A ``Definition`` is frozen; edits always produce a new draft version.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Union
from uuid import UUID


# =========================================================================
# Form schema
# =========================================================================


class FieldType(str, Enum):
    """Wire tags for form fields."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    MONEY = "money"
    SELECT = "select"
    MULTISELECT = "multiselect"
    DATE = "date"
    DATERANGE = "daterange"
    USER = "user"
    ATTACHMENT = "attachment"
    TABLE = "table"
    DESCRIPTION = "description"


# Column types a nested table may declare.
TABLE_COLUMN_TYPES: frozenset[FieldType] = frozenset({
    FieldType.TEXT,
    FieldType.NUMBER,
    FieldType.MONEY,
    FieldType.DATE,
    FieldType.SELECT,
    FieldType.USER,
})


@dataclass(frozen=True)
class TextField:
    key: str
    label: str
    required: bool = False
    multiline: bool = False
    max_length: int | None = None

    @property
    def field_type(self) -> FieldType:
        return FieldType.TEXTAREA if self.multiline else FieldType.TEXT


@dataclass(frozen=True)
class NumberField:
    key: str
    label: str
    required: bool = False
    min_value: Decimal | None = None
    max_value: Decimal | None = None

    field_type: ClassVar[FieldType] = FieldType.NUMBER


@dataclass(frozen=True)
class MoneyField:
    key: str
    label: str
    required: bool = False
    currency: str = "CNY"
    min_value: Decimal | None = None
    max_value: Decimal | None = None

    field_type: ClassVar[FieldType] = FieldType.MONEY


@dataclass(frozen=True)
class SelectField:
    key: str
    label: str
    required: bool = False
    options: tuple[str, ...] = ()

    field_type: ClassVar[FieldType] = FieldType.SELECT


@dataclass(frozen=True)
class MultiSelectField:
    key: str
    label: str
    required: bool = False
    options: tuple[str, ...] = ()

    field_type: ClassVar[FieldType] = FieldType.MULTISELECT


@dataclass(frozen=True)
class DateField:
    key: str
    label: str
    required: bool = False

    field_type: ClassVar[FieldType] = FieldType.DATE


@dataclass(frozen=True)
class DateRangeField:
    key: str
    label: str
    required: bool = False

    field_type: ClassVar[FieldType] = FieldType.DATERANGE


@dataclass(frozen=True)
class UserField:
    key: str
    label: str
    required: bool = False
    multiple: bool = False

    field_type: ClassVar[FieldType] = FieldType.USER


@dataclass(frozen=True)
class AttachmentField:
    key: str
    label: str
    required: bool = False
    max_files: int | None = None

    field_type: ClassVar[FieldType] = FieldType.ATTACHMENT


@dataclass(frozen=True)
class TableColumn:
    key: str
    label: str
    column_type: FieldType = FieldType.TEXT
    required: bool = False
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class TableField:
    key: str
    label: str
    required: bool = False
    columns: tuple[TableColumn, ...] = ()
    min_rows: int = 0

    field_type: ClassVar[FieldType] = FieldType.TABLE


@dataclass(frozen=True)
class DescriptionField:
    """Static text shown on the form.  Never carries input."""

    key: str
    label: str
    required: bool = False
    content: str = ""

    field_type: ClassVar[FieldType] = FieldType.DESCRIPTION


FormField = Union[
    TextField,
    NumberField,
    MoneyField,
    SelectField,
    MultiSelectField,
    DateField,
    DateRangeField,
    UserField,
    AttachmentField,
    TableField,
    DescriptionField,
]


# =========================================================================
# Flow schema
# =========================================================================


class NodeType(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    END = "end"


class ApproverType(str, Enum):
    SUBMITTER = "submitter"
    SUPERVISOR = "supervisor"
    DEPT_LEADER = "dept_leader"
    DESIGNATED = "designated"
    SELF_SELECT = "self_select"
    ROLE = "role"


# Approver types whose candidate set is known when the definition is published.
STATIC_APPROVER_TYPES: frozenset[ApproverType] = frozenset({
    ApproverType.DESIGNATED,
})


class MultiApprovePolicy(str, Enum):
    """Consensus rule combining several approvers' decisions on one step."""

    ALL = "all"
    ANY = "any"
    SEQUENTIAL = "sequential"


class WhenSelf(str, Enum):
    """What to do when the submitter is among a step's resolved approvers."""

    SELF = "self"
    SKIP = "skip"
    SUPERVISOR = "supervisor"


class SelectScope(str, Enum):
    ALL = "all"
    DEPARTMENT = "department"
    ROLE = "role"
    USERS = "users"


@dataclass(frozen=True)
class SelectRange:
    """Constraint on the users a submitter may pick for a self_select node.

    ``value`` is the department id for DEPARTMENT and the role code for
    ROLE; ``user_ids`` is the allow-list for USERS.
    """

    scope: SelectScope = SelectScope.ALL
    value: str | None = None
    user_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SubmitterApprover:
    approver_type: ClassVar[ApproverType] = ApproverType.SUBMITTER


@dataclass(frozen=True)
class SupervisorApprover:
    approver_type: ClassVar[ApproverType] = ApproverType.SUPERVISOR


@dataclass(frozen=True)
class DeptLeaderApprover:
    approver_type: ClassVar[ApproverType] = ApproverType.DEPT_LEADER


@dataclass(frozen=True)
class DesignatedApprover:
    user_ids: tuple[str, ...] = ()

    approver_type: ClassVar[ApproverType] = ApproverType.DESIGNATED


@dataclass(frozen=True)
class SelfSelectApprover:
    select_range: SelectRange = field(default_factory=SelectRange)

    approver_type: ClassVar[ApproverType] = ApproverType.SELF_SELECT


@dataclass(frozen=True)
class RoleApprover:
    role_code: str = ""

    approver_type: ClassVar[ApproverType] = ApproverType.ROLE


ApproverSpec = Union[
    SubmitterApprover,
    SupervisorApprover,
    DeptLeaderApprover,
    DesignatedApprover,
    SelfSelectApprover,
    RoleApprover,
]


@dataclass(frozen=True)
class SubmitNode:
    name: str = "submit"
    cc_user_ids: tuple[str, ...] = ()

    node_type: ClassVar[NodeType] = NodeType.SUBMIT


@dataclass(frozen=True)
class ApproveNode:
    name: str
    approver: ApproverSpec
    multi_approve: MultiApprovePolicy = MultiApprovePolicy.ALL
    when_self: WhenSelf = WhenSelf.SELF
    cc_user_ids: tuple[str, ...] = ()

    node_type: ClassVar[NodeType] = NodeType.APPROVE

    @property
    def approver_type(self) -> ApproverType:
        return self.approver.approver_type


@dataclass(frozen=True)
class EndNode:
    name: str = "end"

    node_type: ClassVar[NodeType] = NodeType.END


FlowNode = Union[SubmitNode, ApproveNode, EndNode]


@dataclass(frozen=True)
class FlowSchema:
    nodes: tuple[FlowNode, ...] = ()

    @property
    def approve_nodes(self) -> tuple[ApproveNode, ...]:
        """Approve nodes in document order; these become instance steps."""
        return tuple(n for n in self.nodes if isinstance(n, ApproveNode))

    @property
    def submit_node(self) -> SubmitNode | None:
        for node in self.nodes:
            if isinstance(node, SubmitNode):
                return node
        return None


# =========================================================================
# Visibility
# =========================================================================


class VisibilityScope(str, Enum):
    ALL = "all"
    SPECIFIED = "specified"


@dataclass(frozen=True)
class Visibility:
    """Who may submit: everyone, or an explicit user/department allow-list."""

    scope: VisibilityScope = VisibilityScope.ALL
    user_ids: tuple[str, ...] = ()
    department_ids: tuple[str, ...] = ()

    def allows(self, user_id: str, department_id: str | None = None) -> bool:
        if self.scope == VisibilityScope.ALL:
            return True
        if user_id in self.user_ids:
            return True
        return department_id is not None and department_id in self.department_ids


# =========================================================================
# Definition lifecycle
# =========================================================================


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    SUPERSEDED = "superseded"
    UNPUBLISHED = "unpublished"


DEFINITION_TRANSITIONS: dict[DefinitionStatus, frozenset[DefinitionStatus]] = {
    DefinitionStatus.DRAFT: frozenset({DefinitionStatus.PUBLISHED}),
    DefinitionStatus.PUBLISHED: frozenset({
        DefinitionStatus.SUPERSEDED,
        DefinitionStatus.UNPUBLISHED,
    }),
    DefinitionStatus.SUPERSEDED: frozenset(),
    DefinitionStatus.UNPUBLISHED: frozenset(),
}


@dataclass(frozen=True)
class DefinitionSpec:
    """Authoring input for a definition draft (no identity, no version)."""

    code: str
    name: str
    form_schema: tuple[FormField, ...] = ()
    flow_schema: FlowSchema = field(default_factory=FlowSchema)
    description: str = ""
    icon: str = "approval"
    group_name: str = "Other"
    sort_order: int = 0
    admin_user_id: str | None = None
    visibility: Visibility = field(default_factory=Visibility)


@dataclass(frozen=True)
class Definition:
    """One version of an authored approval process.

    ``schema_hash`` is set when the version is published and never changes
    afterwards.
    """

    definition_id: UUID
    code: str
    version: int
    status: DefinitionStatus
    name: str
    form_schema: tuple[FormField, ...]
    flow_schema: FlowSchema
    description: str = ""
    icon: str = "approval"
    group_name: str = "Other"
    sort_order: int = 0
    admin_user_id: str | None = None
    visibility: Visibility = field(default_factory=Visibility)
    schema_hash: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    published_at: datetime | None = None
    retired_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.status == DefinitionStatus.PUBLISHED

    def to_spec(self) -> DefinitionSpec:
        return DefinitionSpec(
            code=self.code,
            name=self.name,
            form_schema=self.form_schema,
            flow_schema=self.flow_schema,
            description=self.description,
            icon=self.icon,
            group_name=self.group_name,
            sort_order=self.sort_order,
            admin_user_id=self.admin_user_id,
            visibility=self.visibility,
        )


@dataclass(frozen=True)
class DefinitionGroup:
    """Definitions sharing a ``group_name``, for listing."""

    group_name: str
    definitions: tuple[Definition, ...] = ()
