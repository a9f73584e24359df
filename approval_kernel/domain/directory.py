"""
Organisational directory protocol (``approval_kernel.domain.directory``).

The engine never stores department trees or role membership.  It reads
them through this injected interface at step-activation time, so manager
reassignments and role changes between submission and a later step are
honoured.
"""

from __future__ import annotations

from typing import Iterable, Protocol


class OrgDirectory(Protocol):
    """Read-only, externally owned organisational lookups."""

    def get_manager(self, user_id: str) -> str | None:
        """Direct manager of ``user_id``, or None."""
        ...

    def get_department_head(self, department_id: str) -> str | None:
        """Head of ``department_id``, or None."""
        ...

    def get_role_members(self, role_code: str) -> Iterable[str]:
        """Active members of ``role_code`` in a stable order."""
        ...

    def get_user_department(self, user_id: str) -> str | None:
        """Department of ``user_id``, or None."""
        ...
