"""
approval_services.directory -- Organisational directory adapters.

Responsibility:
    ``TimeoutBoundedDirectory`` wraps any ``OrgDirectory`` so that no
    lookup blocks the request path longer than a configured timeout.
    ``StaticOrgDirectory`` is a read-only, in-memory directory built from
    plain mappings (fixtures, seed data, small deployments).

Architecture position:
    Services -- adapters around the kernel ``OrgDirectory`` protocol.

Invariants enforced:
    - A lookup that times out or fails raises DirectoryUnavailableError;
      it is never retried inline.  Retrying belongs to the operator
      (``retry_blocked``) or a background sweep.

Failure modes:
    - DirectoryUnavailableError (a subclass of UnresolvedApproversError),
      which the step advancer turns into a blocked instance.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable, Mapping

from approval_kernel.domain.directory import OrgDirectory
from approval_kernel.exceptions import DirectoryUnavailableError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.directory")


class TimeoutBoundedDirectory:
    """``OrgDirectory`` whose every lookup is bounded by ``timeout_seconds``."""

    def __init__(
        self,
        directory: OrgDirectory,
        timeout_seconds: float = 2.0,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._directory = directory
        self._timeout = timeout_seconds
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="org-directory"
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def _call(self, lookup: str, fn: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(
                "directory_lookup_timeout",
                extra={"lookup": lookup, "timeout_seconds": self._timeout},
            )
            raise DirectoryUnavailableError(
                lookup, f"timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            logger.warning(
                "directory_lookup_failed",
                extra={"lookup": lookup, "error": str(exc)},
            )
            raise DirectoryUnavailableError(lookup, str(exc) or type(exc).__name__) from exc

    def get_manager(self, user_id: str) -> str | None:
        return self._call("get_manager", self._directory.get_manager, user_id)

    def get_department_head(self, department_id: str) -> str | None:
        return self._call(
            "get_department_head", self._directory.get_department_head, department_id
        )

    def get_role_members(self, role_code: str) -> tuple[str, ...]:
        return self._call(
            "get_role_members",
            lambda code: tuple(self._directory.get_role_members(code)),
            role_code,
        )

    def get_user_department(self, user_id: str) -> str | None:
        return self._call(
            "get_user_department", self._directory.get_user_department, user_id
        )

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


class StaticOrgDirectory:
    """In-memory ``OrgDirectory`` over plain mappings."""

    def __init__(
        self,
        managers: Mapping[str, str] | None = None,
        department_heads: Mapping[str, str] | None = None,
        role_members: Mapping[str, Iterable[str]] | None = None,
        user_departments: Mapping[str, str] | None = None,
    ) -> None:
        self.managers = dict(managers or {})
        self.department_heads = dict(department_heads or {})
        self.role_members = {k: tuple(v) for k, v in (role_members or {}).items()}
        self.user_departments = dict(user_departments or {})

    def get_manager(self, user_id: str) -> str | None:
        return self.managers.get(user_id)

    def get_department_head(self, department_id: str) -> str | None:
        return self.department_heads.get(department_id)

    def get_role_members(self, role_code: str) -> tuple[str, ...]:
        return self.role_members.get(role_code, ())

    def get_user_department(self, user_id: str) -> str | None:
        return self.user_departments.get(user_id)
