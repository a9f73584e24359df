"""
approval_services.orchestrator -- Per-transaction service wiring.

Responsibility:
    Creates every kernel service exactly once for one session and wires
    them together.  The engine facade and the rollback coordinator build
    one of these per transaction; no service constructs another.

Architecture position:
    Services -- the single point of dependency injection.  This is also
    where the pure definition validator is handed to the kernel's
    DefinitionStore, so the kernel never imports the engines.

Invariants enforced:
    - Single-instance lifecycle: one AuditorService per transaction, so
      every audit event in it goes through the same hash-chain writer.
    - All services share the same Session and Clock.

Non-goals:
    - Does NOT manage transaction boundaries (caller's responsibility).
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from approval_engines.definition_validation import validate_definition
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.selectors.instance_selector import InstanceSelector
from approval_kernel.services.auditor_service import AuditorService
from approval_kernel.services.definition_store import DefinitionStore, DefinitionValidator
from approval_kernel.services.instance_service import InstanceService
from approval_kernel.services.pipeline_service import PipelineService


class ServiceOrchestrator:
    """Kernel services for one session."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        validator: DefinitionValidator = validate_definition,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()

        self.auditor = AuditorService(session, self.clock)
        self.definitions = DefinitionStore(session, self.auditor, validator, self.clock)
        self.instances = InstanceService(session, self.auditor, self.clock)
        self.pipelines = PipelineService(session, self.clock)
        self.instance_selector = InstanceSelector(session)
