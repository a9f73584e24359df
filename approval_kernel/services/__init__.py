"""Services for the approval kernel (write side)."""

from approval_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from approval_kernel.services.definition_store import DefinitionStore, compute_schema_hash
from approval_kernel.services.instance_service import InstanceService
from approval_kernel.services.pipeline_service import PipelineService
from approval_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "DefinitionStore",
    "InstanceService",
    "PipelineService",
    "SequenceService",
    "compute_schema_hash",
]
