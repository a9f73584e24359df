"""
Approval Kernel

Domain types, persistence and audit for a definition-driven approval
workflow engine:
- Versioned, immutable-once-published approval definitions
- Approval instances with per-node steps and verbatim decision records
- Task pipelines with review outcomes and rollback
- Hash-chained audit trail
"""

__version__ = "0.1.0"
