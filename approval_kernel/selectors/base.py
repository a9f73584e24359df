"""
Module: approval_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/ and
    models/.  Selectors never create, modify, or delete data.

Invariants enforced:
    - Read-only access: selectors never call add/delete/flush/commit.
    - DTO return convention: selectors return frozen domain records, not ORM
      instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Base for selectors.  Holds the caller's session."""

    def __init__(self, session: Session):
        self.session = session
