"""
Pytest fixtures for the approval engine test suite.

Provides:
- A file-backed SQLite database per test (tables created fresh)
- Deterministic clock, in-memory organisational directory
- A recording notification dispatcher
- Captured JSON logs
- Builders for definition payloads

The organisation used throughout:

    eng department (head: carol)        fin department (head: frank)
      alice -> bob -> carol               frank, grace (role finance_reviewer)
      dave  -> bob
"""

import json
import logging
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from approval_kernel.db.engine import build_engine, create_tables
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_services.directory import StaticOrgDirectory
from approval_services.engine import ApprovalEngine
from approval_services.notifications import Notifier
from approval_services.orchestrator import ServiceOrchestrator
from tests.builders import RecordingDispatcher, definition_payload

ADMIN = "admin"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, approval_engine):
            approval_engine.submit(...)
            assert any(r["message"] == "instance_submitted" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'approvals.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """One open session for kernel-level tests.  Rolled back afterwards."""
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def services(session, clock):
    return ServiceOrchestrator(session, clock)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def org_directory():
    return StaticOrgDirectory(
        managers={"alice": "bob", "dave": "bob", "bob": "carol"},
        department_heads={"eng": "carol", "fin": "frank"},
        role_members={"finance_reviewer": ("frank", "grace"), "legal": ()},
        user_departments={
            "alice": "eng",
            "bob": "eng",
            "carol": "eng",
            "dave": "eng",
            "frank": "fin",
            "grace": "fin",
        },
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return Notifier(dispatcher, max_retries=3)


@pytest.fixture
def approval_engine(session_factory, org_directory, clock, notifier):
    engine = ApprovalEngine(
        session_factory,
        org_directory,
        clock=clock,
        notifier=notifier,
        directory_timeout_seconds=1.0,
    )
    yield engine
    engine.close()


# =============================================================================
# Definition builders
# =============================================================================


@pytest.fixture
def publish_definition(approval_engine):
    """Create and publish a definition; returns the published Definition."""

    def _publish(*approve_nodes, **kwargs):
        draft = approval_engine.create_draft(
            definition_payload(*approve_nodes, **kwargs), ADMIN
        )
        return approval_engine.publish(draft.definition_id, ADMIN)

    return _publish


@pytest.fixture
def valid_form():
    return {"reason": "new laptop", "amount": "1200.00"}
