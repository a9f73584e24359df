"""Tests for the @traced_engine decorator."""

import pytest

from approval_kernel.domain.instance import Decision
from approval_engines.tracer import input_fingerprint, traced_engine


@traced_engine("sample", "2.1", fingerprint_fields=("approver_id", "decision"))
def _sample(step, *, approver_id, decision):
    if approver_id == "mallory":
        raise PermissionError("no")
    return step


def _traces(captured_logs):
    return [r for r in captured_logs() if r["message"] == "APPROVAL_ENGINE_TRACE"]


def test_trace_is_emitted(captured_logs):
    assert _sample("s", approver_id="bob", decision=Decision.APPROVE) == "s"

    [trace] = _traces(captured_logs)
    assert trace["engine_name"] == "sample"
    assert trace["engine_version"] == "2.1"
    assert trace["outcome"] == "ok"
    assert len(trace["input_fingerprint"]) == 16
    assert trace["duration_ms"] >= 0


def test_exception_passes_through_and_is_traced(captured_logs):
    with pytest.raises(PermissionError):
        _sample("s", approver_id="mallory", decision=Decision.REJECT)
    [trace] = _traces(captured_logs)
    assert trace["outcome"] == "PermissionError"


def test_fingerprint_depends_only_on_picked_fields():
    fields = ("approver_id", "decision")
    a = input_fingerprint(fields, {"approver_id": "bob", "decision": Decision.APPROVE, "x": 1})
    b = input_fingerprint(fields, {"decision": "approve", "approver_id": "bob", "x": 2})
    c = input_fingerprint(fields, {"approver_id": "carol", "decision": "approve"})
    assert a == b
    assert a != c
