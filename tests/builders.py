"""Payload builders and test doubles shared by the test suite."""

from typing import Any

from approval_services.notifications import NotificationEvent


def approve_node(name: str, approver_type: str, **config: Any) -> dict[str, Any]:
    """An approve node payload, e.g. ``approve_node("L1", "supervisor")``."""
    return {
        "type": "approve",
        "name": name,
        "config": {"approver_type": approver_type, **config},
    }


def definition_payload(
    *approve_nodes: dict[str, Any],
    code: str = "purchase_request",
    name: str = "Purchase Request",
    form_schema: list[dict[str, Any]] | None = None,
    submit_cc: list[str] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    if form_schema is None:
        form_schema = [
            {"key": "reason", "label": "Reason", "type": "text", "required": True},
            {"key": "amount", "label": "Amount", "type": "money", "min": "0"},
        ]
    nodes = [{"type": "submit", "name": "Submit", "config": {"cc_users": submit_cc or []}}]
    nodes.extend(approve_nodes)
    nodes.append({"type": "end", "name": "End"})
    return {
        "code": code,
        "name": name,
        "form_schema": form_schema,
        "flow_schema": {"nodes": nodes},
        **extra,
    }


REVIEW_PIPELINE = {
    "code": "doc_review",
    "name": "Document review",
    "tasks": [
        {"code": "draft", "name": "Draft"},
        {"code": "edit", "name": "Edit"},
        {
            "code": "review",
            "name": "Review",
            "is_review": True,
            "outcomes": [
                {"code": "accept", "type": "pass"},
                {"code": "reject", "type": "fail"},
                {"code": "redo", "type": "fail_rollback", "rollback_to_task_code": "draft"},
            ],
        },
        {"code": "publish", "name": "Publish"},
    ],
}


class RecordingDispatcher:
    """Keeps every dispatched event.  Fails the first ``fail_times`` calls."""

    def __init__(self, fail_times: int = 0):
        self.events: list[NotificationEvent] = []
        self.fail_times = fail_times
        self.calls = 0

    def dispatch(self, event: NotificationEvent) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise ConnectionError("dispatcher offline")
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]
