"""
Tests for the service-layer adapters: the bounded directory, the keyed
lock registry and the notifier.
"""

import threading
import time

import pytest

from approval_kernel.exceptions import DirectoryUnavailableError, UnresolvedApproversError
from approval_services.directory import StaticOrgDirectory, TimeoutBoundedDirectory
from approval_services.locks import KeyedLockRegistry
from approval_services.notifications import (
    LoggingEventDispatcher,
    NotificationEvent,
    NotificationKind,
    Notifier,
)
from tests.builders import RecordingDispatcher


class _SlowDirectory(StaticOrgDirectory):
    def __init__(self, delay: float):
        super().__init__(managers={"alice": "bob"})
        self.delay = delay

    def get_manager(self, user_id):
        time.sleep(self.delay)
        return super().get_manager(user_id)


class _BrokenDirectory(StaticOrgDirectory):
    def get_role_members(self, role_code):
        raise ConnectionError("ldap down")


def _event(subject="i-1"):
    return NotificationEvent(
        kind=NotificationKind.STEP_ACTIVATED,
        subject_id=subject,
        recipients=("bob",),
    )


class TestTimeoutBoundedDirectory:
    def test_fast_lookup_passes_through(self, org_directory):
        directory = TimeoutBoundedDirectory(org_directory, timeout_seconds=1.0)
        try:
            assert directory.get_manager("alice") == "bob"
            assert directory.get_role_members("finance_reviewer") == ("frank", "grace")
            assert directory.get_department_head("fin") == "frank"
            assert directory.get_user_department("grace") == "fin"
        finally:
            directory.shutdown()

    def test_slow_lookup_times_out(self, captured_logs):
        directory = TimeoutBoundedDirectory(_SlowDirectory(delay=0.5), timeout_seconds=0.05)
        try:
            with pytest.raises(DirectoryUnavailableError) as exc_info:
                directory.get_manager("alice")
        finally:
            directory.shutdown()
        assert exc_info.value.lookup == "get_manager"
        assert isinstance(exc_info.value, UnresolvedApproversError)
        assert any(r["message"] == "directory_lookup_timeout" for r in captured_logs())

    def test_failing_lookup_is_unavailable(self):
        directory = TimeoutBoundedDirectory(_BrokenDirectory(), timeout_seconds=1.0)
        try:
            with pytest.raises(DirectoryUnavailableError) as exc_info:
                directory.get_role_members("legal")
        finally:
            directory.shutdown()
        assert "ldap down" in exc_info.value.reason


class TestKeyedLockRegistry:
    def test_lock_is_dropped_after_release(self):
        locks = KeyedLockRegistry()
        with locks.hold("a"):
            assert locks.is_held("a")
            assert len(locks) == 1
        assert not locks.is_held("a")
        assert len(locks) == 0

    def test_same_key_is_serialised(self):
        locks = KeyedLockRegistry()
        inside = 0
        overlap = []
        guard = threading.Lock()

        def worker():
            nonlocal inside
            with locks.hold("instance"):
                with guard:
                    inside += 1
                    overlap.append(inside)
                time.sleep(0.01)
                with guard:
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert max(overlap) == 1
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLockRegistry()
        with locks.hold("a"):
            acquired = threading.Event()

            def other():
                with locks.hold("b"):
                    acquired.set()

            thread = threading.Thread(target=other)
            thread.start()
            assert acquired.wait(timeout=1.0)
            thread.join()


class TestNotifier:
    def test_delivers_in_order(self):
        dispatcher = RecordingDispatcher()
        notifier = Notifier(dispatcher)
        assert notifier.publish([_event("1"), _event("2")]) == 2
        assert [e.subject_id for e in dispatcher.events] == ["1", "2"]

    def test_failure_is_queued_and_retried(self, captured_logs):
        dispatcher = RecordingDispatcher(fail_times=1)
        notifier = Notifier(dispatcher, max_retries=3)

        assert notifier.publish([_event()]) == 0
        assert notifier.pending_count == 1
        failed = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert failed and failed[0]["attempts"] == 1

        assert notifier.retry_failed() == 1
        assert notifier.pending_count == 0
        assert len(dispatcher.events) == 1

    def test_dropped_after_max_retries(self, captured_logs):
        dispatcher = RecordingDispatcher(fail_times=10)
        notifier = Notifier(dispatcher, max_retries=2)

        notifier.publish([_event()])
        notifier.retry_failed()

        assert notifier.pending_count == 0
        assert dispatcher.calls == 2
        assert any(r["message"] == "notification_dropped" for r in captured_logs())

    def test_logging_dispatcher(self, captured_logs):
        Notifier(LoggingEventDispatcher()).publish([_event("i-9")])
        [record] = [r for r in captured_logs() if r["message"] == "notification_dispatched"]
        assert record["subject_id"] == "i-9"
        assert record["kind"] == "step_activated"
