"""
Unit tests for the event bus and cancellation token.
"""

import threading

import pytest

from jobsync.core.cancellation import CancellationToken
from jobsync.core.errors import CancellationRequested
from jobsync.core.events import JOB_FOUND, SYNC_COMPLETE, SYNC_PROGRESS, EventBus


class TestEventBus:

    def setup_method(self):
        self.bus = EventBus()
        self.received = []

    def _listener(self, event, payload):
        self.received.append((event, payload))

    def test_subscriber_gets_only_its_event(self):
        self.bus.subscribe(SYNC_PROGRESS, self._listener)
        self.bus.publish(SYNC_PROGRESS, {"current": 1})
        self.bus.publish(JOB_FOUND, {"record": {}})
        assert self.received == [(SYNC_PROGRESS, {"current": 1})]

    def test_subscribe_all(self):
        self.bus.subscribe_all(self._listener)
        self.bus.publish(SYNC_PROGRESS, {})
        self.bus.publish(SYNC_COMPLETE, {})
        assert [e for e, _ in self.received] == [SYNC_PROGRESS, SYNC_COMPLETE]

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            self.bus.subscribe("sync-exploded", self._listener)

    def test_unsubscribe_is_idempotent(self):
        sub = self.bus.subscribe(SYNC_PROGRESS, self._listener)
        assert self.bus.unsubscribe(sub) is True
        assert self.bus.unsubscribe(sub) is False
        self.bus.publish(SYNC_PROGRESS, {})
        assert self.received == []

    def test_failing_listener_does_not_block_others(self):
        """A listener that raises is skipped."""
        def boom(event, payload):
            raise RuntimeError("listener bug")

        self.bus.subscribe(SYNC_PROGRESS, boom)
        self.bus.subscribe(SYNC_PROGRESS, self._listener)
        self.bus.publish(SYNC_PROGRESS, {"current": 2})
        assert self.received == [(SYNC_PROGRESS, {"current": 2})]

    def test_listener_count(self):
        self.bus.subscribe(SYNC_PROGRESS, self._listener)
        self.bus.subscribe_all(self._listener)
        assert self.bus.listener_count() == 2
        assert self.bus.listener_count(SYNC_PROGRESS) == 2
        assert self.bus.listener_count(JOB_FOUND) == 1


class TestCancellationToken:

    def test_initially_clear(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.raise_if_cancelled()

    def test_cancel_from_another_thread(self):
        token = CancellationToken()
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()

        assert token.is_cancelled
        with pytest.raises(CancellationRequested):
            token.raise_if_cancelled()
