"""
Unit tests for the role event listener.
"""

import threading

import pytest
from unittest.mock import MagicMock, patch

from conftest import ADMIN, MANAGER, USER
from ledger.base import RoleAssignedEvent
from ledger.events import RoleEventListener
from ledger.rpc import JSONRPCLedger, RPCConfig
from registry.exceptions import LedgerRejectedError, LedgerUnavailableError
from registry.schema import Role


class TestRoleEventListener:
    """Test RoleAssigned polling."""

    def test_poll_once_delivers_and_advances(self, ledger):
        received = []
        listener = RoleEventListener(ledger, received.append)

        assert listener.poll_once() == 1
        assert received[0].address == MANAGER
        assert listener.cursor == 1

        assert listener.poll_once() == 0
        ledger.assign_role(USER, Role.MANAGER, ADMIN)
        assert listener.poll_once() == 1
        assert [e.address for e in received] == [MANAGER, USER]

        stats = listener.get_stats()
        assert stats['polling_cycles'] == 3
        assert stats['events_delivered'] == 2
        assert stats['cursor'] == 2

    def test_feeds_gate_mirror(self, ledger, gate):
        listener = RoleEventListener(ledger, gate.on_role_assigned)
        listener.poll_once()

        assert gate.mirror.get(MANAGER) == Role.MANAGER
        assert gate.mirror.counts()[Role.MANAGER] == 1

    def test_starting_cursor(self, ledger):
        received = []
        listener = RoleEventListener(ledger, received.append, cursor=1)

        assert listener.poll_once() == 0
        assert received == []

    def test_poll_failure_keeps_cursor(self, ledger):
        listener = RoleEventListener(ledger, MagicMock(), cursor=0)
        ledger.available = False

        with pytest.raises(LedgerUnavailableError):
            listener.poll_once()
        assert listener.cursor == 0

    def test_background_thread(self, ledger):
        delivered = threading.Event()
        listener = RoleEventListener(ledger, lambda event: delivered.set(), poll_interval=0.05)

        listener.start()
        try:
            assert listener.running
            assert delivered.wait(2.0)
        finally:
            listener.stop(timeout=2.0)

        assert not listener.running

    def test_background_failures_counted(self, ledger):
        ledger.available = False
        listener = RoleEventListener(ledger, MagicMock(), poll_interval=0.01)

        listener.start()
        try:
            for _ in range(200):
                if listener.get_stats()['poll_failures']:
                    break
                threading.Event().wait(0.01)
        finally:
            listener.stop(timeout=2.0)

        assert listener.get_stats()['poll_failures'] >= 1

    def test_start_is_idempotent(self, ledger):
        listener = RoleEventListener(ledger, MagicMock(), poll_interval=0.05)
        listener.start()
        thread = listener._thread
        listener.start()
        try:
            assert listener._thread is thread
        finally:
            listener.stop(timeout=2.0)

    def test_unexpected_error_does_not_stop_polling(self):
        calls = []

        def role_events_since(cursor):
            calls.append(cursor)
            if len(calls) == 1:
                raise ValueError("9 is not a valid Role")
            if len(calls) == 2:
                return [RoleAssignedEvent(address=MANAGER, role=Role.MANAGER, cursor=1)], 1
            return [], 1

        feed = MagicMock()
        feed.role_events_since.side_effect = role_events_since
        delivered = threading.Event()
        received = []

        def callback(event):
            received.append(event)
            delivered.set()

        listener = RoleEventListener(feed, callback, poll_interval=0.01)
        listener.start()
        try:
            assert delivered.wait(2.0)
            assert listener._thread.is_alive()
        finally:
            listener.stop(timeout=2.0)

        assert [e.address for e in received] == [MANAGER]
        assert listener.get_stats()['poll_failures'] == 1
        assert listener.cursor == 1

    def test_malformed_gateway_event_counted_and_skipped(self):
        rpc_ledger = JSONRPCLedger(RPCConfig(url="http://ledger.test/rpc"))
        responses = [
            {"events": [{"address": MANAGER, "role": 9, "cursor": 1}], "cursor": 1},
            {"events": [{"address": USER, "role": 1, "cursor": 2}], "cursor": 2},
        ]
        received = []
        listener = RoleEventListener(rpc_ledger, received.append, cursor=0)

        with patch.object(rpc_ledger.read_pool, 'request', side_effect=responses):
            with pytest.raises(LedgerRejectedError):
                listener.poll_once()
            assert listener.poll_once() == 1

        assert [(e.address, e.role) for e in received] == [(USER, Role.MANAGER)]
        assert listener.cursor == 2
