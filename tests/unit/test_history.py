"""
Unit tests for product history reconstruction.
"""

import logging

import pytest
from unittest.mock import patch

from conftest import ADMIN, MANAGER, USER
from ledger.local import LocalLedger
from registry.exceptions import LedgerUnavailableError, NotFoundError, ValidationError
from registry.history import HistoryReconstructor, infer_event_type
from registry.manager import RegistryManager
from registry.schema import HistoryEvent, HistoryEventType, Role


class TestInferEventType:
    """Test position-based event typing."""

    @pytest.mark.parametrize("index,expected", [
        (0, HistoryEventType.REGISTRATION),
        (1, HistoryEventType.STATUS_UPDATE),
        (2, HistoryEventType.OWNERSHIP_TRANSFER),
        (3, HistoryEventType.STATUS_UPDATE),
        (4, HistoryEventType.OWNERSHIP_TRANSFER),
    ])
    def test_positions(self, index, expected):
        assert infer_event_type(index) == expected


class TestTypedHistory:
    """Test reconstruction from the typed event feed."""

    def test_full_lifecycle(self, registry_manager, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint
        registry_manager.transfer_ownership(fp, MANAGER, USER)
        registry_manager.set_validity(fp, False, ADMIN)

        events = registry_manager.reconstruct(fp)

        assert [e.type for e in events] == [
            HistoryEventType.REGISTRATION,
            HistoryEventType.OWNERSHIP_TRANSFER,
            HistoryEventType.STATUS_UPDATE,
        ]
        assert events[0].address == MANAGER
        assert events[1].from_address == MANAGER
        assert events[1].to_address == USER
        assert events[2].status is False
        assert not any(e.inferred for e in events)

        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(timestamps)

    def test_to_dict_payloads(self, registry_manager, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint
        registry_manager.transfer_ownership(fp, MANAGER, USER)

        registration, transfer = [e.to_dict() for e in registry_manager.reconstruct(fp)]

        assert registration['type'] == "Registration"
        assert registration['address'] == MANAGER
        assert transfer['type'] == "Ownership Transfer"
        assert transfer['from'] == MANAGER
        assert transfer['to'] == USER
        assert 'status' not in transfer

    def test_unknown_product(self, registry_manager):
        with pytest.raises(NotFoundError):
            registry_manager.reconstruct("0x" + "00" * 32)

    def test_malformed_fingerprint(self, registry_manager):
        with pytest.raises(ValidationError):
            registry_manager.reconstruct("0xabc")

    def test_ledger_unavailable(self, registry_manager, ledger, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint
        ledger.available = False

        with pytest.raises(LedgerUnavailableError) as exc_info:
            registry_manager.reconstruct(fp)
        assert exc_info.value.context['fingerprint'] == fp


class TestInferredHistory:
    """Test reconstruction from bare timestamps."""

    @pytest.fixture
    def timestamp_ledger(self, clock):
        ledger = LocalLedger(ADMIN, typed_events=False, clock=clock)
        ledger.assign_role(MANAGER, Role.MANAGER, ADMIN)
        return ledger

    @pytest.fixture
    def manager(self, timestamp_ledger, cache):
        return RegistryManager(timestamp_ledger, cache)

    def test_registration_only(self, manager, widget):
        fp = manager.register(widget, MANAGER).fingerprint

        event, = manager.reconstruct(fp)

        assert event.type == HistoryEventType.REGISTRATION
        assert event.address == MANAGER
        assert event.inferred

    def test_positional_types(self, manager, widget):
        fp = manager.register(widget, MANAGER).fingerprint
        manager.set_validity(fp, False, ADMIN)
        manager.transfer_ownership(fp, MANAGER, USER)

        events = manager.reconstruct(fp)

        assert [e.type for e in events] == [
            HistoryEventType.REGISTRATION,
            HistoryEventType.STATUS_UPDATE,
            HistoryEventType.OWNERSHIP_TRANSFER,
        ]
        assert all(e.inferred for e in events)
        assert events[1].status is None
        assert events[2].from_address is None

    def test_registrant_unknown_without_cache_entry(self, timestamp_ledger):
        fp = "0x" + "ab" * 32
        timestamp_ledger.add_hash(fp, MANAGER)

        event, = HistoryReconstructor(timestamp_ledger).reconstruct(fp)

        assert event.address is None
        assert event.to_dict()['address'] is None

    def test_out_of_order_sorted_with_warning(self, timestamp_ledger, clock, caplog):
        fp = "0x" + "ab" * 32
        timestamp_ledger.add_hash(fp, MANAGER)
        clock.rewind(100)
        timestamp_ledger.set_validity(fp, False, ADMIN)

        with caplog.at_level(logging.WARNING, logger="registry.history"):
            events = HistoryReconstructor(timestamp_ledger).reconstruct(fp)

        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(timestamps)
        assert events[0].type == HistoryEventType.STATUS_UPDATE
        assert "out of order" in caplog.text

    def test_equal_timestamps_keep_ledger_order(self, timestamp_ledger):
        fp = "0x" + "ab" * 32
        timestamp_ledger.add_hash(fp, MANAGER)
        with patch.object(timestamp_ledger, 'history_of', return_value=[50, 40, 40]):
            events = HistoryReconstructor(timestamp_ledger).reconstruct(fp)

        assert [e.type for e in events] == [
            HistoryEventType.STATUS_UPDATE,
            HistoryEventType.OWNERSHIP_TRANSFER,
            HistoryEventType.REGISTRATION,
        ]


class TestHistoryEventModel:
    """Test event payload validation."""

    def test_transfer_cannot_carry_status(self):
        with pytest.raises(ValueError):
            HistoryEvent(type=HistoryEventType.OWNERSHIP_TRANSFER, timestamp=1, status=True)

    def test_status_update_cannot_carry_address(self):
        with pytest.raises(ValueError):
            HistoryEvent(type=HistoryEventType.STATUS_UPDATE, timestamp=1, address=ADMIN)

    def test_status_update_dict(self):
        event = HistoryEvent(type=HistoryEventType.STATUS_UPDATE, timestamp=5, status=True)
        assert event.to_dict() == {
            'type': "Status Update",
            'timestamp': 5,
            'status': True,
            'inferred': False,
        }
