"""
Unit tests for the registry manager.
"""

import pytest
from unittest.mock import patch

from conftest import ADMIN, MANAGER, OTHER, USER
from registry.audit import AuditResult
from registry.exceptions import (
    CacheWriteError,
    DanglingCacheEntryError,
    LedgerRejectedError,
    LedgerUnavailableError,
    NotFoundError,
    NotOwnerError,
    UnauthorizedError,
    ValidationError,
)
from registry.fingerprint import fingerprint
from registry.schema import ZERO_ADDRESS, ProductStatus, Role
from registry.storage import StorageError


class TestRegister:
    """Test single product registration."""

    def test_register_by_manager(self, registry_manager, cache, ledger, widget):
        receipt = registry_manager.register(widget, MANAGER)

        assert receipt.created
        assert receipt.fingerprint == fingerprint(widget)
        assert ledger.verify(receipt.fingerprint)
        assert ledger.owner_of_product(receipt.fingerprint) == MANAGER

        entry = cache.get(receipt.fingerprint)
        assert entry.registered_by == MANAGER
        assert entry.metadata.name == "Widget"

    def test_register_by_admin(self, registry_manager, widget):
        assert registry_manager.register(widget, ADMIN).created

    def test_register_by_user_rejected(self, registry_manager, cache, ledger, widget):
        with pytest.raises(UnauthorizedError) as exc_info:
            registry_manager.register(widget, USER)

        assert exc_info.value.code == "UNAUTHORIZED"
        assert len(cache) == 0
        assert ledger.total_product_count() == 0

    def test_register_missing_batch(self, registry_manager, cache):
        with pytest.raises(ValidationError):
            registry_manager.register({"name": "Widget"}, MANAGER)
        assert len(cache) == 0

    def test_register_malformed_address(self, registry_manager, widget):
        with pytest.raises(ValidationError) as exc_info:
            registry_manager.register(widget, "0x1234")
        assert exc_info.value.context['field'] == "by"

    def test_register_is_idempotent(self, registry_manager, ledger, widget):
        first = registry_manager.register(widget, MANAGER)
        second = registry_manager.register({"batch": "B1", "name": "Widget"}, ADMIN)

        assert first.fingerprint == second.fingerprint
        assert not second.created
        assert ledger.total_product_count() == 1
        assert ledger.owner_of_product(first.fingerprint) == MANAGER

    def test_cache_failure_never_reaches_ledger(self, registry_manager, cache, ledger, widget):
        with patch.object(cache.storage, 'write', side_effect=StorageError("disk full")):
            with pytest.raises(CacheWriteError) as exc_info:
                registry_manager.register(widget, MANAGER)

        assert exc_info.value.code == "CACHE_WRITE_FAILED"
        assert ledger.total_product_count() == 0
        assert len(cache) == 0

    def test_ledger_failure_leaves_cache_entry_for_retry(self, registry_manager, cache, ledger, widget):
        fp = fingerprint(widget)
        with patch.object(ledger, 'add_hash', side_effect=LedgerUnavailableError("timeout")):
            with pytest.raises(LedgerUnavailableError) as exc_info:
                registry_manager.register(widget, MANAGER)

        assert exc_info.value.context['operation'] == "register"
        assert exc_info.value.context['fingerprint'] == fp
        assert cache.contains(fp)
        assert not ledger.verify(fp)

        receipt = registry_manager.register(widget, MANAGER)
        assert receipt.created
        assert ledger.verify(fp)

    def test_retry_by_other_registrant_takes_provenance(self, registry_manager, cache, ledger, widget):
        fp = fingerprint(widget)
        with patch.object(ledger, 'add_hash', side_effect=LedgerUnavailableError("timeout")):
            with pytest.raises(LedgerUnavailableError):
                registry_manager.register(widget, MANAGER)
        assert cache.get(fp).registered_by == MANAGER

        receipt = registry_manager.register(widget, ADMIN)

        assert receipt.created
        record = registry_manager.get_details(fp)
        assert ledger.owner_of_product(fp) == ADMIN
        assert record.registered_by == ADMIN
        assert record.owner == ADMIN
        assert not record.transferred
        assert record.metadata.name == "Widget"
        assert registry_manager.reconstruct(fp)[0].address == ADMIN

    def test_provenance_not_changed_for_existing_product(self, registry_manager, cache, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint

        registry_manager.register(widget, ADMIN)

        assert cache.get(fp).registered_by == MANAGER

    def test_provenance_flush_failure_after_commit(self, registry_manager, cache, ledger, widget):
        fp = fingerprint(widget)
        with patch.object(ledger, 'add_hash', side_effect=LedgerUnavailableError("timeout")):
            with pytest.raises(LedgerUnavailableError):
                registry_manager.register(widget, MANAGER)

        with patch.object(cache.storage, 'write', side_effect=StorageError("disk full")):
            with pytest.raises(CacheWriteError) as exc_info:
                registry_manager.register(widget, ADMIN)

        assert exc_info.value.context['committed'] is True
        assert ledger.verify(fp)
        assert cache.get(fp).registered_by == MANAGER

    def test_register_is_audited(self, registry_manager, audit, widget):
        registry_manager.register(widget, MANAGER)
        with pytest.raises(UnauthorizedError):
            registry_manager.register(widget, USER)

        approved, = audit.recent_events(operation="register", result=AuditResult.APPROVED)
        assert approved.actor == MANAGER
        assert approved.fingerprint == fingerprint(widget)
        assert approved.context['created'] is True

        rejected, = audit.recent_events(operation="register", result=AuditResult.REJECTED)
        assert rejected.error_code == "UNAUTHORIZED"


class TestBulkRegister:
    """Test bulk registration."""

    def test_bulk_register_all_accepted(self, registry_manager, cache, ledger, sample_products):
        result = registry_manager.bulk_register(sample_products, MANAGER)

        assert result.accepted_count == 3
        assert result.rejected == []
        assert not result.partial
        assert ledger.total_product_count() == 3
        assert sorted(cache.fingerprints()) == sorted(fingerprint(p) for p in sample_products)

    def test_bulk_register_single_ledger_call(self, registry_manager, ledger, sample_products):
        with patch.object(ledger, 'bulk_add_hashes', wraps=ledger.bulk_add_hashes) as bulk, \
                patch.object(ledger, 'add_hash', wraps=ledger.add_hash) as single:
            registry_manager.bulk_register(sample_products, MANAGER)

        assert bulk.call_count == 1
        assert single.call_count == 0

    def test_bulk_register_duplicates_collapse(self, registry_manager, sample_products):
        result = registry_manager.bulk_register(sample_products + [sample_products[0]], MANAGER)

        assert result.total == 3
        assert result.accepted_count == 3

    def test_bulk_register_skips_existing(self, registry_manager, ledger, sample_products):
        registry_manager.register(sample_products[0], MANAGER)

        with patch.object(ledger, 'bulk_add_hashes', wraps=ledger.bulk_add_hashes) as bulk:
            result = registry_manager.bulk_register(sample_products, MANAGER)

        assert result.accepted_count == 3
        assert result.already_registered == [fingerprint(sample_products[0])]
        submitted = bulk.call_args[0][0]
        assert fingerprint(sample_products[0]) not in submitted
        assert len(submitted) == 2

    def test_invalid_entry_rejects_whole_batch(self, registry_manager, cache, ledger, sample_products):
        batch = [sample_products[0], {"name": "No batch"}, sample_products[1]]

        with pytest.raises(ValidationError) as exc_info:
            registry_manager.bulk_register(batch, MANAGER)

        assert exc_info.value.message.startswith("Entry 1:")
        assert exc_info.value.context['index'] == 1
        assert len(cache) == 0
        assert ledger.total_product_count() == 0

    def test_empty_batch(self, registry_manager):
        with pytest.raises(ValidationError):
            registry_manager.bulk_register([], MANAGER)

    def test_bulk_register_by_user(self, registry_manager, sample_products):
        with pytest.raises(UnauthorizedError):
            registry_manager.bulk_register(sample_products, USER)

    def test_bulk_register_takes_provenance_of_failed_attempt(self, registry_manager, cache, ledger, sample_products):
        fp = fingerprint(sample_products[0])
        with patch.object(ledger, 'add_hash', side_effect=LedgerUnavailableError("timeout")):
            with pytest.raises(LedgerUnavailableError):
                registry_manager.register(sample_products[0], MANAGER)

        registry_manager.bulk_register(sample_products, ADMIN)

        assert cache.get(fp).registered_by == ADMIN
        assert all(entry.registered_by == ADMIN for entry in cache.entries())

    def test_partial_acceptance_caches_only_accepted(self, registry_manager, cache, ledger, sample_products):
        fps = [fingerprint(p) for p in sample_products]

        def accept_first(fingerprints, sender):
            ledger.add_hash(fingerprints[0], sender)
            return [fingerprints[0]]

        with patch.object(ledger, 'bulk_add_hashes', side_effect=accept_first):
            result = registry_manager.bulk_register(sample_products, MANAGER)

        assert result.partial
        assert result.accepted == [fps[0]]
        assert result.rejected == fps[1:]
        assert cache.fingerprints() == [fps[0]]
        assert result.to_dict()['acceptedCount'] == 1
        assert result.to_dict()['total'] == 3

    def test_bulk_ledger_failure_writes_nothing(self, registry_manager, cache, ledger, sample_products):
        with patch.object(ledger, 'bulk_add_hashes', side_effect=LedgerRejectedError("reverted")):
            with pytest.raises(LedgerRejectedError):
                registry_manager.bulk_register(sample_products, MANAGER)

        assert len(cache) == 0


class TestVerifyAndDetails:
    """Test authenticity checks and detail lookup."""

    def test_verify(self, registry_manager, widget):
        receipt = registry_manager.register(widget, MANAGER)

        assert registry_manager.verify(receipt.fingerprint)
        assert registry_manager.verify(receipt.fingerprint.upper().replace("0X", "0x"))

    def test_verify_unregistered(self, registry_manager):
        assert not registry_manager.verify("0x" + "00" * 32)

    @pytest.mark.parametrize("value", ["", "0x1234", "not-a-hash", None])
    def test_verify_malformed_is_not_authentic(self, registry_manager, value):
        assert registry_manager.verify(value) is False

    def test_verify_ledger_unavailable(self, registry_manager, ledger, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint
        ledger.available = False

        with pytest.raises(LedgerUnavailableError) as exc_info:
            registry_manager.verify(fp)
        assert exc_info.value.retryable

    def test_get_details(self, registry_manager, ledger, widget):
        fp = registry_manager.register(widget, MANAGER).fingerprint

        record = registry_manager.get_details(fp)

        assert record.metadata.name == "Widget"
        assert record.registered_by == MANAGER
        assert record.owner == MANAGER
        assert record.valid
        assert record.status == ProductStatus.VERIFIED
        assert record.registration_time == ledger.addition_time_of(fp)
        assert not record.metadata_placeholder

        data = record.to_dict()
        assert data['hash'] == fp
        assert data['productDetails'] == {"batch": "B1", "name": "Widget"}
        assert data['isValid'] is True

    def test_get_details_without_cache_entry(self, registry_manager, ledger):
        fp = "0x" + "ef" * 32
        ledger.add_hash(fp, MANAGER)

        record = registry_manager.get_details(fp)

        assert record.metadata_placeholder
        assert record.metadata.name == "Unknown Product"
        assert record.registered_by is None
        assert record.owner == MANAGER

    def test_get_details_not_found(self, registry_manager):
        with pytest.raises(NotFoundError) as exc_info:
            registry_manager.get_details("0x" + "00" * 32)
        assert exc_info.value.code == "NOT_FOUND"

    def test_get_details_malformed(self, registry_manager):
        with pytest.raises(ValidationError):
            registry_manager.get_details("0x12")

    def test_list_for_user(self, registry_manager, sample_products):
        registry_manager.register(sample_products[0], MANAGER)
        registry_manager.register(sample_products[1], ADMIN)

        owned = registry_manager.list_for_user(MANAGER)

        assert [r.metadata.name for r in owned] == ["Widget"]
        assert registry_manager.list_for_user(USER) == []

    def test_list_all_skips_removed_on_ledger(self, registry_manager, ledger, sample_products):
        registry_manager.bulk_register(sample_products, MANAGER)
        ledger.remove_product(fingerprint(sample_products[1]), ADMIN)

        names = sorted(r.metadata.name for r in registry_manager.list_all())

        assert names == ["Sprocket", "Widget"]


class TestOwnershipAndStatus:
    """Test transfers, validity changes and removal."""

    @pytest.fixture
    def fp(self, registry_manager, widget):
        return registry_manager.register(widget, MANAGER).fingerprint

    def test_transfer(self, registry_manager, fp):
        record = registry_manager.transfer_ownership(fp, MANAGER, USER)

        assert record.owner == USER
        assert record.registered_by == MANAGER
        assert record.transferred

    def test_transfer_by_user_after_receiving(self, registry_manager, fp):
        registry_manager.transfer_ownership(fp, MANAGER, USER)
        record = registry_manager.transfer_ownership(fp, USER, OTHER)
        assert record.owner == OTHER

    def test_transfer_not_owner(self, registry_manager, fp):
        with pytest.raises(NotOwnerError) as exc_info:
            registry_manager.transfer_ownership(fp, ADMIN, USER)

        assert exc_info.value.code == "NOT_OWNER"
        assert isinstance(exc_info.value, UnauthorizedError)

    def test_transfer_to_zero_address(self, registry_manager, fp):
        with pytest.raises(ValidationError):
            registry_manager.transfer_ownership(fp, MANAGER, ZERO_ADDRESS)

    def test_transfer_unknown_product(self, registry_manager):
        with pytest.raises(NotFoundError):
            registry_manager.transfer_ownership("0x" + "00" * 32, MANAGER, USER)

    def test_set_validity(self, registry_manager, fp):
        record = registry_manager.set_validity(fp, False, ADMIN)

        assert not record.valid
        assert record.status == ProductStatus.UNVERIFIED
        assert not registry_manager.verify(fp)

        assert registry_manager.set_validity(fp, True, ADMIN).valid

    def test_set_validity_requires_admin(self, registry_manager, fp):
        with pytest.raises(UnauthorizedError):
            registry_manager.set_validity(fp, False, MANAGER)
        assert registry_manager.verify(fp)

    def test_set_validity_unknown_product(self, registry_manager):
        with pytest.raises(NotFoundError):
            registry_manager.set_validity("0x" + "00" * 32, False, ADMIN)

    def test_remove(self, registry_manager, cache, fp):
        assert registry_manager.remove(fp, ADMIN)

        assert not registry_manager.verify(fp)
        assert not cache.contains(fp)
        with pytest.raises(NotFoundError):
            registry_manager.get_details(fp)

    def test_remove_requires_admin(self, registry_manager, fp):
        with pytest.raises(UnauthorizedError):
            registry_manager.remove(fp, MANAGER)
        assert registry_manager.verify(fp)

    def test_remove_unknown_product(self, registry_manager):
        with pytest.raises(NotFoundError):
            registry_manager.remove("0x" + "00" * 32, ADMIN)

    def test_remove_without_cache_entry(self, registry_manager, ledger):
        fp = "0x" + "ef" * 32
        ledger.add_hash(fp, MANAGER)

        assert registry_manager.remove(fp, ADMIN) is False
        assert not ledger.product_exists(fp)

    def test_remove_dangling_cache_entry(self, registry_manager, cache, ledger, fp):
        with patch.object(cache.storage, 'write', side_effect=StorageError("read-only fs")):
            with pytest.raises(DanglingCacheEntryError) as exc_info:
                registry_manager.remove(fp, ADMIN)

        assert exc_info.value.code == "DANGLING_CACHE_ENTRY"
        assert not ledger.product_exists(fp)
        assert cache.contains(fp)

    def test_remove_ledger_failure_keeps_cache(self, registry_manager, cache, ledger, fp):
        with patch.object(ledger, 'remove_product', side_effect=LedgerUnavailableError("down")):
            with pytest.raises(LedgerUnavailableError):
                registry_manager.remove(fp, ADMIN)

        assert cache.contains(fp)


class TestFacade:
    """Test role, stats and metrics pass-throughs."""

    def test_assign_role_is_audited(self, registry_manager, audit):
        user = registry_manager.assign_role(ADMIN, USER, "manager")

        assert user.role == Role.MANAGER
        event, = audit.recent_events(operation="assign_role")
        assert event.result == AuditResult.APPROVED
        assert event.context == {'address': USER, 'role': "Manager"}

    def test_assigned_manager_can_register(self, registry_manager, widget):
        registry_manager.assign_role(ADMIN, OTHER, Role.MANAGER)
        assert registry_manager.register(widget, OTHER).created

    def test_stats(self, registry_manager, sample_products):
        registry_manager.bulk_register(sample_products, MANAGER)
        registry_manager.assign_role(ADMIN, USER, Role.USER)

        stats = registry_manager.stats()

        assert stats.total_products == 3
        assert stats.admin_count == 1
        assert stats.user_count == 1

    def test_get_metrics(self, registry_manager, widget):
        registry_manager.register(widget, MANAGER)

        metrics = registry_manager.get_metrics()

        assert metrics['locks']['acquisition_count'] == 1
        assert metrics['cache']['entries'] == 1
        assert metrics['ledger']['backend'] == "local"
        assert metrics['audit']['events_logged'] == 1
