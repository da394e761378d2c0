"""
Product Authentication Registry - Registry Manager

This module provides the registry facade: registration, verification,
detail lookup, ownership and validity changes and removal. It reconciles the
local metadata cache with the authoritative ledger, which owns existence,
ownership and validity.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from access.roles import AuthorizationGate, coerce_address
from ledger.base import Ledger
from .audit import AuditLogger
from .concurrency import KeyedLockManager
from .exceptions import (
    CacheWriteError,
    DanglingCacheEntryError,
    NotFoundError,
    NotOwnerError,
    RegistryError,
    UnauthorizedError,
    ValidationError,
    wrap_ledger_error,
)
from .fingerprint import MetadataInput, coerce_metadata, fingerprint, is_fingerprint, normalize_fingerprint
from .history import HistoryReconstructor
from .schema import (
    PLACEHOLDER_METADATA,
    ZERO_ADDRESS,
    BulkRegistrationResult,
    CacheEntry,
    HistoryEvent,
    ProductMetadata,
    ProductRecord,
    RegistrationReceipt,
    RegistryStats,
    UserRole,
)
from .stats import StatsAggregator
from .storage import MetadataCache, StorageError


logger = logging.getLogger(__name__)


class RegistryManager:
    """
    Main registry facade.

    Writes go cache first, then ledger, under a per-fingerprint lock, so a
    failure can only leave a cached fingerprint the ledger never recorded.
    Re-registering is a no-op on the ledger because fingerprints are
    content-addressed.
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: MetadataCache,
        gate: Optional[AuthorizationGate] = None,
        audit: Optional[AuditLogger] = None,
        lock_timeout: float = 30.0
    ):
        self.ledger = ledger
        self.cache = cache
        self.gate = gate or AuthorizationGate(ledger)
        self.audit = audit or AuditLogger()
        self.locks = KeyedLockManager("fingerprints", timeout=lock_timeout)
        self.history = HistoryReconstructor(ledger, cache)
        self.stats_aggregator = StatsAggregator(ledger, self.gate)

    def _ledger(self, operation: str, fp: Optional[str], func: Callable, *args) -> Any:
        try:
            return func(*args)
        except RegistryError as e:
            raise wrap_ledger_error(e, operation, fp)

    def _cache_insert(self, operation: str, entries: List[CacheEntry]) -> List[str]:
        try:
            return self.cache.put_many_if_absent(entries)
        except StorageError as e:
            raise CacheWriteError(f"Metadata cache flush failed: {e}", operation=operation)

    def _claim_provenance(self, operation: str, fps: List[str], by: str, now: int) -> None:
        """Attribute cache entries left by earlier failed attempts to the registrant the ledger recorded."""
        if not fps:
            return
        try:
            changed = self.cache.update_provenance(fps, by, now)
        except StorageError as e:
            raise CacheWriteError(
                f"Registrant not recorded in metadata cache after ledger commit: {e}",
                operation=operation,
                committed=True
            )
        for fp in changed:
            logger.info(f"Cache entry for {fp} re-attributed to registrant {by}")

    def _require_product(self, operation: str, fp: str) -> None:
        if not self._ledger(operation, fp, self.ledger.product_exists, fp):
            raise NotFoundError("Product not registered", operation=operation, fingerprint=fp)

    # Registration

    def register(self, metadata: MetadataInput, by: str) -> RegistrationReceipt:
        """
        Register a product's metadata on behalf of a Manager or Admin.

        Args:
            metadata: ProductMetadata or a mapping of its aliased fields
            by: Submitting address

        Returns:
            Receipt with the fingerprint; created is False when the ledger
            already held it

        Raises:
            ValidationError: Missing required metadata or malformed address
            UnauthorizedError: Caller is neither Admin nor Manager
            LedgerUnavailableError / LedgerRejectedError: Ledger write failed
            CacheWriteError: Cache could not be flushed (nothing sent to the ledger)
        """
        with self.audit.audit("register", actor=by) as record:
            model = coerce_metadata(metadata)
            by = coerce_address(by, "by")
            fp = fingerprint(model)
            record.fingerprint = fp

            if not self.gate.can_register(by):
                raise UnauthorizedError(
                    "Only managers or admins can register products",
                    operation="register",
                    actor=by,
                    fingerprint=fp
                )

            with self.locks.hold(fp):
                now = int(time.time())
                inserted = self._cache_insert("register", [
                    CacheEntry(fingerprint=fp, metadata=model, registered_by=by, registration_time=now)
                ])

                created = not self._ledger("register", fp, self.ledger.product_exists, fp)
                if created:
                    self._ledger("register", fp, self.ledger.add_hash, fp, by)
                    if fp not in inserted:
                        self._claim_provenance("register", [fp], by, now)
                else:
                    logger.info(f"Product {fp} already on ledger; registration is a no-op")

            record.context['created'] = created
            return RegistrationReceipt(fingerprint=fp, metadata=model, created=created)

    def bulk_register(self, metadatas: Iterable[MetadataInput], by: str) -> BulkRegistrationResult:
        """
        Register several products with one ledger transaction.

        Every entry is validated before anything is written. Only the
        fingerprints the ledger accepted (or already held) are committed to
        the cache, in a single flush.

        Raises:
            ValidationError: An entry is invalid or the batch is empty
            UnauthorizedError: Caller is neither Admin nor Manager
            LedgerUnavailableError / LedgerRejectedError: Bulk call failed; no cache writes
        """
        with self.audit.audit("bulk_register", actor=by) as record:
            models: List[ProductMetadata] = []
            for index, item in enumerate(metadatas):
                try:
                    models.append(coerce_metadata(item))
                except ValidationError as e:
                    raise ValidationError(f"Entry {index}: {e.message}", index=index, **e.context)
            if not models:
                raise ValidationError("No products supplied", operation="bulk_register")

            by = coerce_address(by, "by")
            if not self.gate.can_register(by):
                raise UnauthorizedError(
                    "Only managers or admins can register products", operation="bulk_register", actor=by
                )

            staged: Dict[str, ProductMetadata] = {}
            for model in models:
                staged.setdefault(fingerprint(model), model)

            with self.locks.hold_many(staged):
                existing = {fp for fp in staged if self._ledger("bulk_register", fp, self.ledger.product_exists, fp)}
                pending = [fp for fp in staged if fp not in existing]
                newly_accepted = set()
                if pending:
                    newly_accepted = set(self._ledger("bulk_register", None, self.ledger.bulk_add_hashes, pending, by))

                accepted = [fp for fp in staged if fp in existing or fp in newly_accepted]
                rejected = [fp for fp in pending if fp not in newly_accepted]

                now = int(time.time())
                inserted = self._cache_insert("bulk_register", [
                    CacheEntry(fingerprint=fp, metadata=staged[fp], registered_by=by, registration_time=now)
                    for fp in accepted
                ])
                self._claim_provenance(
                    "bulk_register", [fp for fp in accepted if fp in newly_accepted and fp not in inserted], by, now
                )

            result = BulkRegistrationResult(
                accepted=accepted,
                rejected=rejected,
                already_registered=[fp for fp in staged if fp in existing]
            )
            record.context.update({
                'submitted': len(models),
                'accepted': result.accepted_count,
                'rejected': len(rejected),
            })
            if result.partial:
                logger.warning(f"Bulk registration partially accepted: {result.accepted_count}/{result.total}")
            return result

    # Reads

    def verify(self, fp: str) -> bool:
        """
        Check authenticity against the ledger.

        A malformed or never-registered fingerprint is simply not authentic.

        Raises:
            LedgerUnavailableError: Ledger unreachable; the result is unknown
        """
        if not is_fingerprint(fp):
            return False
        fp = normalize_fingerprint(fp)
        return bool(self._ledger("verify", fp, self.ledger.verify, fp))

    def get_details(self, fp: str) -> ProductRecord:
        """
        Merge ledger state with cached metadata.

        Raises:
            ValidationError: Malformed fingerprint
            NotFoundError: Fingerprint not on the ledger
        """
        fp = normalize_fingerprint(fp)
        added = self._ledger("get_details", fp, self.ledger.addition_time_of, fp)
        if not added:
            raise NotFoundError("Product not registered", operation="get_details", fingerprint=fp)

        owner = self._ledger("get_details", fp, self.ledger.owner_of_product, fp)
        valid = self._ledger("get_details", fp, self.ledger.verify, fp)

        entry = self.cache.get(fp)
        if entry is None:
            logger.info(f"No cached metadata for {fp}; returning placeholder")
            return ProductRecord(
                fingerprint=fp,
                metadata=PLACEHOLDER_METADATA,
                registered_by=None,
                registration_time=added,
                owner=owner,
                valid=valid,
                metadata_placeholder=True
            )

        return ProductRecord(
            fingerprint=fp,
            metadata=entry.metadata,
            registered_by=entry.registered_by,
            registration_time=added,
            owner=owner,
            valid=valid
        )

    def list_for_user(self, address: str) -> List[ProductRecord]:
        """Products currently owned by an address."""
        address = coerce_address(address)
        fingerprints = self._ledger("list_for_user", None, self.ledger.products_of, address)
        return self._records(fingerprints)

    def list_all(self) -> List[ProductRecord]:
        """Every cached product that is still on the ledger."""
        return self._records(sorted(self.cache.fingerprints()))

    def _records(self, fingerprints: Iterable[str]) -> List[ProductRecord]:
        records = []
        for fp in fingerprints:
            try:
                records.append(self.get_details(fp))
            except NotFoundError:
                logger.info(f"Skipping {fp}: no longer on the ledger")
        return records

    # Lifecycle changes

    def transfer_ownership(self, fp: str, from_address: str, to_address: str) -> ProductRecord:
        """
        Move ownership of a product.

        Raises:
            NotFoundError: Fingerprint not on the ledger
            NotOwnerError: from_address is not the current owner
        """
        with self.audit.audit("transfer_ownership", actor=from_address) as record:
            fp = normalize_fingerprint(fp)
            record.fingerprint = fp
            from_address = coerce_address(from_address, "from_address")
            to_address = coerce_address(to_address, "to_address")
            if to_address == ZERO_ADDRESS:
                raise ValidationError("Cannot transfer to the zero address", field="to_address")

            with self.locks.hold(fp):
                owner = self._ledger("transfer_ownership", fp, self.ledger.owner_of_product, fp)
                if owner == ZERO_ADDRESS:
                    raise NotFoundError("Product not registered", operation="transfer_ownership", fingerprint=fp)
                if owner != from_address:
                    raise NotOwnerError(
                        "Only the current owner can transfer a product",
                        operation="transfer_ownership",
                        fingerprint=fp,
                        actor=from_address
                    )
                self._ledger("transfer_ownership", fp, self.ledger.transfer_ownership, fp, to_address, from_address)

            record.context['to'] = to_address
            logger.info(f"Transferred {fp} from {from_address} to {to_address}")

        return self.get_details(fp)

    def set_validity(self, fp: str, status: bool, by: str) -> ProductRecord:
        """Flag a product valid or invalid (Admin only)."""
        with self.audit.audit("set_validity", actor=by) as record:
            fp = normalize_fingerprint(fp)
            record.fingerprint = fp
            by = coerce_address(by, "by")
            if not self.gate.is_admin(by):
                raise UnauthorizedError(
                    "Only admins can change product status", operation="set_validity", actor=by, fingerprint=fp
                )

            with self.locks.hold(fp):
                self._require_product("set_validity", fp)
                self._ledger("set_validity", fp, self.ledger.set_validity, fp, bool(status), by)

            record.context['status'] = bool(status)

        return self.get_details(fp)

    def remove(self, fp: str, by: str) -> bool:
        """
        Remove a product from the ledger, then from the cache (Admin only).

        Returns:
            True if a cache entry was also removed

        Raises:
            DanglingCacheEntryError: Ledger removal succeeded but the cache
                entry could not be deleted
        """
        with self.audit.audit("remove", actor=by) as record:
            fp = normalize_fingerprint(fp)
            record.fingerprint = fp
            by = coerce_address(by, "by")
            if not self.gate.is_admin(by):
                raise UnauthorizedError(
                    "Only admins can remove products", operation="remove", actor=by, fingerprint=fp
                )

            with self.locks.hold(fp):
                self._require_product("remove", fp)
                self._ledger("remove", fp, self.ledger.remove_product, fp, by)
                try:
                    removed = self.cache.remove(fp)
                except StorageError as e:
                    logger.error(f"Product {fp} removed from ledger but cache entry remains: {e}")
                    raise DanglingCacheEntryError(
                        f"Cache entry could not be removed: {e}", operation="remove", fingerprint=fp
                    )

            record.context['cache_entry_removed'] = removed
            return removed

    # Facade pass-throughs

    def assign_role(self, admin: str, address: str, role) -> UserRole:
        with self.audit.audit("assign_role", actor=admin) as record:
            user = self.gate.assign_role(admin, address, role)
            record.context.update({'address': user.address, 'role': user.role.label})
            return user

    def stats(self) -> RegistryStats:
        return self.stats_aggregator.stats()

    def reconstruct(self, fp: str) -> List[HistoryEvent]:
        return self.history.reconstruct(fp)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            'locks': self.locks.get_metrics(),
            'cache': self.cache.get_storage_info(),
            'audit': self.audit.get_statistics(),
            'ledger': self.ledger.describe(),
        }
