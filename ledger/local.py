"""
Product Authentication Registry - Local Ledger

An in-process ledger that enforces the same rules as the on-chain ProductAuth
contract. State can be persisted to a JSON file so a development setup keeps
its products across CLI invocations.
"""

import copy
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from registry.exceptions import LedgerRejectedError, LedgerUnavailableError
from registry.schema import ZERO_ADDRESS, HistoryEventType, Role, normalize_address
from registry.storage import JSONStorage, StorageError

from .base import Ledger, LedgerProductEvent, RoleAssignedEvent


logger = logging.getLogger(__name__)


class LocalLedger(Ledger):
    """Ledger held in process memory, optionally backed by a JSON state file."""

    name = "local"

    def __init__(
        self,
        owner: str,
        state_file: Optional[Union[str, Path]] = None,
        typed_events: bool = True,
        clock: Optional[Callable[[], int]] = None
    ):
        self.typed_events = typed_events
        self.clock = clock or (lambda: int(time.time()))
        self.available = True
        self._lock = RLock()
        self._storage = JSONStorage(state_file) if state_file else None

        self._owner = normalize_address(owner)
        self._roles: Dict[str, int] = {self._owner: int(Role.ADMIN)}
        self._products: Dict[str, Dict[str, Any]] = {}
        self._role_log: List[Dict[str, Any]] = []

        if self._storage and self._storage.exists():
            self._load()
        else:
            self._persist()

    # State persistence

    def _load(self) -> None:
        try:
            data = self._storage.read()
        except StorageError as e:
            raise LedgerUnavailableError(f"Local ledger state unreadable: {e}", operation="load")
        if not data:
            self._persist()
            return
        self._owner = data.get('owner', self._owner)
        self._roles = {addr: int(role) for addr, role in data.get('roles', {}).items()}
        self._roles[self._owner] = int(Role.ADMIN)
        self._products = data.get('products', {})
        self._role_log = data.get('role_log', [])
        logger.debug(f"Loaded local ledger state with {len(self._products)} products")

    def _persist(self) -> None:
        if not self._storage:
            return
        try:
            self._storage.write({
                'owner': self._owner,
                'roles': self._roles,
                'products': self._products,
                'role_log': self._role_log,
            })
        except StorageError as e:
            raise LedgerUnavailableError(f"Local ledger state not persisted: {e}", operation="persist")

    @contextmanager
    def _mutation(self):
        """Apply a state change; restore the previous state if it cannot be persisted."""
        if self._storage is None:
            yield
            return
        snapshot = copy.deepcopy((self._owner, self._roles, self._products, self._role_log))
        try:
            yield
            self._persist()
        except LedgerUnavailableError:
            self._owner, self._roles, self._products, self._role_log = snapshot
            raise

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise LedgerUnavailableError("Local ledger is offline", operation=operation)

    def _require_product(self, fingerprint: str, operation: str) -> Dict[str, Any]:
        product = self._products.get(fingerprint)
        if product is None:
            raise LedgerRejectedError("Product does not exist", operation=operation, fingerprint=fingerprint)
        return product

    def _role(self, address: str) -> Role:
        return Role(self._roles.get(address, int(Role.USER)))

    def _record(self, product: Dict[str, Any], event: Dict[str, Any]) -> None:
        product['history'].append(event['timestamp'])
        product['events'].append(event)

    # Roles

    def owner_of(self) -> str:
        with self._lock:
            self._check_available("owner_of")
            return self._owner

    def role_of(self, address: str) -> Role:
        with self._lock:
            self._check_available("role_of")
            return self._role(normalize_address(address))

    def assign_role(self, address: str, role: Role, sender: str) -> None:
        address = normalize_address(address)
        sender = normalize_address(sender)
        role = Role.parse(role)
        with self._lock:
            self._check_available("assign_role")
            if self._role(sender) != Role.ADMIN:
                raise LedgerRejectedError("Only admin can assign roles", operation="assign_role", sender=sender)
            if address == self._owner and role != Role.ADMIN:
                raise LedgerRejectedError("Owner must remain admin", operation="assign_role")
            with self._mutation():
                self._roles[address] = int(role)
                self._role_log.append({'address': address, 'role': int(role)})

    def role_events_since(self, cursor: Any = None) -> Tuple[List[RoleAssignedEvent], Any]:
        with self._lock:
            self._check_available("role_events_since")
            start = int(cursor or 0)
            events = [
                RoleAssignedEvent(address=item['address'], role=Role(item['role']), cursor=start + offset + 1)
                for offset, item in enumerate(self._role_log[start:])
            ]
            return events, len(self._role_log)

    # Products

    def _add(self, fingerprint: str, sender: str, now: int) -> None:
        product = {
            'owner': sender,
            'registrant': sender,
            'added': now,
            'valid': True,
            'history': [],
            'events': [],
        }
        self._record(product, {
            'type': HistoryEventType.REGISTRATION.value,
            'timestamp': now,
            'address': sender,
        })
        self._products[fingerprint] = product

    def add_hash(self, fingerprint: str, sender: str) -> None:
        sender = normalize_address(sender)
        with self._lock:
            self._check_available("add_hash")
            if self._role(sender) not in (Role.ADMIN, Role.MANAGER):
                raise LedgerRejectedError("Caller cannot register products", operation="add_hash", sender=sender)
            if fingerprint in self._products:
                raise LedgerRejectedError("Product already exists", operation="add_hash", fingerprint=fingerprint)
            with self._mutation():
                self._add(fingerprint, sender, self.clock())

    def bulk_add_hashes(self, fingerprints: Sequence[str], sender: str) -> List[str]:
        sender = normalize_address(sender)
        with self._lock:
            self._check_available("bulk_add_hashes")
            if self._role(sender) not in (Role.ADMIN, Role.MANAGER):
                raise LedgerRejectedError("Caller cannot register products", operation="bulk_add_hashes", sender=sender)
            now = self.clock()
            accepted = []
            with self._mutation():
                for fingerprint in fingerprints:
                    if fingerprint in self._products:
                        continue
                    self._add(fingerprint, sender, now)
                    accepted.append(fingerprint)
            return accepted

    def verify(self, fingerprint: str) -> bool:
        with self._lock:
            self._check_available("verify")
            product = self._products.get(fingerprint)
            return bool(product and product['valid'])

    def owner_of_product(self, fingerprint: str) -> str:
        with self._lock:
            self._check_available("owner_of_product")
            product = self._products.get(fingerprint)
            return product['owner'] if product else ZERO_ADDRESS

    def addition_time_of(self, fingerprint: str) -> int:
        with self._lock:
            self._check_available("addition_time_of")
            product = self._products.get(fingerprint)
            return int(product['added']) if product else 0

    def history_of(self, fingerprint: str) -> List[int]:
        with self._lock:
            self._check_available("history_of")
            product = self._products.get(fingerprint)
            return list(product['history']) if product else []

    def product_events(self, fingerprint: str) -> Optional[List[LedgerProductEvent]]:
        if not self.typed_events:
            return None
        with self._lock:
            self._check_available("product_events")
            product = self._products.get(fingerprint)
            if product is None:
                return []
            return [
                LedgerProductEvent(
                    type=HistoryEventType(event['type']),
                    timestamp=int(event['timestamp']),
                    address=event.get('address'),
                    from_address=event.get('from'),
                    to_address=event.get('to'),
                    status=event.get('status'),
                )
                for event in product['events']
            ]

    def transfer_ownership(self, fingerprint: str, new_owner: str, sender: str) -> None:
        new_owner = normalize_address(new_owner)
        sender = normalize_address(sender)
        with self._lock:
            self._check_available("transfer_ownership")
            product = self._require_product(fingerprint, "transfer_ownership")
            if product['owner'] != sender:
                raise LedgerRejectedError("Only owner can transfer", operation="transfer_ownership", fingerprint=fingerprint)
            if new_owner == ZERO_ADDRESS:
                raise LedgerRejectedError("Invalid new owner", operation="transfer_ownership", fingerprint=fingerprint)
            with self._mutation():
                self._record(product, {
                    'type': HistoryEventType.OWNERSHIP_TRANSFER.value,
                    'timestamp': self.clock(),
                    'from': product['owner'],
                    'to': new_owner,
                })
                product['owner'] = new_owner

    def set_validity(self, fingerprint: str, status: bool, sender: str) -> None:
        sender = normalize_address(sender)
        with self._lock:
            self._check_available("set_validity")
            if self._role(sender) != Role.ADMIN:
                raise LedgerRejectedError("Only admin can update status", operation="set_validity", sender=sender)
            product = self._require_product(fingerprint, "set_validity")
            with self._mutation():
                product['valid'] = bool(status)
                self._record(product, {
                    'type': HistoryEventType.STATUS_UPDATE.value,
                    'timestamp': self.clock(),
                    'status': bool(status),
                })

    def remove_product(self, fingerprint: str, sender: str) -> None:
        sender = normalize_address(sender)
        with self._lock:
            self._check_available("remove_product")
            if self._role(sender) != Role.ADMIN:
                raise LedgerRejectedError("Only admin can remove products", operation="remove_product", sender=sender)
            self._require_product(fingerprint, "remove_product")
            with self._mutation():
                del self._products[fingerprint]

    def total_product_count(self) -> int:
        with self._lock:
            self._check_available("total_product_count")
            return len(self._products)

    def products_of(self, address: str) -> List[str]:
        address = normalize_address(address)
        with self._lock:
            self._check_available("products_of")
            return [fp for fp, product in self._products.items() if product['owner'] == address]

    def describe(self) -> Dict[str, Any]:
        return {
            'backend': self.name,
            'owner': self._owner,
            'state_file': str(self._storage.file_path) if self._storage else None,
            'typed_events': self.typed_events,
        }
