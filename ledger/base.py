"""
Product Authentication Registry - Ledger Interface

This module defines the small RPC surface the registry needs from the
authoritative ledger, plus the typed records exchanged with it. Adapters
translate transport failures into LedgerUnavailableError and refusals into
LedgerRejectedError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from registry.exceptions import LedgerRejectedError
from registry.schema import HistoryEventType, Role, normalize_address


@dataclass(frozen=True)
class RoleAssignedEvent:
    """RoleAssigned{address, role} notification emitted by the ledger."""
    address: str
    role: Role
    cursor: Any = None


@dataclass(frozen=True)
class LedgerProductEvent:
    """Typed per-product lifecycle event, when the ledger can supply one."""
    type: HistoryEventType
    timestamp: int
    address: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    status: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)


def parse_role(value: Any, operation: str) -> Role:
    """Convert a role ordinal reported by the ledger, rejecting anything outside Admin/Manager/User."""
    try:
        return Role(int(value))
    except (TypeError, ValueError):
        raise LedgerRejectedError(f"Ledger reported an unknown role: {value!r}", operation=operation)


def parse_role_event(address: Any, role: Any, cursor: Any, operation: str) -> RoleAssignedEvent:
    """Build a RoleAssigned notification from raw ledger fields."""
    try:
        address = normalize_address(address)
    except ValueError:
        raise LedgerRejectedError(f"RoleAssigned event has a malformed address: {address!r}", operation=operation)
    return RoleAssignedEvent(address=address, role=parse_role(role, operation), cursor=cursor)


class Ledger(ABC):
    """
    Authoritative product and role ledger.

    Fingerprints are 0x-prefixed lower-case hex strings and addresses are
    0x-prefixed lower-case hex strings on both sides of this interface.
    Mutating calls name the sending account so the ledger can apply its own
    access rules.
    """

    name = "ledger"

    # Roles

    @abstractmethod
    def owner_of(self) -> str:
        """Owning (deploying) identity of the ledger."""

    @abstractmethod
    def role_of(self, address: str) -> Role:
        """Role held by an address; User when never assigned."""

    @abstractmethod
    def assign_role(self, address: str, role: Role, sender: str) -> None:
        """Assign a role; emits RoleAssigned."""

    @abstractmethod
    def role_events_since(self, cursor: Any = None) -> Tuple[List[RoleAssignedEvent], Any]:
        """
        Fetch RoleAssigned notifications after a cursor.

        Returns:
            Events in emission order and the cursor to resume from
        """

    # Products

    @abstractmethod
    def add_hash(self, fingerprint: str, sender: str) -> None:
        """Record a new product owned by the sender."""

    @abstractmethod
    def bulk_add_hashes(self, fingerprints: Sequence[str], sender: str) -> List[str]:
        """
        Record several products in one transaction.

        Returns:
            The fingerprints the ledger accepted
        """

    @abstractmethod
    def verify(self, fingerprint: str) -> bool:
        """True iff the product exists and is flagged valid."""

    @abstractmethod
    def owner_of_product(self, fingerprint: str) -> str:
        """Current owner; the zero address when absent."""

    @abstractmethod
    def addition_time_of(self, fingerprint: str) -> int:
        """Registration timestamp; 0 when absent."""

    @abstractmethod
    def history_of(self, fingerprint: str) -> List[int]:
        """Lifecycle event timestamps, earliest first."""

    @abstractmethod
    def transfer_ownership(self, fingerprint: str, new_owner: str, sender: str) -> None:
        """Move ownership to new_owner."""

    @abstractmethod
    def set_validity(self, fingerprint: str, status: bool, sender: str) -> None:
        """Flag the product valid or invalid."""

    @abstractmethod
    def remove_product(self, fingerprint: str, sender: str) -> None:
        """Delete the product record."""

    @abstractmethod
    def total_product_count(self) -> int:
        """Number of products currently recorded."""

    @abstractmethod
    def products_of(self, address: str) -> List[str]:
        """Fingerprints currently owned by an address."""

    def product_events(self, fingerprint: str) -> Optional[List[LedgerProductEvent]]:
        """
        Typed lifecycle events for a product.

        Returns None when the ledger cannot supply per-event detail; callers
        then fall back to history_of() timestamps.
        """
        return None

    def product_exists(self, fingerprint: str) -> bool:
        return self.addition_time_of(fingerprint) > 0

    def close(self) -> None:
        """Release transport resources."""

    def describe(self) -> Dict[str, Any]:
        return {'backend': self.name}
