"""
Product Authentication Registry - Authorization Gate

This module answers "may this address do X?" from the ledger's role records
and keeps a local mirror of role assignments for listings and counts. The
mirror is fed by RoleAssigned notifications and by the gate's own
assignments, all through one serialized write path.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from ledger.base import Ledger, RoleAssignedEvent
from registry.exceptions import (
    LedgerUnavailableError,
    RegistryError,
    UnauthorizedError,
    ValidationError,
    wrap_ledger_error,
)
from registry.schema import Role, UserRole, normalize_address


logger = logging.getLogger(__name__)


def coerce_address(address: str, field: str = "address") -> str:
    """Normalize an address, raising the registry's ValidationError."""
    try:
        return normalize_address(address)
    except ValueError as e:
        raise ValidationError(str(e), field=field)


def coerce_role(role) -> Role:
    try:
        return Role.parse(role)
    except ValueError as e:
        raise ValidationError(str(e), field="role")


class RoleMirror:
    """
    Local copy of ledger role assignments.

    Every write goes through a single lock and bumps a sequence number.
    Notifications always win; a direct write is dropped when a notification
    for the same address landed after the direct write's token was taken.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._roles: Dict[str, Role] = {}
        self._sequence = 0
        self._notified_at: Dict[str, int] = {}
        self._last_notification: Dict[str, Role] = {}

    def seed(self, owner: str) -> None:
        """Record the ledger owner as Admin."""
        with self._lock:
            self._sequence += 1
            self._roles[owner] = Role.ADMIN

    def begin_direct_write(self) -> int:
        """Token to pass to apply_direct once the ledger transaction completes."""
        with self._lock:
            return self._sequence

    def apply_notification(self, address: str, role: Role) -> bool:
        """
        Apply a RoleAssigned notification.

        Returns:
            False when the notification repeats the last one applied for the address
        """
        with self._lock:
            if self._last_notification.get(address) == role and self._roles.get(address) == role:
                return False
            self._sequence += 1
            self._roles[address] = role
            self._notified_at[address] = self._sequence
            self._last_notification[address] = role
            return True

    def apply_direct(self, address: str, role: Role, token: int) -> bool:
        """
        Apply the result of a direct assignment.

        Returns:
            False when a newer notification for the address already superseded it
        """
        with self._lock:
            if self._notified_at.get(address, 0) > token:
                logger.debug(f"Direct role write for {address} superseded by a newer notification")
                return False
            self._sequence += 1
            self._roles[address] = role
            return True

    def get(self, address: str) -> Optional[Role]:
        with self._lock:
            return self._roles.get(address)

    def snapshot(self) -> Dict[str, Role]:
        with self._lock:
            return dict(self._roles)

    def counts(self) -> Dict[Role, int]:
        counts = {role: 0 for role in Role}
        for role in self.snapshot().values():
            counts[role] += 1
        return counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._roles)


class AuthorizationGate:
    """Role checks against the ledger, plus the mirror table."""

    def __init__(self, ledger: Ledger, mirror: Optional[RoleMirror] = None):
        self.ledger = ledger
        self.mirror = mirror or RoleMirror()
        self.owner: Optional[str] = None

    def bootstrap(self) -> str:
        """
        Seed the mirror with the ledger owner as Admin.

        Returns:
            The ledger owner's address
        """
        try:
            owner = normalize_address(self.ledger.owner_of())
        except RegistryError as e:
            raise wrap_ledger_error(e, "bootstrap")
        self.owner = owner
        self.mirror.seed(owner)
        logger.info(f"Role mirror seeded with ledger owner {owner}")
        return owner

    def role_of(self, address: str) -> Role:
        """Current role of an address; User when the ledger cannot answer."""
        address = coerce_address(address)
        try:
            return self.ledger.role_of(address)
        except LedgerUnavailableError as e:
            logger.warning(f"Ledger unavailable for role lookup of {address}, treating as User: {e}")
        except RegistryError as e:
            logger.error(f"Ledger role lookup of {address} failed, treating as User: {e}")
        return Role.USER

    def can_register(self, address: str) -> bool:
        return self.role_of(address) in (Role.ADMIN, Role.MANAGER)

    def is_admin(self, address: str) -> bool:
        return self.role_of(address) == Role.ADMIN

    def on_role_assigned(self, event: RoleAssignedEvent) -> None:
        """Subscriber entry point for RoleAssigned notifications."""
        address = normalize_address(event.address)
        if self.mirror.apply_notification(address, Role(event.role)):
            logger.info(f"Role notification: {address} -> {Role(event.role).label}")

    def assign_role(self, admin: str, address: str, role) -> UserRole:
        """
        Assign a role on the ledger and record it in the mirror.

        Raises:
            ValidationError: Malformed address or role
            UnauthorizedError: Caller is not an Admin
            LedgerUnavailableError / LedgerRejectedError: Ledger failure
        """
        admin = coerce_address(admin, "admin")
        address = coerce_address(address)
        role = coerce_role(role)

        if not self.is_admin(admin):
            raise UnauthorizedError("Only admins can assign roles", operation="assign_role", actor=admin)

        token = self.mirror.begin_direct_write()
        try:
            self.ledger.assign_role(address, role, admin)
        except RegistryError as e:
            raise wrap_ledger_error(e, "assign_role", address=address)

        self.mirror.apply_direct(address, role, token)
        logger.info(f"Assigned {role.label} to {address} (by {admin})")
        return UserRole(address=address, role=role)

    def refresh(self, addresses: Iterable[str]) -> List[UserRole]:
        """Re-read roles for the given addresses from the ledger into the mirror."""
        refreshed = []
        for address in addresses:
            address = coerce_address(address)
            try:
                role = self.ledger.role_of(address)
            except RegistryError as e:
                raise wrap_ledger_error(e, "refresh", address=address)
            self.mirror.apply_notification(address, role)
            refreshed.append(UserRole(address=address, role=role))
        return refreshed

    def list_users(self) -> List[UserRole]:
        """Mirrored assignments ordered by role, then address."""
        return sorted(
            (UserRole(address=address, role=role) for address, role in self.mirror.snapshot().items()),
            key=lambda user: (int(user.role), user.address)
        )

    def mirror_snapshot(self) -> Dict[str, Role]:
        return self.mirror.snapshot()
