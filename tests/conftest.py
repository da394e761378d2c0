"""
Pytest configuration and fixtures for product registry tests.
"""

import tempfile

import pytest

from access.roles import AuthorizationGate
from ledger.local import LocalLedger
from registry.audit import AuditLogger
from registry.manager import RegistryManager
from registry.schema import Role
from registry.storage import MetadataCache


ADMIN = "0x" + "a1" * 20
MANAGER = "0x" + "b2" * 20
USER = "0x" + "c3" * 20
OTHER = "0x" + "d4" * 20


class FakeClock:
    """Deterministic ledger clock; each reading advances one second."""

    def __init__(self, start: int = 1700000000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now

    def rewind(self, seconds: int) -> None:
        self.now -= seconds


@pytest.fixture
def temp_storage_dir():
    """Create temporary storage directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    """Local ledger owned by ADMIN with MANAGER already assigned."""
    ledger = LocalLedger(ADMIN, clock=clock)
    ledger.assign_role(MANAGER, Role.MANAGER, ADMIN)
    return ledger


@pytest.fixture
def cache(temp_storage_dir):
    return MetadataCache(storage_dir=temp_storage_dir)


@pytest.fixture
def gate(ledger):
    gate = AuthorizationGate(ledger)
    gate.bootstrap()
    return gate


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def registry_manager(ledger, cache, gate, audit):
    """Registry manager over a local ledger and a temporary cache."""
    return RegistryManager(ledger, cache, gate=gate, audit=audit, lock_timeout=2.0)


@pytest.fixture
def widget():
    return {"name": "Widget", "batch": "B1"}


@pytest.fixture
def sample_products():
    return [
        {"name": "Widget", "batch": "B1", "manufactureDate": "2024-01-10"},
        {"name": "Gadget", "batch": "G7", "expiryDate": "2027-06-30"},
        {"name": "Sprocket", "batch": "S3", "details": "steel, 40 teeth"},
    ]
