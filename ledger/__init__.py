"""
Product Authentication Registry - Ledger Adapters

Interface to the authoritative product/role ledger plus its in-process,
JSON-RPC and on-chain contract implementations.
"""

from .base import Ledger, LedgerProductEvent, RoleAssignedEvent
from .events import RoleEventListener
from .local import LocalLedger
from .rpc import JSONRPCLedger, RPCConfig

__all__ = [
    'Ledger',
    'LedgerProductEvent',
    'RoleAssignedEvent',
    'RoleEventListener',
    'LocalLedger',
    'JSONRPCLedger',
    'RPCConfig',
]
