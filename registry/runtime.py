"""
Product Authentication Registry - Runtime Wiring

Builds the ledger adapter, metadata cache, authorization gate, audit logger
and registry manager from configuration, and owns their lifecycle: start
loads the cache, seeds the role mirror and subscribes to role notifications;
stop unsubscribes and flushes the cache.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from access.roles import AuthorizationGate
from ledger.base import Ledger
from ledger.contract import ContractConfig, ContractLedger
from ledger.events import RoleEventListener
from ledger.local import LocalLedger
from ledger.rpc import JSONRPCLedger, RPCConfig
from .audit import AuditLogger
from .exceptions import CacheWriteError, RegistryError, ValidationError
from .manager import RegistryManager
from .storage import MetadataCache, StorageError


logger = logging.getLogger(__name__)


def build_ledger(config: Dict[str, Any]) -> Ledger:
    """
    Create the ledger adapter named by ledger.backend.

    Raises:
        ValidationError: Unknown backend or incomplete settings
    """
    settings = config.get('ledger', {})
    backend = settings.get('backend', 'local')

    if backend == 'local':
        return LocalLedger(
            owner=settings['owner'],
            state_file=settings.get('state_file'),
            typed_events=settings.get('typed_events', True)
        )

    if backend == 'rpc':
        rpc = settings.get('rpc', {})
        try:
            rpc_config = RPCConfig(
                url=rpc['url'],
                username=rpc.get('username'),
                password=rpc.get('password'),
                timeout=int(rpc.get('timeout', 30)),
                max_retries=int(rpc.get('max_retries', 3))
            )
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid ledger RPC settings: {e}", backend=backend)
        return JSONRPCLedger(rpc_config)

    if backend == 'contract':
        contract = settings.get('contract', {})
        return ContractLedger(ContractConfig(
            rpc_url=contract.get('rpc_url', 'http://127.0.0.1:8545'),
            contract_address=contract.get('address'),
            artifact_path=contract.get('artifact_path'),
            private_key=contract.get('private_key'),
            chain_id=contract.get('chain_id'),
            receipt_timeout=int(contract.get('receipt_timeout', 120))
        ))

    raise ValidationError(f"Unknown ledger backend: {backend}", backend=backend)


class RegistryRuntime:
    """Process-scoped owner of the registry's components."""

    def __init__(self, config: Dict[str, Any], ledger: Optional[Ledger] = None):
        self.config = config
        self.ledger = ledger or build_ledger(config)

        registry_settings = config.get('registry', {})
        self.backup_on_start = registry_settings.get('backup_on_start', True)
        self.cache = MetadataCache(
            storage_dir=Path(registry_settings.get('data_dir', 'registry_data')).expanduser(),
            file_name=registry_settings.get('cache_file', 'metadata_cache.json'),
            backup_count=registry_settings.get('backup_count', 5),
            lock_timeout=registry_settings.get('lock_timeout', 30)
        )

        audit_settings = config.get('audit', {})
        self.audit = AuditLogger(
            log_directory=audit_settings.get('log_directory'),
            max_memory_events=audit_settings.get('max_memory_events', 1000)
        )

        self.gate = AuthorizationGate(self.ledger)
        self.manager = RegistryManager(
            self.ledger,
            self.cache,
            gate=self.gate,
            audit=self.audit,
            lock_timeout=registry_settings.get('lock_timeout', 30)
        )

        event_settings = config.get('events', {})
        self.events_enabled = event_settings.get('enabled', True)
        self.listener = RoleEventListener(
            self.ledger,
            self.gate.on_role_assigned,
            poll_interval=event_settings.get('poll_interval', 5.0)
        )
        self.started = False

    def start(self, listen: bool = True) -> 'RegistryRuntime':
        """
        Bring the registry up.

        Args:
            listen: Keep polling for role notifications on a background thread;
                otherwise catch up once and stop

        Raises:
            LedgerUnavailableError: The ledger owner could not be read
        """
        if self.started:
            return self

        if self.cache.load_error:
            logger.error(f"Metadata cache started empty: {self.cache.load_error}")
        elif self.backup_on_start and len(self.cache):
            try:
                self.cache.backup()
            except (OSError, StorageError) as e:
                logger.warning(f"Cache backup at start failed: {e}")

        self.gate.bootstrap()

        if self.events_enabled:
            try:
                self.listener.poll_once()
            except RegistryError as e:
                logger.warning(f"Initial role notification catch-up failed: {e}")
            if listen:
                self.listener.start()

        self.started = True
        logger.info(f"Registry runtime started ({self.ledger.describe()['backend']} ledger, {len(self.cache)} cached)")
        return self

    def stop(self) -> None:
        if not self.started:
            return
        self.listener.stop()
        try:
            self.cache.flush()
        except StorageError as e:
            raise CacheWriteError(f"Final cache flush failed: {e}", operation="stop")
        finally:
            self.ledger.close()
            self.started = False
        logger.info("Registry runtime stopped")

    def __enter__(self) -> 'RegistryRuntime':
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
