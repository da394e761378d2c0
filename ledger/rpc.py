"""
Product Authentication Registry - JSON-RPC Ledger Client

This module provides a JSON-RPC 2.0 client for a ledger gateway, with
authentication, pooled sessions, retry configuration and error translation.
Read calls retry on transient failures; mutating calls only retry failures
that happened before the request reached the gateway.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry

from registry.exceptions import LedgerRejectedError, LedgerUnavailableError
from registry.fingerprint import normalize_fingerprint
from registry.schema import HistoryEventType, Role, normalize_address

from .base import Ledger, LedgerProductEvent, RoleAssignedEvent, parse_role, parse_role_event


METHOD_NOT_FOUND = -32601


class RPCError(Exception):
    """Base exception for RPC-related errors."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


class RPCConnectionError(RPCError):
    """Exception for RPC connection failures."""
    pass


class RPCAuthError(RPCError):
    """Exception for RPC authentication failures."""
    pass


class RPCTimeoutError(RPCError):
    """Exception for RPC timeout errors."""
    pass


@dataclass
class RPCConfig:
    """Configuration for the ledger gateway connection."""
    url: str = "http://localhost:8545/rpc"
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: int = 30
    max_retries: int = 3
    backoff_factor: float = 0.5
    ssl_verify: bool = True

    def __post_init__(self):
        if not self.url.startswith(('http://', 'https://')):
            raise ValueError(f"RPC url must be http(s): {self.url}")
        if self.username and self.password is None:
            raise ValueError("RPC password required when username is set")

    @classmethod
    def from_env(cls) -> 'RPCConfig':
        """Create RPC config from environment variables."""
        return cls(
            url=os.getenv("PRODUCTAUTH_RPC_URL", "http://localhost:8545/rpc"),
            username=os.getenv("PRODUCTAUTH_RPC_USER"),
            password=os.getenv("PRODUCTAUTH_RPC_PASSWORD"),
            timeout=int(os.getenv("PRODUCTAUTH_RPC_TIMEOUT", "30")),
            max_retries=int(os.getenv("PRODUCTAUTH_RPC_MAX_RETRIES", "3")),
            ssl_verify=os.getenv("PRODUCTAUTH_RPC_SSL_VERIFY", "true").lower() == "true"
        )


class ConnectionPool:
    """Pooled HTTP session for RPC requests."""

    def __init__(self, config: RPCConfig, idempotent: bool = True):
        self.config = config
        self.idempotent = idempotent
        self.logger = logging.getLogger(__name__)
        self.session = requests.Session()

        if idempotent:
            retry_strategy = Retry(
                total=config.max_retries,
                backoff_factor=config.backoff_factor,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["POST"]
            )
        else:
            # Only connection establishment is retried; the request body was never sent.
            retry_strategy = Retry(
                total=config.max_retries,
                connect=config.max_retries,
                read=0,
                status=0,
                other=0,
                backoff_factor=config.backoff_factor,
                allowed_methods=["POST"]
            )

        adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=10, pool_block=True)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if config.username:
            self.session.auth = HTTPBasicAuth(config.username, config.password)

        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_time": 0.0,
            "last_request_time": None
        }
        self._stats_lock = threading.Lock()
        self._request_counter = 0

    def _next_id(self) -> str:
        with self._stats_lock:
            self._request_counter += 1
            return f"req_{int(time.time() * 1000)}_{self._request_counter}"

    def _record_failure(self) -> None:
        with self._stats_lock:
            self._stats["failed_requests"] += 1

    def request(self, method: str, params: List[Any]) -> Any:
        """Make an RPC request and return its result."""
        start_time = time.time()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._next_id()
        }
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "productauth-ledger-client/1.0"
        }

        try:
            response = self.session.post(
                self.config.url,
                data=json.dumps(payload),
                headers=headers,
                timeout=self.config.timeout,
                verify=self.config.ssl_verify
            )
        except requests.exceptions.Timeout:
            self._record_failure()
            raise RPCTimeoutError(-1, f"Request timed out after {self.config.timeout}s")
        except requests.exceptions.ConnectionError as e:
            self._record_failure()
            raise RPCConnectionError(-1, f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            self._record_failure()
            raise RPCConnectionError(-1, f"Request failed: {e}")

        request_time = time.time() - start_time
        with self._stats_lock:
            self._stats["total_requests"] += 1
            self._stats["total_time"] += request_time
            self._stats["last_request_time"] = datetime.now(timezone.utc)

        if response.status_code in (401, 403):
            self._record_failure()
            raise RPCAuthError(response.status_code, "Authentication failed")

        if response.status_code != 200:
            self._record_failure()
            raise RPCConnectionError(response.status_code, f"HTTP {response.status_code}: {response.reason}")

        try:
            response_data = response.json()
        except ValueError as e:
            self._record_failure()
            raise RPCError(-32700, f"Invalid JSON response: {e}")

        error = response_data.get("error")
        if error:
            self._record_failure()
            raise RPCError(error.get("code", -32000), error.get("message", "Unknown error"), error.get("data"))

        with self._stats_lock:
            self._stats["successful_requests"] += 1

        return response_data.get("result")

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.copy()

        total = stats["total_requests"]
        return {
            **stats,
            "average_request_time": stats["total_time"] / total if total else 0,
            "success_rate": stats["successful_requests"] / total if total else 0,
            "idempotent": self.idempotent,
        }

    def close(self):
        self.session.close()


class JSONRPCLedger(Ledger):
    """Ledger reached through a JSON-RPC gateway using the ledger's camelCase method names."""

    name = "rpc"

    def __init__(self, config: Optional[RPCConfig] = None):
        self.config = config or RPCConfig.from_env()
        self.read_pool = ConnectionPool(self.config, idempotent=True)
        self.write_pool = ConnectionPool(self.config, idempotent=False)
        self.logger = logging.getLogger(__name__)
        self._typed_events_supported: Optional[bool] = None

    def _call(self, method: str, *params, mutating: bool = False) -> Any:
        """
        Make an RPC call, translating transport and application errors.

        Raises:
            LedgerUnavailableError: Connection, timeout or gateway failures
            LedgerRejectedError: The gateway answered with an RPC error
        """
        pool = self.write_pool if mutating else self.read_pool
        try:
            return pool.request(method, list(params))
        except (RPCConnectionError, RPCTimeoutError) as e:
            self.logger.warning(f"Ledger RPC {method} unavailable: {e}")
            raise LedgerUnavailableError(str(e), operation=method, rpc_code=e.code)
        except RPCAuthError as e:
            self.logger.error(f"Ledger RPC {method} authentication failed: {e}")
            raise LedgerRejectedError(str(e), operation=method, rpc_code=e.code)
        except RPCError as e:
            self.logger.info(f"Ledger RPC {method} rejected: {e}")
            raise LedgerRejectedError(e.message, operation=method, rpc_code=e.code)

    # Roles

    def owner_of(self) -> str:
        return normalize_address(self._call("ownerOf"))

    def role_of(self, address: str) -> Role:
        return parse_role(self._call("roleOf", address), "roleOf")

    def assign_role(self, address: str, role: Role, sender: str) -> None:
        self._call("assignRole", address, int(role), sender, mutating=True)

    def role_events_since(self, cursor: Any = None) -> Tuple[List[RoleAssignedEvent], Any]:
        result = self._call("roleEventsSince", cursor) or {}
        if not isinstance(result, dict):
            raise LedgerRejectedError(f"Malformed roleEventsSince result: {result!r}", operation="roleEventsSince")
        events = []
        for item in result.get('events', []):
            if not isinstance(item, dict):
                raise LedgerRejectedError(f"Malformed RoleAssigned event: {item!r}", operation="roleEventsSince")
            events.append(parse_role_event(item.get('address'), item.get('role'), item.get('cursor'), "roleEventsSince"))
        return events, result.get('cursor', cursor)

    # Products

    def add_hash(self, fingerprint: str, sender: str) -> None:
        self._call("addHash", fingerprint, sender, mutating=True)

    def bulk_add_hashes(self, fingerprints: Sequence[str], sender: str) -> List[str]:
        result = self._call("bulkAddHashes", list(fingerprints), sender, mutating=True)
        if result is None or result is True:
            # Gateways that only acknowledge: confirm acceptance by reading back.
            return [fp for fp in fingerprints if self.product_exists(fp)]
        return [normalize_fingerprint(fp) for fp in result]

    def verify(self, fingerprint: str) -> bool:
        return bool(self._call("verify", fingerprint))

    def owner_of_product(self, fingerprint: str) -> str:
        return normalize_address(self._call("ownerOfProduct", fingerprint))

    def addition_time_of(self, fingerprint: str) -> int:
        return int(self._call("additionTimeOf", fingerprint) or 0)

    def history_of(self, fingerprint: str) -> List[int]:
        return [int(ts) for ts in (self._call("historyOf", fingerprint) or [])]

    def product_events(self, fingerprint: str) -> Optional[List[LedgerProductEvent]]:
        if self._typed_events_supported is False:
            return None
        try:
            result = self._call("productEvents", fingerprint)
        except LedgerRejectedError as e:
            if e.context.get('rpc_code') == METHOD_NOT_FOUND:
                self.logger.info("Ledger gateway has no typed event feed; using timestamp history")
                self._typed_events_supported = False
                return None
            raise
        self._typed_events_supported = True
        return [
            LedgerProductEvent(
                type=HistoryEventType(item['type']),
                timestamp=int(item['timestamp']),
                address=item.get('address'),
                from_address=item.get('from'),
                to_address=item.get('to'),
                status=item.get('status'),
            )
            for item in (result or [])
        ]

    def transfer_ownership(self, fingerprint: str, new_owner: str, sender: str) -> None:
        self._call("transferOwnership", fingerprint, new_owner, sender, mutating=True)

    def set_validity(self, fingerprint: str, status: bool, sender: str) -> None:
        self._call("setValidity", fingerprint, bool(status), sender, mutating=True)

    def remove_product(self, fingerprint: str, sender: str) -> None:
        self._call("removeProduct", fingerprint, sender, mutating=True)

    def total_product_count(self) -> int:
        return int(self._call("totalProductCount") or 0)

    def products_of(self, address: str) -> List[str]:
        return [normalize_fingerprint(fp) for fp in (self._call("productsOf", address) or [])]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'reads': self.read_pool.get_stats(),
            'writes': self.write_pool.get_stats(),
        }

    def close(self) -> None:
        self.read_pool.close()
        self.write_pool.close()

    def describe(self) -> Dict[str, Any]:
        return {'backend': self.name, 'url': self.config.url, 'timeout': self.config.timeout}
