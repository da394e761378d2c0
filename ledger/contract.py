"""
Product Authentication Registry - ProductAuth Contract Ledger

This module binds the ledger interface to the on-chain ProductAuth contract
with web3. Transactions are signed locally when a private key is configured,
otherwise they are sent from node-managed accounts.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, ProviderConnectionError, TimeExhausted, Web3Exception

from registry.exceptions import LedgerRejectedError, LedgerUnavailableError, ValidationError
from registry.fingerprint import bytes_to_fingerprint, fingerprint_to_bytes
from registry.schema import Role, normalize_address

from .base import Ledger, RoleAssignedEvent, parse_role, parse_role_event


logger = logging.getLogger(__name__)


def _function(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


PRODUCT_AUTH_ABI = [
    _function("owner", [], ["address"]),
    _function("getUserRole", [("user", "address")], ["uint8"]),
    _function("assignRole", [("user", "address"), ("role", "uint8")], mutability="nonpayable"),
    _function("addProductHash", [("productHash", "bytes32")], mutability="nonpayable"),
    _function("bulkAddProductHashes", [("productHashes", "bytes32[]")], mutability="nonpayable"),
    _function("verifyProduct", [("productHash", "bytes32")], ["bool"]),
    _function("productOwner", [("productHash", "bytes32")], ["address"]),
    _function("additionTime", [("productHash", "bytes32")], ["uint256"]),
    _function("getProductHistory", [("productHash", "bytes32")], ["uint256[]"]),
    _function("transferOwnership", [("productHash", "bytes32"), ("newOwner", "address")], mutability="nonpayable"),
    _function("setVerificationStatus", [("productHash", "bytes32"), ("status", "bool")], mutability="nonpayable"),
    _function("removeProduct", [("productHash", "bytes32")], mutability="nonpayable"),
    _function("getTotalProducts", [], ["uint256"]),
    _function("getAllProductsForUser", [("user", "address")], ["bytes32[]"]),
    _event("RoleAssigned", [("user", "address", True), ("role", "uint8", False)]),
    _event("ProductAdded", [("productHash", "bytes32", True), ("owner", "address", True)]),
]


@dataclass
class ContractConfig:
    """Connection settings for the ProductAuth contract."""
    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: Optional[str] = None
    artifact_path: Optional[str] = None
    private_key: Optional[str] = None
    chain_id: Optional[int] = None
    receipt_timeout: int = 120
    request_timeout: int = 30


def load_artifact(path: str, chain_id: Optional[int] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Read the ABI and, when present, the deployed address from a Truffle build artifact.

    Raises:
        ValidationError: If the artifact is missing or has no ABI
    """
    artifact_file = Path(path).expanduser()
    try:
        artifact = json.loads(artifact_file.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read contract artifact {artifact_file}: {e}")

    abi = artifact.get("abi")
    if not abi:
        raise ValidationError(f"Contract artifact {artifact_file} has no ABI")

    address = None
    networks = artifact.get("networks") or {}
    if chain_id is not None and str(chain_id) in networks:
        address = networks[str(chain_id)].get("address")
    elif len(networks) == 1:
        address = next(iter(networks.values())).get("address")
    return abi, address


class ContractLedger(Ledger):
    """Ledger backed by the deployed ProductAuth contract."""

    name = "contract"

    def __init__(self, config: ContractConfig, web3: Optional[Web3] = None):
        self.config = config
        self.web3 = web3 or Web3(Web3.HTTPProvider(
            config.rpc_url, request_kwargs={"timeout": config.request_timeout}
        ))

        abi = PRODUCT_AUTH_ABI
        address = config.contract_address
        if config.artifact_path:
            abi, artifact_address = load_artifact(config.artifact_path, config.chain_id)
            address = address or artifact_address
        if not address:
            raise ValidationError("Contract address not configured")

        self.contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        self.account = Account.from_key(config.private_key) if config.private_key else None
        logger.info(f"Bound ProductAuth contract at {address} via {config.rpc_url}")

    def _call(self, operation: str, fn) -> Any:
        try:
            return fn()
        except ContractLogicError as e:
            raise LedgerRejectedError(f"Contract call reverted: {e}", operation=operation)
        except (ProviderConnectionError, TimeExhausted, requests.exceptions.RequestException, OSError) as e:
            logger.warning(f"Ledger call {operation} unavailable: {e}")
            raise LedgerUnavailableError(str(e), operation=operation)
        except Web3Exception as e:
            raise LedgerRejectedError(str(e), operation=operation)

    def _transact(self, operation: str, sender: str, function) -> Any:
        """Send a state-changing call and wait for its receipt."""
        sender = Web3.to_checksum_address(normalize_address(sender))

        def send():
            if self.account is not None:
                if self.account.address.lower() != sender.lower():
                    raise LedgerRejectedError(
                        "No signing key configured for sender", operation=operation, sender=sender.lower()
                    )
                tx_params = {
                    "from": sender,
                    "nonce": self.web3.eth.get_transaction_count(sender),
                }
                if self.config.chain_id is not None:
                    tx_params["chainId"] = self.config.chain_id
                transaction = function.build_transaction(tx_params)
                signed = self.account.sign_transaction(transaction)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = function.transact({"from": sender})

            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.config.receipt_timeout)
            if receipt.status != 1:
                raise LedgerRejectedError(
                    "Transaction reverted", operation=operation, tx_hash=Web3.to_hex(tx_hash)
                )
            logger.debug(f"{operation} mined in block {receipt.blockNumber} (gas {receipt.gasUsed})")
            return receipt

        return self._call(operation, send)

    # Roles

    def owner_of(self) -> str:
        return normalize_address(self._call("owner_of", self.contract.functions.owner().call))

    def role_of(self, address: str) -> Role:
        checksum = Web3.to_checksum_address(normalize_address(address))
        return parse_role(self._call("role_of", self.contract.functions.getUserRole(checksum).call), "role_of")

    def assign_role(self, address: str, role: Role, sender: str) -> None:
        checksum = Web3.to_checksum_address(normalize_address(address))
        self._transact("assign_role", sender, self.contract.functions.assignRole(checksum, int(role)))

    def role_events_since(self, cursor: Any = None) -> Tuple[List[RoleAssignedEvent], Any]:
        """Cursor is the next block number to scan."""
        from_block = int(cursor or 0)

        def fetch():
            latest = self.web3.eth.block_number
            if from_block > latest:
                return [], from_block
            logs = self.contract.events.RoleAssigned().get_logs(from_block=from_block, to_block=latest)
            return logs, latest + 1

        logs, next_cursor = self._call("role_events_since", fetch)
        events = [
            parse_role_event(
                log["args"]["user"], log["args"]["role"], (log["blockNumber"], log["logIndex"]), "role_events_since"
            )
            for log in logs
        ]
        return events, next_cursor

    # Products

    def add_hash(self, fingerprint: str, sender: str) -> None:
        self._transact(
            "add_hash", sender, self.contract.functions.addProductHash(fingerprint_to_bytes(fingerprint))
        )

    def bulk_add_hashes(self, fingerprints: Sequence[str], sender: str) -> List[str]:
        receipt = self._transact(
            "bulk_add_hashes",
            sender,
            self.contract.functions.bulkAddProductHashes([fingerprint_to_bytes(fp) for fp in fingerprints])
        )

        def accepted():
            added = self.contract.events.ProductAdded().process_receipt(receipt)
            try:
                return [bytes_to_fingerprint(bytes(log["args"]["productHash"])) for log in added]
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerRejectedError(f"Unreadable ProductAdded log: {e}", operation="bulk_add_hashes")

        return self._call("bulk_add_hashes", accepted)

    def verify(self, fingerprint: str) -> bool:
        key = fingerprint_to_bytes(fingerprint)
        return bool(self._call("verify", self.contract.functions.verifyProduct(key).call))

    def owner_of_product(self, fingerprint: str) -> str:
        key = fingerprint_to_bytes(fingerprint)
        return normalize_address(self._call("owner_of_product", self.contract.functions.productOwner(key).call))

    def addition_time_of(self, fingerprint: str) -> int:
        key = fingerprint_to_bytes(fingerprint)
        return int(self._call("addition_time_of", self.contract.functions.additionTime(key).call))

    def history_of(self, fingerprint: str) -> List[int]:
        key = fingerprint_to_bytes(fingerprint)
        return [int(ts) for ts in self._call("history_of", self.contract.functions.getProductHistory(key).call)]

    def transfer_ownership(self, fingerprint: str, new_owner: str, sender: str) -> None:
        checksum = Web3.to_checksum_address(normalize_address(new_owner))
        self._transact(
            "transfer_ownership",
            sender,
            self.contract.functions.transferOwnership(fingerprint_to_bytes(fingerprint), checksum)
        )

    def set_validity(self, fingerprint: str, status: bool, sender: str) -> None:
        self._transact(
            "set_validity",
            sender,
            self.contract.functions.setVerificationStatus(fingerprint_to_bytes(fingerprint), bool(status))
        )

    def remove_product(self, fingerprint: str, sender: str) -> None:
        self._transact(
            "remove_product", sender, self.contract.functions.removeProduct(fingerprint_to_bytes(fingerprint))
        )

    def total_product_count(self) -> int:
        return int(self._call("total_product_count", self.contract.functions.getTotalProducts().call))

    def products_of(self, address: str) -> List[str]:
        checksum = Web3.to_checksum_address(normalize_address(address))
        raw = self._call("products_of", self.contract.functions.getAllProductsForUser(checksum).call)
        return [bytes_to_fingerprint(bytes(item)) for item in raw]

    def describe(self) -> Dict[str, Any]:
        return {
            'backend': self.name,
            'rpc_url': self.config.rpc_url,
            'contract_address': self.contract.address,
            'signing': 'local' if self.account else 'node',
        }
