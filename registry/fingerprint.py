"""
Product Authentication Registry - Fingerprint Generation

This module derives the content-addressed fingerprint of product metadata:
keccak-256 over a canonical JSON serialization, matching the bytes32 keys the
ledger stores.
"""

import json
import re
from typing import Any, Mapping, Union

from pydantic import ValidationError as PydanticValidationError
from web3 import Web3

from .exceptions import ValidationError
from .schema import ProductMetadata


FINGERPRINT_HEX = re.compile(r'^[a-fA-F0-9]{64}$')

MetadataInput = Union[ProductMetadata, Mapping[str, Any]]


def coerce_metadata(metadata: MetadataInput) -> ProductMetadata:
    """Validate raw metadata into a ProductMetadata model."""
    if isinstance(metadata, ProductMetadata):
        return metadata
    if not isinstance(metadata, Mapping):
        raise ValidationError(f"Product metadata must be a mapping, got {type(metadata).__name__}")
    try:
        return ProductMetadata.model_validate(dict(metadata))
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err['loc']) for err in e.errors()})
        raise ValidationError(
            f"Invalid product metadata: {e.error_count()} error(s)",
            fields=",".join(fields)
        )


def canonical_serialization(metadata: MetadataInput) -> str:
    """Stable JSON text: aliased keys, sorted, compact, absent fields omitted."""
    model = coerce_metadata(metadata)
    return json.dumps(
        model.canonical_dict(),
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False
    )


def fingerprint(metadata: MetadataInput) -> str:
    """
    Compute the fingerprint of product metadata.

    Args:
        metadata: ProductMetadata or a mapping using the aliased field names

    Returns:
        0x-prefixed, lower-case 64-character hex digest

    Raises:
        ValidationError: If required metadata fields are missing
    """
    digest = Web3.keccak(text=canonical_serialization(metadata))
    return "0x" + bytes(digest).hex()


def is_fingerprint(value: Any) -> bool:
    """Check fingerprint format without raising."""
    if not isinstance(value, str):
        return False
    value = value.strip()
    if value[:2] in ('0x', '0X'):
        value = value[2:]
    return bool(FINGERPRINT_HEX.match(value))


def normalize_fingerprint(value: Any) -> str:
    """
    Return the canonical 0x-prefixed lower-case form of a fingerprint.

    Raises:
        ValidationError: If the value is not 32 bytes of hex
    """
    if not is_fingerprint(value):
        raise ValidationError(f"Invalid fingerprint format: {value!r}")
    value = value.strip()
    if value[:2] in ('0x', '0X'):
        value = value[2:]
    return "0x" + value.lower()


def fingerprint_to_bytes(value: str) -> bytes:
    """Convert a fingerprint to the 32-byte form the contract expects."""
    return bytes.fromhex(normalize_fingerprint(value)[2:])


def bytes_to_fingerprint(raw: bytes) -> str:
    """Convert a 32-byte ledger key back to a fingerprint string."""
    if len(raw) != 32:
        raise ValidationError(f"Fingerprint must be 32 bytes, got {len(raw)}")
    return "0x" + bytes(raw).hex()


def truncate_fingerprint(value: str, length: int = 10) -> str:
    """Shorten a fingerprint for display."""
    if len(value) <= length + 2:
        return value
    return f"{value[:length]}...{value[-4:]}"
