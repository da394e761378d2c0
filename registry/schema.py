"""
Product Authentication Registry - Schema Models

This module defines the Pydantic models for product metadata, registry records,
cached metadata entries, role assignments and derived history events.
"""

import re
import time
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')
FINGERPRINT_PATTERN = re.compile(r'^0x[a-fA-F0-9]{64}$')

ZERO_ADDRESS = "0x" + "0" * 40


def normalize_address(value: str) -> str:
    """Normalize an account address to lower-case 0x-prefixed hex."""
    if not isinstance(value, str):
        raise ValueError('Address must be a string')
    value = value.strip()
    if not value.startswith(('0x', '0X')):
        value = '0x' + value
    value = '0x' + value[2:]
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f'Address must be a 20-byte hex string: {value!r}')
    return value.lower()


class Role(IntEnum):
    """Role ordinals as stored on the ledger."""
    ADMIN = 0
    MANAGER = 1
    USER = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: Any) -> 'Role':
        """Accept an ordinal or a case-insensitive role name."""
        if isinstance(value, Role):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f'Unknown role: {value!r}')
        return cls(int(value))


class HistoryEventType(str, Enum):
    """Lifecycle event types shown in a product timeline."""
    REGISTRATION = "Registration"
    OWNERSHIP_TRANSFER = "Ownership Transfer"
    STATUS_UPDATE = "Status Update"


class ProductStatus(str, Enum):
    """Ledger-derived lifecycle state of a fingerprint."""
    UNREGISTERED = "unregistered"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"


class ProductMetadata(BaseModel):
    """Descriptive product metadata; the input to the fingerprint."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra='forbid')

    name: str = Field(..., description="Product name")
    batch: str = Field(..., description="Batch number / product ID")
    manufacture_date: Optional[str] = Field(None, alias="manufactureDate")
    expiry_date: Optional[str] = Field(None, alias="expiryDate")
    details: Optional[str] = Field(None, description="Free-form additional details")

    @field_validator('name', 'batch', mode='before')
    @classmethod
    def validate_required_text(cls, v):
        """Required fields must be non-blank text."""
        if v is None:
            raise ValueError('field is required')
        if not isinstance(v, str):
            v = str(v)
        v = v.strip()
        if not v:
            raise ValueError('field must not be blank')
        return v

    @field_validator('manufacture_date', 'expiry_date', 'details', mode='before')
    @classmethod
    def validate_optional_text(cls, v):
        """Blank optional fields are treated as absent."""
        if v is None:
            return None
        if not isinstance(v, str):
            v = str(v)
        v = v.strip()
        return v or None

    def canonical_dict(self) -> Dict[str, str]:
        """Aliased field mapping with absent fields dropped."""
        return self.model_dump(by_alias=True, exclude_none=True)


PLACEHOLDER_METADATA = ProductMetadata(
    name="Unknown Product",
    batch="N/A",
    details="Metadata unavailable in local cache; ledger record only",
)


class CacheEntry(BaseModel):
    """Durable cache record: metadata plus registration provenance."""

    fingerprint: str = Field(..., description="0x-prefixed keccak-256 fingerprint")
    metadata: ProductMetadata
    registered_by: str = Field(..., description="Submitting principal")
    registration_time: int = Field(default_factory=lambda: int(time.time()), ge=0)

    @field_validator('fingerprint')
    @classmethod
    def validate_fingerprint(cls, v):
        if not FINGERPRINT_PATTERN.match(v):
            raise ValueError('Fingerprint must be 0x-prefixed 64-character hex string')
        return v.lower()

    @field_validator('registered_by')
    @classmethod
    def validate_registered_by(cls, v):
        return normalize_address(v)


class ProductRecord(BaseModel):
    """Merged view of a product: ledger lifecycle fields plus cached metadata."""

    fingerprint: str
    metadata: ProductMetadata
    registered_by: Optional[str] = None
    registration_time: int = Field(0, ge=0)
    owner: str
    valid: bool
    metadata_placeholder: bool = False

    @property
    def status(self) -> ProductStatus:
        return ProductStatus.VERIFIED if self.valid else ProductStatus.UNVERIFIED

    @property
    def transferred(self) -> bool:
        return self.registered_by is not None and self.owner != self.registered_by

    def to_dict(self) -> Dict[str, Any]:
        """Presentation payload in the field names the dashboards use."""
        return {
            'hash': self.fingerprint,
            'productDetails': self.metadata.canonical_dict(),
            'registeredBy': self.registered_by,
            'additionTime': self.registration_time,
            'owner': self.owner,
            'isValid': self.valid,
            'status': self.status.value,
            'metadataPlaceholder': self.metadata_placeholder,
        }


class UserRole(BaseModel):
    """One mirrored role assignment."""

    address: str
    role: Role

    @field_validator('address')
    @classmethod
    def validate_address(cls, v):
        return normalize_address(v)

    def to_dict(self) -> Dict[str, Any]:
        return {'address': self.address, 'role': int(self.role), 'roleName': self.role.label}


class HistoryEvent(BaseModel):
    """Derived lifecycle event; never stored."""

    type: HistoryEventType
    timestamp: int = Field(..., ge=0)
    address: Optional[str] = Field(None, description="Registrant, for registration events")
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    status: Optional[bool] = None
    inferred: bool = False

    @model_validator(mode='after')
    def validate_payload(self):
        """Payload fields must match the event type."""
        if self.type != HistoryEventType.REGISTRATION and self.address is not None:
            raise ValueError('address is only carried by registration events')
        if self.type != HistoryEventType.OWNERSHIP_TRANSFER and (
            self.from_address is not None or self.to_address is not None
        ):
            raise ValueError('from/to addresses are only carried by ownership transfers')
        if self.type != HistoryEventType.STATUS_UPDATE and self.status is not None:
            raise ValueError('status is only carried by status updates')
        return self

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value, 'timestamp': self.timestamp}
        if self.type == HistoryEventType.REGISTRATION:
            data['address'] = self.address
        elif self.type == HistoryEventType.OWNERSHIP_TRANSFER:
            data['from'] = self.from_address
            data['to'] = self.to_address
        else:
            data['status'] = self.status
        data['inferred'] = self.inferred
        return data


class RegistryStats(BaseModel):
    """Present-state summary counts."""

    model_config = ConfigDict(populate_by_name=True)

    total_products: int = Field(0, ge=0, alias="totalProducts")
    admin_count: int = Field(0, ge=0, alias="adminCount")
    manager_count: int = Field(0, ge=0, alias="managerCount")
    user_count: int = Field(0, ge=0, alias="userCount")

    def to_dict(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)


class RegistrationReceipt(BaseModel):
    """Outcome of a single registration."""

    fingerprint: str
    metadata: ProductMetadata
    created: bool = Field(..., description="False when the ledger already held the fingerprint")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.fingerprint,
            'productDetails': self.metadata.canonical_dict(),
            'created': self.created,
        }


class BulkRegistrationResult(BaseModel):
    """Outcome of a bulk registration, including partial acceptance."""

    accepted: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    already_registered: List[str] = Field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return len(self.accepted)

    @property
    def total(self) -> int:
        return len(self.accepted) + len(self.rejected)

    @property
    def partial(self) -> bool:
        return 0 < self.accepted_count < self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'acceptedCount': self.accepted_count,
            'total': self.total,
            'partial': self.partial,
            'accepted': list(self.accepted),
            'rejected': list(self.rejected),
            'alreadyRegistered': list(self.already_registered),
        }
