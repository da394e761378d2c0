"""
Unit tests for registry schema models.
"""

import pytest
from pydantic import ValidationError

from registry.schema import (
    PLACEHOLDER_METADATA,
    BulkRegistrationResult,
    CacheEntry,
    ProductMetadata,
    ProductRecord,
    ProductStatus,
    RegistrationReceipt,
    Role,
    UserRole,
    normalize_address,
)


ADDRESS = "0x" + "a1" * 20
FP = "0x" + "ab" * 32


class TestRole:
    """Test role ordinals and parsing."""

    def test_ordinals(self):
        assert [int(r) for r in Role] == [0, 1, 2]

    def test_label(self):
        assert Role.MANAGER.label == "Manager"

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            Role.parse("superuser")


class TestNormalizeAddress:
    """Test address normalization."""

    def test_lowercases(self):
        assert normalize_address("0x" + "A1" * 20) == ADDRESS

    def test_adds_prefix(self):
        assert normalize_address(" " + "a1" * 20 + " ") == ADDRESS

    @pytest.mark.parametrize("value", ["0x1234", "0x" + "zz" * 20, 42, ""])
    def test_rejects(self, value):
        with pytest.raises(ValueError):
            normalize_address(value)


class TestProductMetadata:
    """Test product metadata validation."""

    def test_aliases_accepted(self):
        metadata = ProductMetadata(name="Widget", batch="B1", manufactureDate="2024-01-10")
        assert metadata.manufacture_date == "2024-01-10"

    def test_field_names_accepted(self):
        metadata = ProductMetadata(name="Widget", batch="B1", expiry_date="2027-01-01")
        assert metadata.canonical_dict() == {"name": "Widget", "batch": "B1", "expiryDate": "2027-01-01"}

    def test_numbers_coerced_to_text(self):
        assert ProductMetadata(name="Widget", batch=42).batch == "42"

    def test_frozen(self):
        metadata = ProductMetadata(name="Widget", batch="B1")
        with pytest.raises(ValidationError):
            metadata.name = "Other"

    def test_extra_forbidden(self):
        with pytest.raises(ValidationError):
            ProductMetadata(name="Widget", batch="B1", price="9.99")

    def test_placeholder(self):
        assert PLACEHOLDER_METADATA.name == "Unknown Product"
        assert PLACEHOLDER_METADATA.batch == "N/A"


class TestCacheEntry:
    """Test cache entry validation."""

    def test_normalizes_fingerprint_and_address(self):
        entry = CacheEntry(
            fingerprint="0x" + "AB" * 32,
            metadata=ProductMetadata(name="Widget", batch="B1"),
            registered_by="0x" + "A1" * 20,
        )

        assert entry.fingerprint == FP
        assert entry.registered_by == ADDRESS
        assert entry.registration_time > 0

    def test_rejects_bad_fingerprint(self):
        with pytest.raises(ValidationError):
            CacheEntry(
                fingerprint="0x1234",
                metadata=ProductMetadata(name="Widget", batch="B1"),
                registered_by=ADDRESS,
            )

    def test_round_trip_through_json(self):
        entry = CacheEntry(
            fingerprint=FP,
            metadata=ProductMetadata(name="Widget", batch="B1", details="blue"),
            registered_by=ADDRESS,
            registration_time=1700000000,
        )
        assert CacheEntry.model_validate(entry.model_dump(mode='json', by_alias=True)) == entry


class TestProductRecord:
    """Test merged product records."""

    def make_record(self, **kwargs):
        values = dict(
            fingerprint=FP,
            metadata=ProductMetadata(name="Widget", batch="B1"),
            registered_by=ADDRESS,
            registration_time=1700000000,
            owner=ADDRESS,
            valid=True,
        )
        values.update(kwargs)
        return ProductRecord(**values)

    def test_status(self):
        assert self.make_record().status == ProductStatus.VERIFIED
        assert self.make_record(valid=False).status == ProductStatus.UNVERIFIED

    def test_transferred(self):
        assert not self.make_record().transferred
        assert self.make_record(owner="0x" + "b2" * 20).transferred
        assert not self.make_record(registered_by=None).transferred

    def test_to_dict(self):
        assert self.make_record().to_dict() == {
            'hash': FP,
            'productDetails': {"name": "Widget", "batch": "B1"},
            'registeredBy': ADDRESS,
            'additionTime': 1700000000,
            'owner': ADDRESS,
            'isValid': True,
            'status': "verified",
            'metadataPlaceholder': False,
        }


class TestResults:
    """Test registration outcome models."""

    def test_receipt(self):
        receipt = RegistrationReceipt(fingerprint=FP, metadata=ProductMetadata(name="Widget", batch="B1"), created=False)
        assert receipt.to_dict()['created'] is False

    def test_bulk_result_counts(self):
        result = BulkRegistrationResult(accepted=["a", "b"], rejected=["c"], already_registered=["a"])

        assert result.accepted_count == 2
        assert result.total == 3
        assert result.partial

    def test_bulk_result_not_partial(self):
        assert not BulkRegistrationResult(accepted=["a"]).partial
        assert not BulkRegistrationResult(rejected=["a"]).partial

    def test_user_role(self):
        user = UserRole(address="0x" + "A1" * 20, role=Role.ADMIN)
        assert user.to_dict() == {'address': ADDRESS, 'role': 0, 'roleName': "Admin"}
