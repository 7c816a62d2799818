"""
Unit tests for version numbering.

Tests cover:
- Monotonic allocation and the highest-ever high-water mark
- Wraparound that skips retained numbers
- Exhaustion of the number space
- Version construction per parent type
- Interchange schema versions
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from appliance_repo.blob import Blob
from appliance_repo.exceptions import AlreadyExistsError, DatastoreError, ErrorCode
from appliance_repo.models import (
    DeploymentPolicy,
    DeploymentPolicyType,
    DeploymentPolicyVersion,
    Device,
    Domain,
    DomainVersion,
    Firmware,
    FirmwareVersion,
)
from appliance_repo.storage.versioning import (
    CURRENT_SCHEMA_VERSION,
    MAX_VERSION_NUMBER,
    SchemaVersion,
    VersionAllocator,
)


@pytest.fixture
def firmware() -> Firmware:
    return Firmware(device_type="XI52", model_type="7199")


@pytest.fixture
def domain() -> Domain:
    device = Device(
        serial_number="SN-1",
        symbolic_name="edge-1",
        device_type="XI52",
        model_type="7199",
        hostname="edge-1",
    )
    return Domain(name="default", device=device)


class TestNextVersionNumber:
    """Tests for VersionAllocator.next_version_number."""

    def test_starts_at_one(self, firmware: Firmware) -> None:
        """First number issued is 1."""
        assert VersionAllocator().next_version_number(firmware) == 1

    def test_strictly_increasing(self, firmware: Firmware) -> None:
        """Each number is greater than every number issued before."""
        allocator = VersionAllocator()
        numbers = [allocator.next_version_number(firmware) for _ in range(5)]
        assert numbers == [1, 2, 3, 4, 5]
        assert firmware.highest_version_number == 5

    def test_never_reuses_after_prune(self, domain: Domain) -> None:
        """Pruning versions does not lower the high-water mark."""
        allocator = VersionAllocator()
        for _ in range(3):
            allocator.create_version(domain, Blob(b"x"))
        domain.versions.clear()

        assert allocator.next_version_number(domain) == 4
        assert domain.highest_version_number == 4

    def test_wraps_to_one(self, domain: Domain) -> None:
        """Past the maximum numbering restarts at 1."""
        allocator = VersionAllocator(max_version_number=3)
        for _ in range(3):
            allocator.create_version(domain, Blob(b"x"))
        domain.versions[:] = domain.versions[1:]

        version = allocator.create_version(domain, Blob(b"y"))

        assert version.version_number == 1
        assert domain.highest_version_number == 3
        assert domain.last_version_number == 1

    def test_wrap_skips_retained_numbers(self, domain: Domain) -> None:
        """Wrapped numbers never collide with live versions."""
        allocator = VersionAllocator(max_version_number=4)
        for _ in range(4):
            allocator.create_version(domain, Blob(b"x"))
        # keep 1 and 3, drop 2 and 4
        domain.versions[:] = [v for v in domain.versions if v.version_number in (1, 3)]

        assert allocator.next_version_number(domain) == 2
        assert allocator.next_version_number(domain) == 4

    def test_exhausted(self, domain: Domain) -> None:
        """A full number space raises a datastore error without side effects."""
        allocator = VersionAllocator(max_version_number=2)
        allocator.create_version(domain, Blob(b"a"))
        allocator.create_version(domain, Blob(b"b"))

        with pytest.raises(DatastoreError) as exc_info:
            allocator.next_version_number(domain)

        assert exc_info.value.error_code == ErrorCode.DATASTORE_VERSIONS_EXHAUSTED
        assert domain.last_version_number == 2
        assert len(domain.versions) == 2

    def test_default_maximum(self) -> None:
        """Default range is a signed 32-bit integer."""
        assert VersionAllocator().max_version_number == MAX_VERSION_NUMBER == 2**31 - 1

    def test_invalid_maximum(self) -> None:
        """A non-positive maximum is rejected."""
        with pytest.raises(ValueError):
            VersionAllocator(max_version_number=0)


class TestCreateVersion:
    """Tests for VersionAllocator.create_version."""

    def test_firmware_version(self, firmware: Firmware) -> None:
        """Firmware versions carry level and manufacture date."""
        made = datetime(2024, 1, 2, tzinfo=timezone.utc)
        version = VersionAllocator().create_version(
            firmware, Blob(b"img"), "first", level="7.0.0.1", manufacture_date=made
        )

        assert isinstance(version, FirmwareVersion)
        assert version.level == "7.0.0.1"
        assert version.manufacture_date == made
        assert version.user_comment == "first"
        assert firmware.versions == [version]

    def test_domain_version_appends_oldest_first(self, domain: Domain) -> None:
        """New versions go to the end of the history."""
        allocator = VersionAllocator()
        first = allocator.create_version(domain, Blob(b"1"))
        second = allocator.create_version(domain, Blob(b"2"))

        assert isinstance(first, DomainVersion)
        assert domain.versions == [first, second]

    def test_policy_version_snapshots_identity(self, domain: Domain) -> None:
        """Policy versions copy the policy identity at creation time."""
        policy = DeploymentPolicy(
            domain=domain,
            policy_name="prod",
            policy_domain_name="default",
            policy_type=DeploymentPolicyType.EXPORT,
        )
        version = VersionAllocator().create_version(policy, Blob(b"p"))

        assert isinstance(version, DeploymentPolicyVersion)
        assert version.policy_name == "prod"
        assert version.policy_type == DeploymentPolicyType.EXPORT

    def test_timestamp_defaults_to_now(self, domain: Domain) -> None:
        """Timestamps default to the current UTC time."""
        before = datetime.now(timezone.utc)
        version = VersionAllocator().create_version(domain, Blob(b"x"))
        assert version.timestamp >= before
        assert version.timestamp.tzinfo is not None

    def test_not_a_parent(self) -> None:
        """Only versioned parents can receive versions."""
        with pytest.raises((TypeError, AttributeError)):
            VersionAllocator().create_version(object(), Blob(b"x"))  # type: ignore[arg-type]


class TestRestoreVersion:
    """Tests for VersionAllocator.restore_version."""

    def test_restore_raises_high_water_mark(self, domain: Domain) -> None:
        """Restored numbers lift the high-water mark."""
        version = DomainVersion(
            domain=domain, version_number=7, timestamp=datetime.now(timezone.utc), blob=Blob(b"")
        )
        VersionAllocator().restore_version(domain, version)
        assert domain.highest_version_number == 7

    def test_restore_duplicate_number(self, domain: Domain) -> None:
        """A retained number cannot be restored twice."""
        allocator = VersionAllocator()
        allocator.create_version(domain, Blob(b""))
        duplicate = DomainVersion(
            domain=domain, version_number=1, timestamp=datetime.now(timezone.utc), blob=Blob(b"")
        )
        with pytest.raises(AlreadyExistsError):
            allocator.restore_version(domain, duplicate)

    def test_restore_out_of_range(self, domain: Domain) -> None:
        """Numbers outside the allocator range are malformed."""
        version = DomainVersion(
            domain=domain, version_number=0, timestamp=datetime.now(timezone.utc), blob=Blob(b"")
        )
        with pytest.raises(DatastoreError):
            VersionAllocator().restore_version(domain, version)


class TestSchemaVersion:
    """Tests for SchemaVersion."""

    def test_from_string(self) -> None:
        """Dotted versions parse, patch optional."""
        assert SchemaVersion.from_string("1.2.3") == SchemaVersion(1, 2, 3)
        assert SchemaVersion.from_string("2.0") == SchemaVersion(2, 0, 0)

    def test_invalid_string(self) -> None:
        """A single component is rejected."""
        with pytest.raises(ValueError):
            SchemaVersion.from_string("1")

    def test_ordering(self) -> None:
        """Versions order by major, minor, patch."""
        assert SchemaVersion(1, 0, 0) < SchemaVersion(1, 1, 0) < SchemaVersion(2, 0, 0)

    def test_compatibility(self) -> None:
        """Same major is compatible."""
        assert SchemaVersion(1, 9).is_compatible_with(CURRENT_SCHEMA_VERSION)
        assert not SchemaVersion(2, 0).is_compatible_with(CURRENT_SCHEMA_VERSION)

    def test_str(self) -> None:
        """String form is dotted."""
        assert str(CURRENT_SCHEMA_VERSION) == "1.0.0"
