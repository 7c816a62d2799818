"""
Version numbering for versioned parents and the interchange schema version.

Each versioned parent (Firmware, Domain, DeploymentPolicy) receives version
numbers from the allocator only; callers never choose them. The highest
number ever issued is remembered on the parent and never decreases, even
after the versions carrying it have been pruned.

Design Patterns:
- Factory Pattern: create_version builds the version type matching its parent
- Value Object: SchemaVersion for the interchange document format
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from appliance_repo.exceptions import AlreadyExistsError, DatastoreError
from appliance_repo.logging import get_logger
from appliance_repo.models import (
    DeploymentPolicy,
    DeploymentPolicyVersion,
    Domain,
    DomainVersion,
    Firmware,
    FirmwareVersion,
)

if TYPE_CHECKING:
    from appliance_repo.blob import Blob
    from appliance_repo.models import AnyVersion, VersionedParent

logger = get_logger(__name__)

MAX_VERSION_NUMBER = 2**31 - 1


class SchemaVersion:
    """
    Semantic version of the interchange document format.

    Follows semver: MAJOR.MINOR.PATCH
    - MAJOR: Breaking changes, documents cannot be imported across majors
    - MINOR: Backward-compatible additions
    - PATCH: Backward-compatible fixes
    """

    def __init__(self, major: int, minor: int, patch: int = 0) -> None:
        self.major = major
        self.minor = minor
        self.patch = patch

    @classmethod
    def from_string(cls, version_str: str) -> SchemaVersion:
        """
        Parse version from string.

        Args:
            version_str: Version string (e.g., "1.2.3").

        Returns:
            SchemaVersion instance.

        Raises:
            ValueError: If the string is not a dotted version.
        """
        parts = version_str.split(".")
        if len(parts) < 2:
            msg = f"Invalid version format: {version_str}"
            raise ValueError(msg)

        major = int(parts[0])
        minor = int(parts[1])
        patch = int(parts[2]) if len(parts) > 2 else 0

        return cls(major, minor, patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __repr__(self) -> str:
        return f"SchemaVersion({self.major}, {self.minor}, {self.patch})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SchemaVersion):
            return NotImplemented
        return (self.major, self.minor, self.patch) == (other.major, other.minor, other.patch)

    def __lt__(self, other: SchemaVersion) -> bool:
        return (self.major, self.minor, self.patch) < (other.major, other.minor, other.patch)

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch))

    def is_compatible_with(self, other: SchemaVersion) -> bool:
        """Compatible means same major version."""
        return self.major == other.major


CURRENT_SCHEMA_VERSION = SchemaVersion(1, 0, 0)


class VersionAllocator:
    """
    Issues version numbers and attaches new versions to their parent.

    Numbers run upward from the parent's last issued number. Past
    ``max_version_number`` numbering wraps to 1 and skips any number still
    retained, so a wrapped number never collides with a live version.
    """

    def __init__(self, max_version_number: int = MAX_VERSION_NUMBER) -> None:
        if max_version_number < 1:
            msg = f"max_version_number must be positive, got {max_version_number}"
            raise ValueError(msg)
        self._max_version_number = max_version_number

    @property
    def max_version_number(self) -> int:
        return self._max_version_number

    def next_version_number(self, parent: VersionedParent) -> int:
        """
        Reserve the next version number for a parent.

        Raises:
            DatastoreError: If every number in range is held by a retained version.
        """
        retained = parent.retained_numbers
        if len(retained) >= self._max_version_number:
            raise DatastoreError.versions_exhausted(parent.primary_key, len(retained))

        candidate = parent.last_version_number + 1
        if candidate > self._max_version_number:
            candidate = 1
        while candidate in retained:
            candidate = candidate + 1 if candidate < self._max_version_number else 1

        if candidate <= parent.last_version_number:
            logger.info(
                "version_number_wrapped",
                parent=parent.primary_key,
                version_number=candidate,
                highest_version_number=parent.highest_version_number,
            )

        parent.last_version_number = candidate
        parent.highest_version_number = max(parent.highest_version_number, candidate)
        return candidate

    def create_version(
        self,
        parent: VersionedParent,
        blob: Blob,
        user_comment: str = "",
        timestamp: datetime | None = None,
        **attributes: Any,
    ) -> AnyVersion:
        """
        Allocate a number and append a new version to the parent's history.

        Args:
            parent: Firmware, Domain or DeploymentPolicy receiving the version.
            blob: Payload of the version.
            user_comment: Free-text comment.
            timestamp: Creation time, defaults to now (UTC).
            **attributes: Firmware only: ``level`` and ``manufacture_date``.

        Returns:
            The new version, newest at the end of ``parent.versions``.
        """
        number = self.next_version_number(parent)
        common: dict[str, Any] = {
            "version_number": number,
            "timestamp": timestamp or datetime.now(timezone.utc),
            "blob": blob,
            "user_comment": user_comment,
        }

        version: AnyVersion
        if isinstance(parent, Firmware):
            version = FirmwareVersion(
                firmware=parent,
                level=attributes["level"],
                manufacture_date=attributes.get("manufacture_date"),
                **common,
            )
        elif isinstance(parent, Domain):
            version = DomainVersion(domain=parent, **common)
        elif isinstance(parent, DeploymentPolicy):
            version = DeploymentPolicyVersion(
                policy=parent,
                policy_name=parent.policy_name,
                policy_domain_name=parent.policy_domain_name,
                policy_type=parent.policy_type,
                **common,
            )
        else:
            msg = f"Not a versioned parent: {type(parent).__name__}"
            raise TypeError(msg)

        parent.versions.append(version)
        logger.info(
            "version_created",
            parent=parent.primary_key,
            kind=type(version).__name__,
            version_number=number,
            retained=len(parent.versions),
        )
        return version

    def restore_version(self, parent: VersionedParent, version: AnyVersion) -> None:
        """
        Attach a version that already carries its number, as an import does.

        Raises:
            AlreadyExistsError: If the parent already retains that number.
            DatastoreError: If the number is out of range.
        """
        number = version.version_number
        if not 1 <= number <= self._max_version_number:
            raise DatastoreError.malformed(
                f"version number {number} of {parent.primary_key} is out of range"
            )
        if parent.get_version(number) is not None:
            raise AlreadyExistsError.for_key(type(version).__name__, version.primary_key)
        parent.versions.append(version)
        parent.highest_version_number = max(parent.highest_version_number, number)
