"""
Entity model for the appliance configuration repository.

Every entity exposes a stable ``primary_key``. Entities are created only
through ``Repository`` factory methods; the classes here hold state and
navigation, while uniqueness, cascade and retention rules live in the
integrity, tag and retention engines.

Versioned parents (Firmware, Domain, DeploymentPolicy) share ``VersionHistory``:
an oldest-first list of retained versions plus the highest version number
ever issued, which survives pruning.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol, Union

if TYPE_CHECKING:
    from appliance_repo.blob import Blob

FEATURES_DELIMITER = ";"


class Persistable(Protocol):
    """Anything stored in the repository."""

    @property
    def primary_key(self) -> str: ...


class SyncMode(str, Enum):
    """How a domain's source configuration is kept in step with the device."""

    AUTO = "AUTO"
    MANUAL = "MANUAL"


class DeploymentPolicyType(str, Enum):
    """Format of a deployment policy source."""

    EXPORT = "EXPORT"
    XML = "XML"
    NONE = "NONE"


def normalize_features(features: Iterable[str] | None) -> tuple[str, ...]:
    """Features form a set; keep them sorted so keys are stable."""
    if not features:
        return ()
    return tuple(sorted({f for f in features if f}))


@dataclass(eq=False)
class ManagedSet:
    """A named group of devices managed together."""

    name: str
    devices: dict[str, Device] = field(default_factory=dict)

    @property
    def primary_key(self) -> str:
        return self.name

    @property
    def device_members(self) -> list[Device]:
        return list(self.devices.values())

    def __repr__(self) -> str:
        return f"ManagedSet(name={self.name!r}, members={len(self.devices)})"


@dataclass(eq=False)
class Device:
    """A managed network appliance, keyed by its serial number."""

    serial_number: str
    symbolic_name: str
    device_type: str
    model_type: str
    hostname: str
    user_id: str = ""
    password: str = ""
    hlm_port: int = 0
    gui_port: int = 0
    amp_version: str = ""
    feature_licenses: tuple[str, ...] = ()
    quiesce_timeout: int = 0
    backup_file_location: str | None = None
    backup_certificate_location: str | None = None
    managed_set: ManagedSet | None = None
    domains: dict[str, Domain] = field(default_factory=dict)

    @property
    def primary_key(self) -> str:
        return self.serial_number

    @property
    def is_managed(self) -> bool:
        return self.managed_set is not None

    def get_domain(self, name: str) -> Domain | None:
        return self.domains.get(name)

    @property
    def managed_domains(self) -> list[Domain]:
        return list(self.domains.values())

    def __repr__(self) -> str:
        return f"Device(serial_number={self.serial_number!r}, symbolic_name={self.symbolic_name!r})"


@dataclass(eq=False, kw_only=True)
class VersionHistory:
    """
    Retained versions of a versioned parent.

    ``highest_version_number`` is the largest number ever issued and never
    decreases. ``last_version_number`` is the most recently issued number;
    it equals the high-water mark until numbering wraps around.
    """

    versions: list = field(default_factory=list)
    highest_version_number: int = 0
    last_version_number: int = 0

    def get_version(self, version_number: int):
        for version in self.versions:
            if version.version_number == version_number:
                return version
        return None

    @property
    def retained_numbers(self) -> set[int]:
        return {v.version_number for v in self.versions}

    @property
    def has_versions(self) -> bool:
        return bool(self.versions)


@dataclass(eq=False, kw_only=True)
class Domain(VersionHistory):
    """An administrative domain configured on one device."""

    name: str
    device: Device
    source_url: str | None = None
    sync_mode: SyncMode = SyncMode.MANUAL
    last_modified_of_deployed_source: int = 0
    out_of_synch: bool = False
    quiesce_timeout: int = 0
    deployment_policy: DeploymentPolicy | None = None

    @property
    def primary_key(self) -> str:
        return f"{self.device.primary_key}:{self.name}"

    def __repr__(self) -> str:
        return f"Domain(key={self.primary_key!r}, versions={len(self.versions)})"


@dataclass(eq=False, kw_only=True)
class DeploymentPolicy(VersionHistory):
    """The deployment policy attached to a domain."""

    domain: Domain
    policy_name: str
    policy_domain_name: str
    policy_type: DeploymentPolicyType
    policy_url: str | None = None
    last_modified_of_deployed_source: int = 0

    @property
    def primary_key(self) -> str:
        return policy_key(self.domain, self.policy_name, self.policy_domain_name, self.policy_type)

    def __repr__(self) -> str:
        return f"DeploymentPolicy(key={self.primary_key!r}, versions={len(self.versions)})"


@dataclass(eq=False, kw_only=True)
class Firmware(VersionHistory):
    """Firmware line for one device type, model and feature set."""

    device_type: str
    model_type: str
    strict_features: tuple[str, ...] = ()
    nonstrict_features: tuple[str, ...] = ()

    @property
    def primary_key(self) -> str:
        return firmware_key(
            self.device_type, self.model_type, self.strict_features, self.nonstrict_features
        )

    def get_level(self, level: str) -> FirmwareVersion | None:
        for version in self.versions:
            if version.level == level:
                return version
        return None

    def __repr__(self) -> str:
        return f"Firmware(key={self.primary_key!r}, versions={len(self.versions)})"


@dataclass(eq=False, kw_only=True)
class Version:
    """An immutable snapshot owned by a versioned parent."""

    version_number: int
    timestamp: datetime
    blob: Blob
    user_comment: str = ""
    in_use: bool = False

    @property
    def parent(self) -> VersionedParent:
        raise NotImplementedError

    @property
    def primary_key(self) -> str:
        return f"{self.parent.primary_key}:{self.version_number}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.primary_key!r}, in_use={self.in_use})"


@dataclass(eq=False, kw_only=True, repr=False)
class DomainVersion(Version):
    domain: Domain

    @property
    def parent(self) -> Domain:
        return self.domain


@dataclass(eq=False, kw_only=True, repr=False)
class DeploymentPolicyVersion(Version):
    """Policy version; records the policy identity in effect when it was taken."""

    policy: DeploymentPolicy
    policy_name: str
    policy_domain_name: str
    policy_type: DeploymentPolicyType

    @property
    def parent(self) -> DeploymentPolicy:
        return self.policy


@dataclass(eq=False, kw_only=True, repr=False)
class FirmwareVersion(Version):
    """Firmware image at one level. The level is unique within its firmware."""

    firmware: Firmware
    level: str
    manufacture_date: datetime | None = None

    @property
    def parent(self) -> Firmware:
        return self.firmware

    @property
    def primary_key(self) -> str:
        return f"{self.firmware.primary_key}:{self.level}"


@dataclass(eq=False)
class Tag:
    """A name/value label attached to devices and domains."""

    name: str
    value: str

    @property
    def primary_key(self) -> str:
        return tag_key(self.name, self.value)

    def __repr__(self) -> str:
        return f"Tag(name={self.name!r}, value={self.value!r})"


VersionedParent = Union[Firmware, Domain, DeploymentPolicy]
AnyVersion = Union[FirmwareVersion, DomainVersion, DeploymentPolicyVersion]
TagMember = Union[Device, Domain]


def firmware_key(
    device_type: str,
    model_type: str,
    strict_features: Iterable[str] | None,
    nonstrict_features: Iterable[str] | None,
) -> str:
    strict = FEATURES_DELIMITER.join(normalize_features(strict_features))
    nonstrict = FEATURES_DELIMITER.join(normalize_features(nonstrict_features))
    return f"{device_type}:{model_type}:{strict}:{nonstrict}"


def policy_key(
    domain: Domain,
    policy_name: str,
    policy_domain_name: str,
    policy_type: DeploymentPolicyType,
) -> str:
    return f"{domain.primary_key}:{policy_name}:{policy_domain_name}:{policy_type.value}"


def tag_key(name: str, value: str) -> str:
    return f"{name}:{value}"
