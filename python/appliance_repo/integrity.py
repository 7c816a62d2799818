"""
Referential integrity and cascade rules for the entity graph.

Creation, delete and membership changes all go through ``IntegrityEngine``
so the rules live in one place:

- Primary keys are unique per entity type; a device symbolic name is
  unique across devices, a firmware level within its firmware.
- A versioned parent (Firmware, Domain, DeploymentPolicy) is deleted only
  when it owns no versions; callers delete versions first.
- Deleting a Device detaches it from its managed set, deletes its domains
  together with their policies and versions, and removes its tags.
- Deleting a ManagedSet requires it to be empty; its former devices are
  left unmanaged, never deleted.
- Deleting a Device or Domain removes its tag associations.

Every check runs before any mutation, so a rejected operation leaves the
graph untouched.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from appliance_repo.exceptions import AlreadyExistsError, NotEmptyError, NotExistError
from appliance_repo.logging import get_logger
from appliance_repo.models import (
    DeploymentPolicy,
    Device,
    Domain,
    Firmware,
    ManagedSet,
    Tag,
    Version,
)

if TYPE_CHECKING:
    from appliance_repo.models import AnyVersion, TagMember, VersionedParent
    from appliance_repo.state import RepositoryState

logger = get_logger(__name__)


class IntegrityEngine:
    """Applies create, delete and membership rules to a ``RepositoryState``."""

    def __init__(self, state: RepositoryState) -> None:
        self._state = state

    @property
    def state(self) -> RepositoryState:
        return self._state

    # =========================================================================
    # Registration
    # =========================================================================

    def register_device(self, device: Device) -> None:
        """
        Add a new device to the graph.

        Raises:
            AlreadyExistsError: If the serial number or symbolic name is taken.
        """
        if device.primary_key in self._state.devices:
            raise AlreadyExistsError.for_key("Device", device.primary_key)
        self.check_symbolic_name(device.symbolic_name)
        self._state.devices[device.primary_key] = device
        logger.info(
            "device_created",
            serial_number=device.serial_number,
            symbolic_name=device.symbolic_name,
            device_type=device.device_type,
        )

    def check_symbolic_name(self, symbolic_name: str, owner: Device | None = None) -> None:
        existing = self._state.device_by_name(symbolic_name)
        if existing is not None and existing is not owner:
            raise AlreadyExistsError.for_attribute("Device", "symbolic_name", symbolic_name)

    def register_managed_set(self, managed_set: ManagedSet) -> None:
        if managed_set.primary_key in self._state.managed_sets:
            raise AlreadyExistsError.for_key("ManagedSet", managed_set.primary_key)
        self._state.managed_sets[managed_set.primary_key] = managed_set
        logger.info("managed_set_created", managed_set=managed_set.primary_key)

    def register_domain(self, domain: Domain) -> None:
        device = domain.device
        if self._state.devices.get(device.primary_key) is not device:
            raise NotExistError.not_found("Device", device.primary_key)
        if domain.name in device.domains:
            raise AlreadyExistsError.for_key("Domain", domain.primary_key)
        device.domains[domain.name] = domain
        logger.info("domain_created", domain=domain.primary_key)

    def register_deployment_policy(self, policy: DeploymentPolicy) -> DeploymentPolicy:
        """
        Attach a policy to its domain.

        A domain holds one policy. If it already has one with a different
        key, the existing policy takes the new identity and keeps its
        version history; the existing policy is returned.

        Raises:
            AlreadyExistsError: If the domain's policy already has this key.
            NotExistError: If the domain is no longer in the graph.
        """
        domain = policy.domain
        self.require_attached(domain)
        current = domain.deployment_policy
        if current is None:
            domain.deployment_policy = policy
            logger.info("deployment_policy_created", policy=policy.primary_key)
            return policy
        if current.primary_key == policy.primary_key:
            raise AlreadyExistsError.for_key("DeploymentPolicy", policy.primary_key)
        previous_key = current.primary_key
        current.policy_name = policy.policy_name
        current.policy_domain_name = policy.policy_domain_name
        current.policy_type = policy.policy_type
        current.policy_url = policy.policy_url
        logger.info(
            "deployment_policy_repointed",
            previous=previous_key,
            policy=current.primary_key,
            versions=len(current.versions),
        )
        return current

    def register_firmware(self, firmware: Firmware) -> None:
        if firmware.primary_key in self._state.firmwares:
            raise AlreadyExistsError.for_key("Firmware", firmware.primary_key)
        self._state.firmwares[firmware.primary_key] = firmware
        logger.info("firmware_created", firmware=firmware.primary_key)

    def check_firmware_level(self, firmware: Firmware, level: str) -> None:
        if firmware.get_level(level) is not None:
            raise AlreadyExistsError.for_key("FirmwareVersion", f"{firmware.primary_key}:{level}")

    def register_tag(self, tag: Tag) -> None:
        if tag.primary_key in self._state.tags:
            raise AlreadyExistsError.for_key("Tag", tag.primary_key)
        self._state.tags[tag.primary_key] = tag
        logger.info("tag_created", tag=tag.primary_key)

    def delete(self, entity: Any) -> None:
        """
        Delete any repository entity, enforcing its integrity rules.

        Raises:
            NotEmptyError: If the entity still owns children that block deletion.
            NotExistError: If the entity is not in the repository.
            TypeError: If the object is not a repository entity.
        """
        if isinstance(entity, Version):
            self.remove_version(entity)  # type: ignore[arg-type]
        elif isinstance(entity, Device):
            self.delete_device(entity)
        elif isinstance(entity, Domain):
            self.delete_domain(entity)
        elif isinstance(entity, DeploymentPolicy):
            self.delete_deployment_policy(entity)
        elif isinstance(entity, Firmware):
            self.delete_firmware(entity)
        elif isinstance(entity, ManagedSet):
            self.delete_managed_set(entity)
        elif isinstance(entity, Tag):
            self.delete_tag(entity)
        else:
            msg = f"Not a repository entity: {type(entity).__name__}"
            raise TypeError(msg)

    # =========================================================================
    # Versions
    # =========================================================================

    def remove_version(self, version: AnyVersion) -> None:
        """
        Detach a version from its parent.

        Raises:
            NotExistError: If the version is not attached to its parent.
        """
        parent = version.parent
        for index, candidate in enumerate(parent.versions):
            if candidate is version:
                del parent.versions[index]
                logger.info(
                    "version_deleted",
                    parent=parent.primary_key,
                    version_number=version.version_number,
                )
                return
        raise NotExistError.not_attached(type(version).__name__, parent.primary_key)

    # =========================================================================
    # Versioned parents
    # =========================================================================

    def require_attached(self, parent: VersionedParent) -> None:
        """
        Check that a versioned parent is still reachable from the graph.

        A domain needs its device registered and itself listed on it; a
        policy additionally needs to be its domain's current policy.

        Raises:
            NotExistError: If the parent or one of its owners was deleted.
        """
        if isinstance(parent, Firmware):
            if self._state.firmwares.get(parent.primary_key) is not parent:
                raise NotExistError.not_found("Firmware", parent.primary_key)
            return
        if isinstance(parent, DeploymentPolicy):
            if parent.domain.deployment_policy is not parent:
                raise NotExistError.not_attached("DeploymentPolicy", parent.domain.primary_key)
            parent = parent.domain
        device = parent.device
        if self._state.devices.get(device.primary_key) is not device:
            raise NotExistError.not_found("Device", device.primary_key)
        if device.domains.get(parent.name) is not parent:
            raise NotExistError.not_attached("Domain", device.primary_key)

    def delete_firmware(self, firmware: Firmware) -> None:
        key = firmware.primary_key
        if self._state.firmwares.get(key) is not firmware:
            raise NotExistError.not_found("Firmware", key)
        if firmware.has_versions:
            raise NotEmptyError.has_children("Firmware", key, "versions", len(firmware.versions))
        del self._state.firmwares[key]
        logger.info("firmware_deleted", firmware=key)

    def delete_deployment_policy(self, policy: DeploymentPolicy) -> None:
        domain = policy.domain
        if domain.deployment_policy is not policy:
            raise NotExistError.not_attached("DeploymentPolicy", domain.primary_key)
        if policy.has_versions:
            raise NotEmptyError.has_children(
                "DeploymentPolicy", policy.primary_key, "versions", len(policy.versions)
            )
        domain.deployment_policy = None
        logger.info("deployment_policy_deleted", policy=policy.primary_key)

    def delete_domain(self, domain: Domain) -> None:
        """
        Delete a domain that owns no versions.

        An empty deployment policy is deleted with it; a policy that still
        carries versions blocks the delete.
        """
        device = domain.device
        if device.domains.get(domain.name) is not domain:
            raise NotExistError.not_attached("Domain", device.primary_key)
        if domain.has_versions:
            raise NotEmptyError.has_children(
                "Domain", domain.primary_key, "versions", len(domain.versions)
            )
        policy = domain.deployment_policy
        if policy is not None and policy.has_versions:
            raise NotEmptyError.has_children(
                "Domain", domain.primary_key, "deployment policy versions", len(policy.versions)
            )
        self._drop_domain(domain)

    def _drop_domain(self, domain: Domain) -> None:
        policy = domain.deployment_policy
        if policy is not None:
            policy.versions.clear()
            domain.deployment_policy = None
        domain.versions.clear()
        self._state.tag_index.remove_member(domain)
        del domain.device.domains[domain.name]
        logger.info("domain_deleted", domain=domain.primary_key)

    # =========================================================================
    # Devices and managed sets
    # =========================================================================

    def delete_device(self, device: Device) -> None:
        """Delete a device together with everything it owns."""
        key = device.primary_key
        if self._state.devices.get(key) is not device:
            raise NotExistError.not_found("Device", key)

        if device.managed_set is not None:
            self.remove_device_from_managed_set(device.managed_set, device)

        domain_count = len(device.domains)
        for domain in list(device.domains.values()):
            self._drop_domain(domain)

        tag_count = self._state.tag_index.remove_member(device)
        del self._state.devices[key]
        logger.info(
            "device_deleted",
            serial_number=key,
            domains_deleted=domain_count,
            tags_removed=tag_count,
        )

    def delete_managed_set(self, managed_set: ManagedSet) -> None:
        key = managed_set.primary_key
        if self._state.managed_sets.get(key) is not managed_set:
            raise NotExistError.not_found("ManagedSet", key)
        for device in managed_set.devices.values():
            for domain in device.domains.values():
                policy = domain.deployment_policy
                if policy is not None and policy.has_versions:
                    raise NotEmptyError.has_children(
                        "ManagedSet", key, "deployment policy versions", len(policy.versions)
                    )
        if managed_set.devices:
            raise NotEmptyError.has_children(
                "ManagedSet", key, "devices", len(managed_set.devices)
            )
        del self._state.managed_sets[key]
        logger.info("managed_set_deleted", managed_set=key)

    def add_device_to_managed_set(self, managed_set: ManagedSet, device: Device) -> None:
        """
        Make a device a member of a managed set.

        Adding a device to the set it already belongs to is a no-op.

        Raises:
            AlreadyExistsError: If the device belongs to a different set.
            NotExistError: If the managed set is not in the graph.
        """
        if self._state.managed_sets.get(managed_set.primary_key) is not managed_set:
            raise NotExistError.not_found("ManagedSet", managed_set.primary_key)
        if device.managed_set is managed_set:
            return
        if device.managed_set is not None:
            raise AlreadyExistsError.for_attribute(
                "Device", "managed_set", device.managed_set.primary_key
            )
        managed_set.devices[device.primary_key] = device
        device.managed_set = managed_set
        logger.info(
            "device_added_to_managed_set",
            managed_set=managed_set.primary_key,
            serial_number=device.primary_key,
        )

    def remove_device_from_managed_set(self, managed_set: ManagedSet, device: Device) -> None:
        """
        Detach a device from a managed set; the device itself is kept.

        Raises:
            NotExistError: If the device is not a member of the set.
        """
        if managed_set.devices.get(device.primary_key) is not device:
            raise NotExistError.not_attached(
                f"Device {device.primary_key}", f"ManagedSet {managed_set.primary_key}"
            )
        del managed_set.devices[device.primary_key]
        device.managed_set = None
        logger.info(
            "device_removed_from_managed_set",
            managed_set=managed_set.primary_key,
            serial_number=device.primary_key,
        )

    # =========================================================================
    # Tags
    # =========================================================================

    def delete_tag(self, tag: Tag) -> None:
        key = tag.primary_key
        if self._state.tags.get(key) is not tag:
            raise NotExistError.not_found("Tag", key)
        self._state.tag_index.forget_tag(tag)
        del self._state.tags[key]
        logger.info("tag_deleted", tag=key)

    def remove_tags(self, member: TagMember) -> int:
        """Remove every tag association of a device or domain."""
        return self._state.tag_index.remove_member(member)
