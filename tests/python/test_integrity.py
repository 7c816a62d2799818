"""
Unit tests for the integrity engine.

Tests cover:
- Uniqueness on registration
- Child-first deletion of versioned parents
- Device cascade delete
- Managed set membership rules
- Versioned parents detached from the graph
- Tag cleanup on delete
"""

from __future__ import annotations

import pytest

from appliance_repo.blob import Blob
from appliance_repo.exceptions import AlreadyExistsError, NotEmptyError, NotExistError
from appliance_repo.integrity import IntegrityEngine
from appliance_repo.models import (
    DeploymentPolicy,
    DeploymentPolicyType,
    Device,
    Domain,
    Firmware,
    ManagedSet,
    Tag,
)
from appliance_repo.state import RepositoryState
from appliance_repo.storage.versioning import VersionAllocator


def _device(serial: str, name: str | None = None) -> Device:
    return Device(
        serial_number=serial,
        symbolic_name=name or f"name-{serial}",
        device_type="XI52",
        model_type="7199",
        hostname=f"{serial}.example.net",
    )


@pytest.fixture
def state() -> RepositoryState:
    return RepositoryState()


@pytest.fixture
def engine(state: RepositoryState) -> IntegrityEngine:
    return IntegrityEngine(state)


@pytest.fixture
def device(engine: IntegrityEngine) -> Device:
    device = _device("SN-1")
    engine.register_device(device)
    return device


@pytest.fixture
def domain(engine: IntegrityEngine, device: Device) -> Domain:
    domain = Domain(name="default", device=device)
    engine.register_domain(domain)
    return domain


class TestRegistration:
    """Tests for uniqueness checks on create."""

    def test_duplicate_device_serial(self, engine: IntegrityEngine, device: Device) -> None:
        """A second device with the same serial is rejected."""
        with pytest.raises(AlreadyExistsError):
            engine.register_device(_device("SN-1", "other"))
        assert len(engine.state.devices) == 1

    def test_duplicate_symbolic_name(self, engine: IntegrityEngine, device: Device) -> None:
        """Symbolic names are unique across devices."""
        with pytest.raises(AlreadyExistsError):
            engine.register_device(_device("SN-2", device.symbolic_name))

    def test_symbolic_name_owner_may_keep_name(self, engine: IntegrityEngine, device: Device) -> None:
        """Re-checking a device's own name passes."""
        engine.check_symbolic_name(device.symbolic_name, owner=device)

    def test_duplicate_managed_set(self, engine: IntegrityEngine) -> None:
        """Managed set names are unique."""
        engine.register_managed_set(ManagedSet(name="Set1"))
        with pytest.raises(AlreadyExistsError):
            engine.register_managed_set(ManagedSet(name="Set1"))
        assert len(engine.state.managed_sets) == 1

    def test_duplicate_domain(self, engine: IntegrityEngine, domain: Domain) -> None:
        """Domain names are unique per device."""
        with pytest.raises(AlreadyExistsError):
            engine.register_domain(Domain(name="default", device=domain.device))

    def test_domain_needs_registered_device(self, engine: IntegrityEngine) -> None:
        """Domains cannot hang off an unknown device."""
        with pytest.raises(NotExistError):
            engine.register_domain(Domain(name="d", device=_device("SN-X")))

    def test_duplicate_firmware(self, engine: IntegrityEngine) -> None:
        """Firmware keys ignore feature order."""
        engine.register_firmware(Firmware(device_type="XI52", model_type="7199", strict_features=("a", "b")))
        with pytest.raises(AlreadyExistsError):
            engine.register_firmware(
                Firmware(device_type="XI52", model_type="7199", strict_features=("a", "b"))
            )

    def test_firmware_level_unique(self, engine: IntegrityEngine) -> None:
        """A level appears once per firmware."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        VersionAllocator().create_version(firmware, Blob(b""), level="7.0.0.1")
        with pytest.raises(AlreadyExistsError):
            engine.check_firmware_level(firmware, "7.0.0.1")
        engine.check_firmware_level(firmware, "7.0.0.2")

    def test_duplicate_tag(self, engine: IntegrityEngine) -> None:
        """Tag name/value pairs are unique."""
        engine.register_tag(Tag(name="site", value="east"))
        with pytest.raises(AlreadyExistsError):
            engine.register_tag(Tag(name="site", value="east"))

    def test_policy_repointed(self, engine: IntegrityEngine, domain: Domain) -> None:
        """A second policy re-points the existing one and keeps its history."""
        first = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        VersionAllocator().create_version(first, Blob(b"p"))

        second = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="b",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.XML,
            )
        )

        assert second is first
        assert domain.deployment_policy is first
        assert first.policy_name == "b"
        assert len(first.versions) == 1

    def test_identical_policy_rejected(self, engine: IntegrityEngine, domain: Domain) -> None:
        """Re-creating the same policy identity is a duplicate."""
        kwargs = {
            "domain": domain,
            "policy_name": "a",
            "policy_domain_name": "default",
            "policy_type": DeploymentPolicyType.EXPORT,
        }
        engine.register_deployment_policy(DeploymentPolicy(**kwargs))
        with pytest.raises(AlreadyExistsError):
            engine.register_deployment_policy(DeploymentPolicy(**kwargs))


class TestVersionedParentDelete:
    """Tests for child-first deletion."""

    def test_empty_firmware_deleted(self, engine: IntegrityEngine) -> None:
        """A firmware without versions can be deleted."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        engine.register_firmware(firmware)
        engine.delete(firmware)
        assert engine.state.firmwares == {}

    def test_firmware_with_versions_not_empty(self, engine: IntegrityEngine) -> None:
        """A firmware with versions stays put."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        engine.register_firmware(firmware)
        VersionAllocator().create_version(firmware, Blob(b""), level="1")

        with pytest.raises(NotEmptyError):
            engine.delete(firmware)

        assert engine.state.firmwares[firmware.primary_key] is firmware
        assert len(firmware.versions) == 1

    def test_remove_version_then_delete(self, engine: IntegrityEngine) -> None:
        """Deleting versions first unblocks the parent."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        engine.register_firmware(firmware)
        version = VersionAllocator().create_version(firmware, Blob(b""), level="1")

        engine.remove_version(version)
        engine.delete(firmware)

        assert engine.state.firmwares == {}

    def test_remove_detached_version(self, engine: IntegrityEngine) -> None:
        """Removing a version twice reports NotExist."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        version = VersionAllocator().create_version(firmware, Blob(b""), level="1")
        engine.remove_version(version)

        with pytest.raises(NotExistError):
            engine.remove_version(version)

    def test_domain_with_versions_not_empty(self, engine: IntegrityEngine, domain: Domain) -> None:
        """A domain with versions cannot be deleted."""
        VersionAllocator().create_version(domain, Blob(b""))
        with pytest.raises(NotEmptyError):
            engine.delete(domain)
        assert domain.device.get_domain("default") is domain

    def test_domain_policy_versions_block(self, engine: IntegrityEngine, domain: Domain) -> None:
        """Policy versions also block the domain delete."""
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        VersionAllocator().create_version(policy, Blob(b""))

        with pytest.raises(NotEmptyError):
            engine.delete(domain)

    def test_domain_with_empty_policy_deleted(self, engine: IntegrityEngine, domain: Domain) -> None:
        """An empty policy goes with its domain."""
        engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.NONE,
            )
        )
        engine.delete(domain)
        assert domain.device.domains == {}

    def test_policy_delete_rules(self, engine: IntegrityEngine, domain: Domain) -> None:
        """Policies follow the same child-first rule."""
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        version = VersionAllocator().create_version(policy, Blob(b""))
        with pytest.raises(NotEmptyError):
            engine.delete(policy)

        engine.delete(version)
        engine.delete(policy)
        assert domain.deployment_policy is None


class TestDeviceCascade:
    """Tests for device deletion."""

    def test_cascade_removes_everything(
        self, engine: IntegrityEngine, state: RepositoryState, device: Device, domain: Domain
    ) -> None:
        """Deleting a device removes domains, policies, versions, membership and tags."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.add_device_to_managed_set(managed_set, device)
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        allocator = VersionAllocator()
        allocator.create_version(domain, Blob(b""))
        allocator.create_version(policy, Blob(b""))
        tag = Tag(name="site", value="east")
        engine.register_tag(tag)
        state.tag_index.add(tag, device)
        state.tag_index.add(tag, domain)

        engine.delete(device)

        assert state.devices == {}
        assert managed_set.devices == {}
        assert device.managed_set is None
        assert device.domains == {}
        assert domain.versions == []
        assert policy.versions == []
        assert not state.tag_index.is_tagged(tag)
        assert state.tags[tag.primary_key] is tag

    def test_delete_unknown_device(self, engine: IntegrityEngine) -> None:
        """Deleting a device not in the graph reports NotExist."""
        with pytest.raises(NotExistError):
            engine.delete(_device("SN-9"))


class TestManagedSets:
    """Tests for managed set membership."""

    def test_add_and_remove(self, engine: IntegrityEngine, device: Device) -> None:
        """Removing a device from its set keeps the device."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.add_device_to_managed_set(managed_set, device)
        assert device.managed_set is managed_set

        engine.remove_device_from_managed_set(managed_set, device)

        assert device.managed_set is None
        assert engine.state.devices["SN-1"] is device

    def test_add_same_set_is_noop(self, engine: IntegrityEngine, device: Device) -> None:
        """Re-adding to the same set changes nothing."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.add_device_to_managed_set(managed_set, device)
        engine.add_device_to_managed_set(managed_set, device)
        assert len(managed_set.devices) == 1

    def test_device_in_one_set_only(self, engine: IntegrityEngine, device: Device) -> None:
        """A managed device cannot join a second set."""
        first, second = ManagedSet(name="A"), ManagedSet(name="B")
        engine.register_managed_set(first)
        engine.register_managed_set(second)
        engine.add_device_to_managed_set(first, device)

        with pytest.raises(AlreadyExistsError):
            engine.add_device_to_managed_set(second, device)
        assert second.devices == {}

    def test_remove_non_member(self, engine: IntegrityEngine, device: Device) -> None:
        """Removing a non-member reports NotExist."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        with pytest.raises(NotExistError):
            engine.remove_device_from_managed_set(managed_set, device)

    def test_delete_non_empty_set(self, engine: IntegrityEngine, device: Device) -> None:
        """A set with members cannot be deleted."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.add_device_to_managed_set(managed_set, device)

        with pytest.raises(NotEmptyError):
            engine.delete(managed_set)
        assert "Set1" in engine.state.managed_sets

    def test_delete_empty_set(self, engine: IntegrityEngine, device: Device) -> None:
        """An emptied set is deleted and its former device is unmanaged."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.add_device_to_managed_set(managed_set, device)
        engine.remove_device_from_managed_set(managed_set, device)

        engine.delete(managed_set)

        assert engine.state.managed_sets == {}
        assert engine.state.devices["SN-1"].is_managed is False

    def test_add_to_deleted_set(self, engine: IntegrityEngine, device: Device) -> None:
        """A deleted set takes no members and the device stays unmanaged."""
        managed_set = ManagedSet(name="Set1")
        engine.register_managed_set(managed_set)
        engine.delete(managed_set)

        with pytest.raises(NotExistError):
            engine.add_device_to_managed_set(managed_set, device)
        assert device.managed_set is None
        assert managed_set.devices == {}

    def test_add_to_unregistered_set(self, engine: IntegrityEngine, device: Device) -> None:
        """A set that was never registered takes no members."""
        with pytest.raises(NotExistError):
            engine.add_device_to_managed_set(ManagedSet(name="Ghost"), device)
        assert device.is_managed is False


class TestAttachment:
    """Tests for versioned parents that left the graph."""

    def test_registered_parents_attached(self, engine: IntegrityEngine, domain: Domain) -> None:
        """Live firmware, domains and policies pass the check."""
        firmware = Firmware(device_type="XI52", model_type="7199")
        engine.register_firmware(firmware)
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )

        engine.require_attached(firmware)
        engine.require_attached(domain)
        engine.require_attached(policy)

    def test_deleted_firmware(self, engine: IntegrityEngine) -> None:
        firmware = Firmware(device_type="XI52", model_type="7199")
        engine.register_firmware(firmware)
        engine.delete(firmware)

        with pytest.raises(NotExistError):
            engine.require_attached(firmware)

    def test_deleted_domain(self, engine: IntegrityEngine, domain: Domain) -> None:
        engine.delete(domain)
        with pytest.raises(NotExistError):
            engine.require_attached(domain)

    def test_domain_of_deleted_device(
        self, engine: IntegrityEngine, device: Device, domain: Domain
    ) -> None:
        """Domains go with their device."""
        engine.delete(device)
        with pytest.raises(NotExistError):
            engine.require_attached(domain)

    def test_deleted_policy(self, engine: IntegrityEngine, domain: Domain) -> None:
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        engine.delete(policy)

        with pytest.raises(NotExistError):
            engine.require_attached(policy)

    def test_policy_of_deleted_domain(self, engine: IntegrityEngine, domain: Domain) -> None:
        """A policy dropped with its domain is detached."""
        policy = engine.register_deployment_policy(
            DeploymentPolicy(
                domain=domain,
                policy_name="a",
                policy_domain_name="default",
                policy_type=DeploymentPolicyType.EXPORT,
            )
        )
        engine.delete(domain)

        with pytest.raises(NotExistError):
            engine.require_attached(policy)

    def test_policy_on_deleted_domain_rejected(
        self, engine: IntegrityEngine, domain: Domain
    ) -> None:
        """A deleted domain cannot be given a policy."""
        engine.delete(domain)
        with pytest.raises(NotExistError):
            engine.register_deployment_policy(
                DeploymentPolicy(
                    domain=domain,
                    policy_name="a",
                    policy_domain_name="default",
                    policy_type=DeploymentPolicyType.EXPORT,
                )
            )
        assert domain.deployment_policy is None


class TestTagDelete:
    """Tests for tag removal rules."""

    def test_domain_delete_removes_tags(
        self, engine: IntegrityEngine, state: RepositoryState, domain: Domain
    ) -> None:
        """Deleting a domain drops its tag associations."""
        tag = Tag(name="tier", value="gold")
        engine.register_tag(tag)
        state.tag_index.add(tag, domain)

        engine.delete(domain)

        assert state.tag_index.domain_members(tag) == []

    def test_delete_tag(self, engine: IntegrityEngine, state: RepositoryState, device: Device) -> None:
        """Deleting a tag keeps its former members."""
        tag = Tag(name="tier", value="gold")
        engine.register_tag(tag)
        state.tag_index.add(tag, device)

        engine.delete(tag)

        assert state.tags == {}
        assert state.tag_index.tags_of(device) == []
        assert state.devices["SN-1"] is device

    def test_remove_tags(self, engine: IntegrityEngine, state: RepositoryState, device: Device) -> None:
        """remove_tags clears a member."""
        for value in ("a", "b"):
            tag = Tag(name="x", value=value)
            engine.register_tag(tag)
            state.tag_index.add(tag, device)

        assert engine.remove_tags(device) == 2

    def test_unknown_entity(self, engine: IntegrityEngine) -> None:
        """Non-entities cannot be deleted."""
        with pytest.raises(TypeError):
            engine.delete("not an entity")
