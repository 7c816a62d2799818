"""
Repository facade.

``Repository`` is the single entry point for callers: it creates, looks up
and deletes every entity, routes each change through the integrity engine
and the retention policy, and commits through the concurrency controller.

Typical use:

    repo = open_repository(Credential(user="admin"), backend=MemoryBackend())
    firmware = repo.create_firmware("XI52", "7199")
    repo.create_firmware_version(firmware, Blob.from_bytes(image), level="7.0.0.1")
    repo.save()
    repo.shutdown()

Operations are valid only between ``startup()`` and ``shutdown()``; outside
that bracket they raise ``DatastoreError``. All operations on one handle
are serialized by a reentrant lock.
"""

from __future__ import annotations

import threading
from typing import IO, TYPE_CHECKING, Any

from appliance_repo.auth import REPOSITORY_DIRECTORY, AllowAllAuthenticator
from appliance_repo.concurrency import CommitController
from appliance_repo.config import Config, get_config
from appliance_repo.exceptions import (
    AlreadyExistsError,
    AuthenticationError,
    DatastoreError,
    NotExistError,
)
from appliance_repo.integrity import IntegrityEngine
from appliance_repo.logging import get_logger, with_context
from appliance_repo.models import (
    DeploymentPolicy,
    DeploymentPolicyType,
    Device,
    Domain,
    Firmware,
    ManagedSet,
    SyncMode,
    Tag,
    firmware_key,
    normalize_features,
    tag_key,
)
from appliance_repo.state import RepositoryState
from appliance_repo.storage import exchange
from appliance_repo.storage.backend import FileBackend
from appliance_repo.storage.retention import RetentionPolicy
from appliance_repo.storage.versioning import VersionAllocator

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from appliance_repo.auth import Authenticator, Credential
    from appliance_repo.blob import Blob
    from appliance_repo.models import (
        AnyVersion,
        DeploymentPolicyVersion,
        DomainVersion,
        FirmwareVersion,
        TagMember,
        VersionedParent,
    )
    from appliance_repo.storage.backend import StorageBackend
    from appliance_repo.storage.retention import RetentionObserver

logger = get_logger(__name__)

DEVICE_UPDATABLE_FIELDS = frozenset(
    {
        "symbolic_name",
        "device_type",
        "model_type",
        "hostname",
        "user_id",
        "password",
        "hlm_port",
        "gui_port",
        "amp_version",
        "feature_licenses",
        "quiesce_timeout",
        "backup_file_location",
        "backup_certificate_location",
    }
)

DOMAIN_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "source_url",
        "sync_mode",
        "last_modified_of_deployed_source",
        "out_of_synch",
        "quiesce_timeout",
    }
)


class Repository:
    """Versioned configuration repository for a fleet of appliances."""

    def __init__(
        self,
        backend: StorageBackend,
        config: Config | None = None,
        allocator: VersionAllocator | None = None,
        observers: Sequence[RetentionObserver] | None = None,
    ) -> None:
        """
        Initialize an unstarted repository.

        Args:
            backend: Durable store for the graph and its generation counter.
            config: Settings, defaults to the process configuration.
            allocator: Version number allocator.
            observers: Retention event observers.
        """
        self._backend = backend
        self._config = config or get_config()
        self._lock = threading.RLock()
        self._controller = CommitController(backend)
        self._allocator = allocator or VersionAllocator()
        self._retention = RetentionPolicy(observers=observers)
        self._state: RepositoryState | None = None
        self._engine: IntegrityEngine | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def started(self) -> bool:
        return self._state is not None

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention

    def startup(self) -> None:
        """Load the committed graph. Calling it on a started repository does nothing."""
        with self._lock:
            if self._state is not None:
                return
            state = self._controller.load() or RepositoryState()
            initial = self._config.repository.initial_max_versions_to_store
            if state.max_versions_to_store <= 0 and initial > 0:
                state.max_versions_to_store = initial
            self._install(state)
            logger.info(
                "repository_started",
                generation=self._controller.snapshot_generation,
                **state.counts(),
            )

    def shutdown(self) -> None:
        """
        Force-save the snapshot, drop unused payloads and release the graph.

        Raises:
            DatastoreError: If the repository is not started or the save fails.
        """
        with self._lock:
            self._require("shutdown")
            self.save(force_save=True)
            self._backend.remove_unused_payloads()
            self._state = None
            self._engine = None
            logger.info("repository_shutdown", generation=self._controller.snapshot_generation)

    def reload(self) -> None:
        """Discard uncommitted changes and load the latest committed graph."""
        with self._lock:
            self._require("reload")
            self._install(self._controller.load() or RepositoryState())
            logger.info("repository_reloaded", generation=self._controller.snapshot_generation)

    def __enter__(self) -> Repository:
        self.startup()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self.started:
            self.shutdown()

    def _install(self, state: RepositoryState) -> None:
        self._state = state
        self._engine = IntegrityEngine(state)
        self._retention.max_versions = state.max_versions_to_store

    def _require(self, operation: str) -> RepositoryState:
        if self._state is None:
            raise DatastoreError.not_started(operation)
        return self._state

    def _integrity(self, operation: str) -> IntegrityEngine:
        self._require(operation)
        assert self._engine is not None
        return self._engine

    # =========================================================================
    # Commit and bulk transfer
    # =========================================================================

    @property
    def generation(self) -> int:
        """Generation this snapshot was loaded or last saved against."""
        return self._controller.snapshot_generation

    def save(self, force_save: bool = False) -> int:
        """
        Commit the snapshot.

        Args:
            force_save: Overwrite even if another writer committed meanwhile.

        Returns:
            The new generation.

        Raises:
            DirtySaveError: If not forced and another writer committed first.
            DatastoreError: If the backend write fails.
        """
        with self._lock, with_context(operation="save"):
            state = self._require("save")
            return self._controller.commit(state, force=force_save).generation

    def export_all(self, sink: IO[bytes]) -> int:
        """Write the whole graph to ``sink``, leaving it open. Returns bytes written."""
        with self._lock, with_context(operation="export_all"):
            return exchange.export_all(self._require("export_all"), sink)

    def import_all(self, source: IO[bytes]) -> None:
        """
        Add every entity of an exported document to this repository.

        All or nothing: on any failure the repository is unchanged.

        Raises:
            DatastoreError: If the document is malformed or an entity collides
                with one already present.
        """
        with self._lock, with_context(operation="import_all"):
            state = self._require("import_all")
            exchange.import_all(state, source)
            self._retention.max_versions = state.max_versions_to_store

    # =========================================================================
    # Global retention
    # =========================================================================

    def get_max_versions_to_store(self) -> int:
        """Version cap per parent; 0 means not initialized."""
        return self._require("get_max_versions_to_store").max_versions_to_store

    def set_max_versions_to_store(self, max_versions: int) -> None:
        """Change the version cap and prune every parent down to it."""
        with self._lock:
            state = self._require("set_max_versions_to_store")
            state.max_versions_to_store = max_versions
            self._retention.max_versions = max_versions
            logger.info("max_versions_to_store_changed", max_versions=max_versions)
            if self._retention.enabled:
                self._retention.prune_all(list(state.versioned_parents()))

    # =========================================================================
    # Devices
    # =========================================================================

    def create_device(
        self,
        serial_number: str,
        symbolic_name: str,
        device_type: str,
        model_type: str,
        hostname: str,
        user_id: str = "",
        password: str = "",
        hlm_port: int = 0,
        gui_port: int = 0,
        amp_version: str = "",
        feature_licenses: Sequence[str] | None = None,
        quiesce_timeout: int = 0,
        backup_file_location: str | None = None,
        backup_certificate_location: str | None = None,
    ) -> Device:
        """
        Create an unmanaged device.

        Raises:
            AlreadyExistsError: If the serial number or symbolic name is taken.
        """
        device = Device(
            serial_number=serial_number,
            symbolic_name=symbolic_name,
            device_type=device_type,
            model_type=model_type,
            hostname=hostname,
            user_id=user_id,
            password=password,
            hlm_port=hlm_port,
            gui_port=gui_port,
            amp_version=amp_version,
            feature_licenses=normalize_features(feature_licenses),
            quiesce_timeout=quiesce_timeout,
            backup_file_location=backup_file_location,
            backup_certificate_location=backup_certificate_location,
        )
        with self._lock:
            self._integrity("create_device").register_device(device)
        return device

    def get_device(self, serial_number: str) -> Device | None:
        """Device by serial number, or None."""
        return self._require("get_device").devices.get(serial_number)

    def get_device_by_name(self, symbolic_name: str) -> Device | None:
        """Device by symbolic name, or None."""
        return self._require("get_device_by_name").device_by_name(symbolic_name)

    def get_devices(self) -> list[Device]:
        """Every device, managed or not."""
        return list(self._require("get_devices").devices.values())

    def get_unmanaged_devices(self, device_type: str | None = None) -> list[Device]:
        """Devices in no managed set, optionally of one device type."""
        return [
            d
            for d in self._require("get_unmanaged_devices").devices.values()
            if not d.is_managed and (device_type is None or d.device_type == device_type)
        ]

    def update_device(self, device: Device, **changes: Any) -> Device:
        """
        Change device attributes. The serial number cannot change.

        Raises:
            AlreadyExistsError: If the new symbolic name is taken.
            ValueError: If a field is unknown or immutable.
        """
        unknown = set(changes) - DEVICE_UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update device fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        with self._lock:
            engine = self._integrity("update_device")
            self._require_device(device)
            if "symbolic_name" in changes:
                engine.check_symbolic_name(changes["symbolic_name"], owner=device)
            if "feature_licenses" in changes:
                changes["feature_licenses"] = normalize_features(changes["feature_licenses"])
            for name, value in changes.items():
                setattr(device, name, value)
            logger.info("device_updated", serial_number=device.serial_number, fields=sorted(changes))
        return device

    def _require_device(self, device: Device) -> None:
        if self._require("device").devices.get(device.primary_key) is not device:
            raise NotExistError.not_found("Device", device.primary_key)

    # =========================================================================
    # Managed sets
    # =========================================================================

    def create_managed_set(self, name: str) -> ManagedSet:
        """
        Create an empty managed set.

        Raises:
            AlreadyExistsError: If a set with this name exists.
        """
        managed_set = ManagedSet(name=name)
        with self._lock:
            self._integrity("create_managed_set").register_managed_set(managed_set)
        return managed_set

    def get_managed_set(self, name: str) -> ManagedSet | None:
        """Managed set by name, or None."""
        return self._require("get_managed_set").managed_sets.get(name)

    def get_managed_sets(self) -> list[ManagedSet]:
        """Every managed set, empty ones included."""
        return list(self._require("get_managed_sets").managed_sets.values())

    def add_device_to_managed_set(self, managed_set: ManagedSet, device: Device) -> None:
        """
        Make a device a member of a managed set.

        Raises:
            AlreadyExistsError: If the device belongs to a different set.
            NotExistError: If the device or the managed set is not in the repository.
        """
        with self._lock:
            engine = self._integrity("add_device_to_managed_set")
            self._require_device(device)
            engine.add_device_to_managed_set(managed_set, device)

    def remove_device_from_managed_set(self, managed_set: ManagedSet, device: Device) -> None:
        """Leave the device unmanaged. Raises NotExistError if it is not in the set."""
        with self._lock:
            self._integrity("remove_device_from_managed_set").remove_device_from_managed_set(
                managed_set, device
            )

    # =========================================================================
    # Domains and deployment policies
    # =========================================================================

    def create_domain(
        self,
        device: Device,
        name: str,
        source_url: str | None = None,
        sync_mode: SyncMode = SyncMode.MANUAL,
        quiesce_timeout: int = 0,
    ) -> Domain:
        """
        Create a domain on a device.

        Raises:
            AlreadyExistsError: If the device already has a domain with this name.
            NotExistError: If the device is not in the repository.
        """
        domain = Domain(
            name=name,
            device=device,
            source_url=source_url,
            sync_mode=SyncMode(sync_mode),
            quiesce_timeout=quiesce_timeout,
        )
        with self._lock:
            self._integrity("create_domain").register_domain(domain)
        return domain

    def get_domain(self, device: Device, name: str) -> Domain | None:
        """Domain of a device by name, or None."""
        self._require("get_domain")
        return device.get_domain(name)

    def get_domains(self, device: Device | None = None) -> list[Domain]:
        """Domains of one device, or of every device."""
        state = self._require("get_domains")
        if device is not None:
            return device.managed_domains
        return list(state.domains())

    def update_domain(self, domain: Domain, **changes: Any) -> Domain:
        """
        Change domain attributes, including a rename within its device.

        Raises:
            AlreadyExistsError: If the device already has a domain with the new name.
            ValueError: If a field is unknown.
        """
        unknown = set(changes) - DOMAIN_UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update domain fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        with self._lock:
            state = self._require("update_domain")
            device = domain.device
            if device.domains.get(domain.name) is not domain:
                raise NotExistError.not_attached("Domain", device.primary_key)
            new_name = changes.pop("name", domain.name)
            if "sync_mode" in changes:
                changes["sync_mode"] = SyncMode(changes["sync_mode"])
            if new_name != domain.name:
                if new_name in device.domains:
                    raise AlreadyExistsError.for_key("Domain", f"{device.primary_key}:{new_name}")
                old_key = ("domain", domain.primary_key)
                del device.domains[domain.name]
                domain.name = new_name
                device.domains[new_name] = domain
                state.tag_index.rekey_member(old_key, domain)
            for name, value in changes.items():
                setattr(domain, name, value)
            logger.info("domain_updated", domain=domain.primary_key)
        return domain

    def create_domain_version(
        self,
        domain: Domain,
        blob: Blob,
        user_comment: str = "",
        timestamp: datetime | None = None,
    ) -> DomainVersion:
        """
        Record a new configuration snapshot of a domain.

        Raises:
            NotExistError: If the domain or its device was deleted.
        """
        with self._lock:
            self._integrity("create_domain_version").require_attached(domain)
            return self._add_version(domain, blob, user_comment, timestamp)  # type: ignore[return-value]

    def create_deployment_policy(
        self,
        domain: Domain,
        policy_name: str,
        policy_domain_name: str,
        policy_type: DeploymentPolicyType,
        policy_url: str | None = None,
    ) -> DeploymentPolicy:
        """
        Set the deployment policy of a domain.

        If the domain already has a policy, that policy is re-pointed to the
        new identity and keeps its versions.

        Raises:
            AlreadyExistsError: If the domain's policy already has this identity.
            NotExistError: If the domain or its device was deleted.
        """
        policy = DeploymentPolicy(
            domain=domain,
            policy_name=policy_name,
            policy_domain_name=policy_domain_name,
            policy_type=DeploymentPolicyType(policy_type),
            policy_url=policy_url,
        )
        with self._lock:
            return self._integrity("create_deployment_policy").register_deployment_policy(policy)

    def create_deployment_policy_version(
        self,
        policy: DeploymentPolicy,
        blob: Blob,
        user_comment: str = "",
        timestamp: datetime | None = None,
    ) -> DeploymentPolicyVersion:
        """
        Record a new snapshot of a deployment policy.

        Raises:
            NotExistError: If the policy, its domain or its device was deleted.
        """
        with self._lock:
            self._integrity("create_deployment_policy_version").require_attached(policy)
            return self._add_version(policy, blob, user_comment, timestamp)  # type: ignore[return-value]

    # =========================================================================
    # Firmware
    # =========================================================================

    def create_firmware(
        self,
        device_type: str,
        model_type: str,
        strict_features: Sequence[str] | None = None,
        nonstrict_features: Sequence[str] | None = None,
    ) -> Firmware:
        """
        Create a firmware line.

        Raises:
            AlreadyExistsError: If a firmware with the same type, model and
                feature sets exists.
        """
        firmware = Firmware(
            device_type=device_type,
            model_type=model_type,
            strict_features=normalize_features(strict_features),
            nonstrict_features=normalize_features(nonstrict_features),
        )
        with self._lock:
            self._integrity("create_firmware").register_firmware(firmware)
        return firmware

    def get_firmware(
        self,
        device_type: str,
        model_type: str,
        strict_features: Sequence[str] | None = None,
        nonstrict_features: Sequence[str] | None = None,
    ) -> Firmware | None:
        """Firmware by type, model and feature sets, or None. Feature order does not matter."""
        key = firmware_key(device_type, model_type, strict_features, nonstrict_features)
        return self._require("get_firmware").firmwares.get(key)

    def get_firmwares(self) -> list[Firmware]:
        """Every firmware line."""
        return list(self._require("get_firmwares").firmwares.values())

    def create_firmware_version(
        self,
        firmware: Firmware,
        blob: Blob,
        level: str,
        manufacture_date: datetime | None = None,
        user_comment: str = "",
        timestamp: datetime | None = None,
    ) -> FirmwareVersion:
        """
        Add a firmware image at a level.

        Raises:
            AlreadyExistsError: If the firmware already has a version at this level.
            NotExistError: If the firmware was deleted.
        """
        with self._lock:
            engine = self._integrity("create_firmware_version")
            engine.require_attached(firmware)
            engine.check_firmware_level(firmware, level)
            return self._add_version(  # type: ignore[return-value]
                firmware,
                blob,
                user_comment,
                timestamp,
                level=level,
                manufacture_date=manufacture_date,
            )

    # =========================================================================
    # Versions
    # =========================================================================

    def _add_version(
        self,
        parent: VersionedParent,
        blob: Blob,
        user_comment: str,
        timestamp: datetime | None,
        **attributes: Any,
    ) -> AnyVersion:
        version = self._allocator.create_version(parent, blob, user_comment, timestamp, **attributes)
        self._retention.prune(parent, protected=(version,))
        return version

    def get_versions(self, parent: VersionedParent) -> list[AnyVersion]:
        """Retained versions of a parent, oldest first."""
        self._require("get_versions")
        return list(parent.versions)

    def remove_version(self, version: AnyVersion) -> None:
        """
        Delete one version.

        Raises:
            NotExistError: If the version is not attached to its parent.
        """
        with self._lock:
            self._integrity("remove_version").remove_version(version)

    def set_version_in_use(self, version: AnyVersion, in_use: bool = True) -> None:
        """Flag a version as desired for deployment, protecting it from pruning."""
        with self._lock:
            self._require("set_version_in_use")
            if not any(v is version for v in version.parent.versions):
                raise NotExistError.not_attached(type(version).__name__, version.parent.primary_key)
            version.in_use = in_use
            logger.info(
                "version_in_use_changed",
                version=version.primary_key,
                in_use=in_use,
            )

    # =========================================================================
    # Tags
    # =========================================================================

    def create_tag(self, name: str, value: str) -> Tag:
        """
        Create a tag.

        Raises:
            AlreadyExistsError: If a tag with this name and value exists.
        """
        tag = Tag(name=name, value=value)
        with self._lock:
            self._integrity("create_tag").register_tag(tag)
        return tag

    def get_tag(self, name: str, value: str) -> Tag | None:
        """Tag by name and value, or None."""
        return self._require("get_tag").tags.get(tag_key(name, value))

    def get_tags(self, name: str | None = None) -> list[Tag]:
        """Every tag, or only those with this name."""
        tags = self._require("get_tags").tags.values()
        return [t for t in tags if name is None or t.name == name]

    def add_tag(self, tag: Tag, member: TagMember) -> None:
        """Tag a device or domain. Tagging twice is a no-op."""
        with self._lock:
            state = self._require("add_tag")
            if state.tags.get(tag.primary_key) is not tag:
                raise NotExistError.not_found("Tag", tag.primary_key)
            self._require_member(member)
            state.tag_index.add(tag, member)

    def remove_tag(self, tag: Tag, member: TagMember) -> None:
        """Untag a device or domain. Removing an absent tag is a no-op."""
        with self._lock:
            self._require("remove_tag").tag_index.remove(tag, member)

    def get_tag_members(self, tag: Tag) -> list[TagMember]:
        """Devices then domains carrying the tag."""
        index = self._require("get_tag_members").tag_index
        return [*index.device_members(tag), *index.domain_members(tag)]

    def get_tags_of(self, member: TagMember) -> list[Tag]:
        """Tags carried by a device or domain."""
        return self._require("get_tags_of").tag_index.tags_of(member)

    def remove_tags(self, member: TagMember) -> int:
        """Remove every tag from a device or domain. Returns how many were removed."""
        with self._lock:
            return self._integrity("remove_tags").remove_tags(member)

    def _require_member(self, member: TagMember) -> None:
        if isinstance(member, Device):
            self._require_device(member)
        elif member.device.domains.get(member.name) is not member:
            raise NotExistError.not_attached("Domain", member.device.primary_key)

    # =========================================================================
    # Delete
    # =========================================================================

    def delete(self, entity: Any) -> None:
        """
        Delete an entity, enforcing its integrity rules.

        Versioned parents must have no versions. A device is deleted with
        its domains, policies and versions. A managed set must be empty.

        Raises:
            NotEmptyError: If children block the delete. Nothing changes.
            NotExistError: If the entity is not in the repository.
        """
        with self._lock:
            self._integrity("delete").delete(entity)


def open_repository(
    credential: Credential,
    authenticator: Authenticator | None = None,
    backend: StorageBackend | None = None,
    config: Config | None = None,
) -> Repository:
    """
    Authenticate and return a started repository.

    Args:
        credential: Caller identity. Its ``RepositoryDirectory`` property,
            if set, selects the directory of the default file backend.
        authenticator: Validates the credential; every credential is
            accepted when omitted.
        backend: Storage backend, defaults to a ``FileBackend`` built from
            configuration.
        config: Settings, defaults to the process configuration.

    Raises:
        AuthenticationError: If the authenticator rejects the credential.
    """
    authenticator = authenticator or AllowAllAuthenticator()
    if not authenticator.authenticate(credential):
        logger.warning("repository_access_rejected", user=credential.user)
        raise AuthenticationError.rejected(credential.user)

    config = config or get_config()
    if backend is None:
        backend = FileBackend.from_config(
            config.repository, directory=credential.get_property(REPOSITORY_DIRECTORY)
        )

    repository = Repository(backend, config=config)
    repository.startup()
    logger.info("repository_opened", user=credential.user)
    return repository
