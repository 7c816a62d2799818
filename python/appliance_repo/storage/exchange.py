"""
Interchange encoding of the full entity graph.

The document is JSON: every entity with all of its attributes, each
versioned parent with its retained history and numbering cursor, managed
set membership, and tag associations. Payloads are encoded by a pluggable
``PayloadCodec``: inline base64 with a SHA-256 digest for export and the
in-memory backend, or a reference to a content-addressed payload file for
the file backend.

Decoding rebuilds entities through ``IntegrityEngine`` registration, so
every uniqueness rule is checked exactly as for a fresh create.

Design Patterns:
- Strategy Pattern: Pluggable payload codecs
- Builder Pattern: Graph rebuilt entity by entity through the integrity engine
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Protocol

from appliance_repo.blob import Blob
from appliance_repo.exceptions import DatastoreError, RepositoryError
from appliance_repo.integrity import IntegrityEngine
from appliance_repo.logging import get_logger
from appliance_repo.models import (
    DeploymentPolicy,
    DeploymentPolicyType,
    DeploymentPolicyVersion,
    Device,
    Domain,
    DomainVersion,
    Firmware,
    FirmwareVersion,
    ManagedSet,
    SyncMode,
    Tag,
    normalize_features,
)
from appliance_repo.state import RepositoryState
from appliance_repo.storage.versioning import CURRENT_SCHEMA_VERSION, SchemaVersion, VersionAllocator

if TYPE_CHECKING:
    from appliance_repo.models import AnyVersion, VersionedParent

logger = get_logger(__name__)

DOCUMENT_FORMAT = "appliance-repository"
PAYLOAD_FILE_PREFIX = "blob_"
PAYLOAD_FILE_SUFFIX = ".bin"


class PayloadCodec(Protocol):
    """Turns a payload into a JSON-safe reference and back."""

    def encode(self, blob: Blob) -> dict[str, Any]: ...

    def decode(self, data: dict[str, Any]) -> Blob: ...


class InlinePayloadCodec:
    """Embeds payload bytes as base64, checked by SHA-256 on decode."""

    def encode(self, blob: Blob) -> dict[str, Any]:
        payload = blob.get_bytes()
        return {
            "encoding": "base64",
            "sha256": hashlib.sha256(payload).hexdigest(),
            "data": base64.b64encode(payload).decode("ascii"),
        }

    def decode(self, data: dict[str, Any]) -> Blob:
        if data.get("encoding") != "base64":
            raise DatastoreError.malformed(f"unsupported payload encoding {data.get('encoding')!r}")
        try:
            payload = base64.b64decode(data["data"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise DatastoreError.malformed("payload is not valid base64", cause=e) from e
        expected = data.get("sha256")
        if expected is not None and hashlib.sha256(payload).hexdigest() != expected:
            raise DatastoreError.malformed("payload checksum mismatch")
        return Blob.from_bytes(payload)


class FilePayloadCodec(InlinePayloadCodec):
    """
    Stores payloads as content-addressed files in a directory.

    Identical payloads share one ``blob_<sha256>.bin`` file. Inline payloads
    are still accepted on decode.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @staticmethod
    def file_name(digest: str) -> str:
        return f"{PAYLOAD_FILE_PREFIX}{digest}{PAYLOAD_FILE_SUFFIX}"

    def encode(self, blob: Blob) -> dict[str, Any]:
        payload = blob.get_bytes()
        digest = hashlib.sha256(payload).hexdigest()
        name = self.file_name(digest)
        path = self._directory / name
        if not path.exists():
            tmp = path.with_suffix(".tmp")
            try:
                tmp.write_bytes(payload)
                os.replace(tmp, path)
            except OSError as e:
                raise DatastoreError.write_failed(str(path), str(e), cause=e) from e
        return {"encoding": "file", "sha256": digest, "file": name}

    def decode(self, data: dict[str, Any]) -> Blob:
        if data.get("encoding") != "file":
            return super().decode(data)
        name = data.get("file")
        if not isinstance(name, str) or Path(name).name != name:
            raise DatastoreError.malformed(f"invalid payload file reference {name!r}")
        return Blob.from_file(self._directory / name)


# ============================================================================
# Encoding
# ============================================================================


def _timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _encode_version(version: AnyVersion, payloads: PayloadCodec) -> dict[str, Any]:
    data: dict[str, Any] = {
        "version_number": version.version_number,
        "timestamp": _timestamp(version.timestamp),
        "user_comment": version.user_comment,
        "in_use": version.in_use,
        "payload": payloads.encode(version.blob),
    }
    if isinstance(version, FirmwareVersion):
        data["level"] = version.level
        data["manufacture_date"] = _timestamp(version.manufacture_date)
    elif isinstance(version, DeploymentPolicyVersion):
        data["policy_name"] = version.policy_name
        data["policy_domain_name"] = version.policy_domain_name
        data["policy_type"] = version.policy_type.value
    return data


def _encode_history(parent: VersionedParent, payloads: PayloadCodec) -> dict[str, Any]:
    return {
        "highest_version_number": parent.highest_version_number,
        "last_version_number": parent.last_version_number,
        "versions": [_encode_version(v, payloads) for v in parent.versions],
    }


def _encode_policy(policy: DeploymentPolicy, payloads: PayloadCodec) -> dict[str, Any]:
    return {
        "policy_name": policy.policy_name,
        "policy_domain_name": policy.policy_domain_name,
        "policy_type": policy.policy_type.value,
        "policy_url": policy.policy_url,
        "last_modified_of_deployed_source": policy.last_modified_of_deployed_source,
        **_encode_history(policy, payloads),
    }


def _encode_domain(domain: Domain, payloads: PayloadCodec) -> dict[str, Any]:
    policy = domain.deployment_policy
    return {
        "name": domain.name,
        "source_url": domain.source_url,
        "sync_mode": domain.sync_mode.value,
        "last_modified_of_deployed_source": domain.last_modified_of_deployed_source,
        "out_of_synch": domain.out_of_synch,
        "quiesce_timeout": domain.quiesce_timeout,
        "deployment_policy": _encode_policy(policy, payloads) if policy is not None else None,
        **_encode_history(domain, payloads),
    }


def _encode_device(device: Device, payloads: PayloadCodec) -> dict[str, Any]:
    return {
        "serial_number": device.serial_number,
        "symbolic_name": device.symbolic_name,
        "device_type": device.device_type,
        "model_type": device.model_type,
        "hostname": device.hostname,
        "user_id": device.user_id,
        "password": device.password,
        "hlm_port": device.hlm_port,
        "gui_port": device.gui_port,
        "amp_version": device.amp_version,
        "feature_licenses": list(device.feature_licenses),
        "quiesce_timeout": device.quiesce_timeout,
        "backup_file_location": device.backup_file_location,
        "backup_certificate_location": device.backup_certificate_location,
        "managed_set": device.managed_set.name if device.managed_set is not None else None,
        "domains": [_encode_domain(d, payloads) for d in device.domains.values()],
    }


def _encode_firmware(firmware: Firmware, payloads: PayloadCodec) -> dict[str, Any]:
    return {
        "device_type": firmware.device_type,
        "model_type": firmware.model_type,
        "strict_features": list(firmware.strict_features),
        "nonstrict_features": list(firmware.nonstrict_features),
        **_encode_history(firmware, payloads),
    }


def _encode_tag(tag: Tag, state: RepositoryState) -> dict[str, Any]:
    return {
        "name": tag.name,
        "value": tag.value,
        "devices": [d.serial_number for d in state.tag_index.device_members(tag)],
        "domains": [
            {"device": d.device.serial_number, "name": d.name}
            for d in state.tag_index.domain_members(tag)
        ],
    }


def encode_state(state: RepositoryState, payloads: PayloadCodec) -> dict[str, Any]:
    """
    Encode the whole graph as a JSON-safe document.

    Args:
        state: Graph to encode.
        payloads: Codec for version payloads.
    """
    return {
        "format": DOCUMENT_FORMAT,
        "schema_version": str(CURRENT_SCHEMA_VERSION),
        "max_versions_to_store": state.max_versions_to_store,
        "managed_sets": [{"name": name} for name in state.managed_sets],
        "devices": [_encode_device(d, payloads) for d in state.devices.values()],
        "firmwares": [_encode_firmware(f, payloads) for f in state.firmwares.values()],
        "tags": [_encode_tag(t, state) for t in state.tags.values()],
    }


# ============================================================================
# Decoding
# ============================================================================


class _GraphBuilder:
    """Rebuilds entities from a document into a target state."""

    def __init__(self, state: RepositoryState, payloads: PayloadCodec) -> None:
        self._state = state
        self._engine = IntegrityEngine(state)
        self._allocator = VersionAllocator()
        self._payloads = payloads

    def build(self, document: dict[str, Any]) -> None:
        for entry in document.get("managed_sets", []):
            self._engine.register_managed_set(ManagedSet(name=entry["name"]))
        for entry in document.get("devices", []):
            self._device(entry)
        for entry in document.get("firmwares", []):
            self._firmware(entry)
        for entry in document.get("tags", []):
            self._tag(entry)
        if self._state.max_versions_to_store <= 0:
            self._state.max_versions_to_store = int(document.get("max_versions_to_store", 0))

    def _versions(self, parent: VersionedParent, entry: dict[str, Any]) -> None:
        for data in entry.get("versions", []):
            self._allocator.restore_version(parent, self._version(parent, data))
        parent.highest_version_number = max(
            parent.highest_version_number, int(entry.get("highest_version_number", 0))
        )
        parent.last_version_number = int(
            entry.get("last_version_number", parent.highest_version_number)
        )

    def _version(self, parent: VersionedParent, data: dict[str, Any]) -> AnyVersion:
        common: dict[str, Any] = {
            "version_number": int(data["version_number"]),
            "timestamp": datetime.fromisoformat(data["timestamp"]),
            "blob": self._payloads.decode(data["payload"]),
            "user_comment": data.get("user_comment", ""),
            "in_use": bool(data.get("in_use", False)),
        }
        if isinstance(parent, Firmware):
            self._engine.check_firmware_level(parent, data["level"])
            manufactured = data.get("manufacture_date")
            return FirmwareVersion(
                firmware=parent,
                level=data["level"],
                manufacture_date=datetime.fromisoformat(manufactured) if manufactured else None,
                **common,
            )
        if isinstance(parent, Domain):
            return DomainVersion(domain=parent, **common)
        return DeploymentPolicyVersion(
            policy=parent,
            policy_name=data["policy_name"],
            policy_domain_name=data["policy_domain_name"],
            policy_type=DeploymentPolicyType(data["policy_type"]),
            **common,
        )

    def _device(self, entry: dict[str, Any]) -> None:
        device = Device(
            serial_number=entry["serial_number"],
            symbolic_name=entry["symbolic_name"],
            device_type=entry["device_type"],
            model_type=entry["model_type"],
            hostname=entry["hostname"],
            user_id=entry.get("user_id", ""),
            password=entry.get("password", ""),
            hlm_port=int(entry.get("hlm_port", 0)),
            gui_port=int(entry.get("gui_port", 0)),
            amp_version=entry.get("amp_version", ""),
            feature_licenses=normalize_features(entry.get("feature_licenses")),
            quiesce_timeout=int(entry.get("quiesce_timeout", 0)),
            backup_file_location=entry.get("backup_file_location"),
            backup_certificate_location=entry.get("backup_certificate_location"),
        )
        self._engine.register_device(device)

        set_name = entry.get("managed_set")
        if set_name is not None:
            managed_set = self._state.managed_sets.get(set_name)
            if managed_set is None:
                raise DatastoreError.malformed(
                    f"device {device.serial_number} references unknown managed set {set_name!r}"
                )
            self._engine.add_device_to_managed_set(managed_set, device)

        for domain_entry in entry.get("domains", []):
            self._domain(device, domain_entry)

    def _domain(self, device: Device, entry: dict[str, Any]) -> None:
        domain = Domain(
            name=entry["name"],
            device=device,
            source_url=entry.get("source_url"),
            sync_mode=SyncMode(entry.get("sync_mode", SyncMode.MANUAL.value)),
            last_modified_of_deployed_source=int(entry.get("last_modified_of_deployed_source", 0)),
            out_of_synch=bool(entry.get("out_of_synch", False)),
            quiesce_timeout=int(entry.get("quiesce_timeout", 0)),
        )
        self._engine.register_domain(domain)
        self._versions(domain, entry)

        policy_entry = entry.get("deployment_policy")
        if policy_entry is not None:
            policy = DeploymentPolicy(
                domain=domain,
                policy_name=policy_entry["policy_name"],
                policy_domain_name=policy_entry["policy_domain_name"],
                policy_type=DeploymentPolicyType(policy_entry["policy_type"]),
                policy_url=policy_entry.get("policy_url"),
                last_modified_of_deployed_source=int(
                    policy_entry.get("last_modified_of_deployed_source", 0)
                ),
            )
            self._engine.register_deployment_policy(policy)
            self._versions(policy, policy_entry)

    def _firmware(self, entry: dict[str, Any]) -> None:
        firmware = Firmware(
            device_type=entry["device_type"],
            model_type=entry["model_type"],
            strict_features=normalize_features(entry.get("strict_features")),
            nonstrict_features=normalize_features(entry.get("nonstrict_features")),
        )
        self._engine.register_firmware(firmware)
        self._versions(firmware, entry)

    def _tag(self, entry: dict[str, Any]) -> None:
        tag = Tag(name=entry["name"], value=entry["value"])
        self._engine.register_tag(tag)
        for serial in entry.get("devices", []):
            device = self._state.devices.get(serial)
            if device is None:
                raise DatastoreError.malformed(f"tag {tag.primary_key} references unknown device {serial}")
            self._state.tag_index.add(tag, device)
        for ref in entry.get("domains", []):
            device = self._state.devices.get(ref["device"])
            domain = device.get_domain(ref["name"]) if device is not None else None
            if domain is None:
                raise DatastoreError.malformed(
                    f"tag {tag.primary_key} references unknown domain {ref['device']}:{ref['name']}"
                )
            self._state.tag_index.add(tag, domain)


def check_schema(document: Any) -> SchemaVersion:
    """
    Validate the document envelope.

    Raises:
        DatastoreError: If the document is not a repository document or its
            schema major version differs from the current one.
    """
    if not isinstance(document, dict) or document.get("format") != DOCUMENT_FORMAT:
        raise DatastoreError.malformed("not an appliance repository document")
    try:
        version = SchemaVersion.from_string(str(document.get("schema_version", "")))
    except ValueError as e:
        raise DatastoreError.malformed("invalid schema version", cause=e) from e
    if not version.is_compatible_with(CURRENT_SCHEMA_VERSION):
        raise DatastoreError.malformed(
            f"schema version {version} is not compatible with {CURRENT_SCHEMA_VERSION}"
        )
    return version


def decode_into(document: Any, state: RepositoryState, payloads: PayloadCodec) -> None:
    """
    Rebuild every entity of a document into ``state``.

    The state is left partially populated on failure; callers decode into a
    scratch copy and keep it only on success.

    Raises:
        DatastoreError: For a malformed document or a violated uniqueness
            rule, the latter chained as the cause.
    """
    check_schema(document)
    try:
        _GraphBuilder(state, payloads).build(document)
    except DatastoreError:
        raise
    except RepositoryError as e:
        raise DatastoreError.malformed(str(e), cause=e) from e
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise DatastoreError.malformed(f"{type(e).__name__}: {e}", cause=e) from e


def decode_state(document: Any, payloads: PayloadCodec) -> RepositoryState:
    """Decode a document into a fresh state."""
    state = RepositoryState()
    decode_into(document, state, payloads)
    return state


def export_all(state: RepositoryState, sink: IO[bytes]) -> int:
    """
    Write the graph to a caller-owned binary stream, leaving it open.

    Returns:
        Number of bytes written.

    Raises:
        DatastoreError: If encoding or writing fails.
    """
    document = encode_state(state, InlinePayloadCodec())
    data = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
    try:
        sink.write(data)
        sink.flush()
    except (OSError, ValueError) as e:
        raise DatastoreError.write_failed(getattr(sink, "name", "<stream>"), str(e), cause=e) from e
    logger.info("repository_exported", bytes=len(data), **state.counts())
    return len(data)


def import_all(state: RepositoryState, source: IO[bytes]) -> None:
    """
    Read a document from a caller-owned stream and add its entities to ``state``.

    All or nothing: the document is first decoded into a scratch copy of
    ``state``; only when that succeeds is it applied to ``state`` itself,
    so entities already held by callers stay valid.

    Raises:
        DatastoreError: If the stream cannot be read or decoded, or if an
            imported entity collides with an existing one.
    """
    try:
        raw = source.read()
    except (OSError, ValueError) as e:
        raise DatastoreError.read_failed(getattr(source, "name", "<stream>"), str(e), cause=e) from e
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DatastoreError.malformed("document is not valid JSON", cause=e) from e

    codec = InlinePayloadCodec()
    decode_into(document, state.copy(), codec)
    decode_into(document, state, codec)
    logger.info("repository_imported", bytes=len(raw), **state.counts())
