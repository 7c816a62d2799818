"""
In-memory entity graph held by a repository snapshot.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass, field

from appliance_repo.models import (
    DeploymentPolicy,
    Device,
    Domain,
    Firmware,
    ManagedSet,
    Tag,
    VersionedParent,
)
from appliance_repo.tags import TagIndex


@dataclass(eq=False)
class RepositoryState:
    """
    Root of the entity graph.

    Devices, managed sets, firmwares and tags are indexed by primary key.
    Domains and deployment policies hang off their devices.
    """

    devices: dict[str, Device] = field(default_factory=dict)
    managed_sets: dict[str, ManagedSet] = field(default_factory=dict)
    firmwares: dict[str, Firmware] = field(default_factory=dict)
    tags: dict[str, Tag] = field(default_factory=dict)
    tag_index: TagIndex = field(default_factory=TagIndex)
    max_versions_to_store: int = 0

    def device_by_name(self, symbolic_name: str) -> Device | None:
        for device in self.devices.values():
            if device.symbolic_name == symbolic_name:
                return device
        return None

    def domains(self) -> Iterator[Domain]:
        for device in self.devices.values():
            yield from device.domains.values()

    def policies(self) -> Iterator[DeploymentPolicy]:
        for domain in self.domains():
            if domain.deployment_policy is not None:
                yield domain.deployment_policy

    def versioned_parents(self) -> Iterator[VersionedParent]:
        yield from self.firmwares.values()
        for domain in self.domains():
            yield domain
            if domain.deployment_policy is not None:
                yield domain.deployment_policy

    def copy(self) -> RepositoryState:
        """Deep copy of the whole graph, sharing nothing with this one."""
        return copy.deepcopy(self)

    def counts(self) -> dict[str, int]:
        return {
            "devices": len(self.devices),
            "managed_sets": len(self.managed_sets),
            "domains": sum(1 for _ in self.domains()),
            "firmwares": len(self.firmwares),
            "tags": len(self.tags),
            "versions": sum(len(p.versions) for p in self.versioned_parents()),
        }
