"""Pytest configuration for Python tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from appliance_repo.blob import Blob
from appliance_repo.config import Config, RepositoryConfig
from appliance_repo.repository import Repository
from appliance_repo.storage.backend import MemoryBackend

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "filesystem: marks tests that write repository files")


@pytest.fixture
def repo_config(tmp_path: Path) -> Config:
    """Configuration pointing the file backend at a temporary directory."""
    return Config(repository=RepositoryConfig(directory=str(tmp_path / "repo")))


@pytest.fixture
def backend() -> MemoryBackend:
    """A fresh in-memory store."""
    return MemoryBackend()


@pytest.fixture
def repo(backend: MemoryBackend, repo_config: Config) -> Iterator[Repository]:
    """A started repository on an in-memory store."""
    repository = Repository(backend, config=repo_config)
    repository.startup()
    yield repository
    if repository.started:
        repository.shutdown()


@pytest.fixture
def blob() -> Blob:
    """A small in-memory payload."""
    return Blob.from_bytes(b"<config>payload</config>")


@pytest.fixture
def device(repo: Repository):
    """A registered, unmanaged device."""
    return repo.create_device(
        serial_number="SN-0001",
        symbolic_name="edge-1",
        device_type="XI52",
        model_type="7199",
        hostname="edge-1.example.net",
        user_id="admin",
        password="secret",
        hlm_port=5550,
        gui_port=9090,
        feature_licenses=["MQ", "TAM"],
    )
