"""
Durable storage for the entity graph and its commit generation.

A backend stores one document per commit together with a generation
counter that increases by one on every successful write. The commit
controller compares generations under ``lock()`` before writing, which
makes each backend a single serialization point for its writers.

Backends:
- MemoryBackend: encoded document held in memory; share one instance
  between repositories to model several writers of one store
- FileBackend: JSON document in a directory, payloads as separate
  content-addressed files, previous commit kept as a backup
"""

from __future__ import annotations

import json
import os
import shutil
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from appliance_repo.exceptions import DatastoreError
from appliance_repo.logging import get_logger
from appliance_repo.storage.exchange import (
    PAYLOAD_FILE_PREFIX,
    PAYLOAD_FILE_SUFFIX,
    FilePayloadCodec,
    InlinePayloadCodec,
    decode_state,
    encode_state,
)

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

    from appliance_repo.config import RepositoryConfig
    from appliance_repo.state import RepositoryState

logger = get_logger(__name__)

LAST_VERSION_PREFIX = "lastVersion_"


class StorageBackend(Protocol):
    """Persistence for the repository document and its generation counter."""

    def current_generation(self) -> int:
        """Generation of the last successful commit, 0 for an empty store."""
        ...

    def load(self) -> tuple[int, RepositoryState | None]:
        """Return the committed generation and graph, or ``(0, None)`` when empty."""
        ...

    def write(self, state: RepositoryState, generation: int) -> None:
        """Commit ``state`` as ``generation``. Either fully succeeds or leaves the store as it was."""
        ...

    def lock(self) -> AbstractContextManager[Any]:
        """Mutual exclusion spanning a generation check and the following write."""
        ...

    def remove_unused_payloads(self) -> int:
        """Delete stored payloads the committed graph no longer references."""
        ...


class MemoryBackend:
    """Keeps the committed document in memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._generation = 0
        self._document: str | None = None
        self._codec = InlinePayloadCodec()

    def current_generation(self) -> int:
        return self._generation

    def load(self) -> tuple[int, RepositoryState | None]:
        with self._lock:
            if self._document is None:
                return self._generation, None
            return self._generation, decode_state(json.loads(self._document), self._codec)

    def write(self, state: RepositoryState, generation: int) -> None:
        document = encode_state(state, self._codec)
        document["generation"] = generation
        with self._lock:
            self._document = json.dumps(document)
            self._generation = generation
        logger.debug("memory_backend_written", generation=generation)

    def lock(self) -> AbstractContextManager[Any]:
        return self._lock

    def remove_unused_payloads(self) -> int:
        return 0


class FileBackend:
    """
    Stores the repository in a directory.

    Layout:
        <filename>                 committed document, with its generation
        lastVersion_<filename>     previous committed document (optional)
        blob_<sha256>.bin          one file per distinct payload

    The document is replaced atomically through a temporary file, so a
    failed write never leaves a partial document behind.
    """

    def __init__(
        self,
        directory: str | Path,
        filename: str = "repository.json",
        keep_last_version: bool = True,
    ) -> None:
        self._directory = Path(directory).expanduser()
        self._filename = filename
        self._keep_last_version = keep_last_version
        self._lock = threading.RLock()
        self._codec = FilePayloadCodec(self._directory)

    @classmethod
    def from_config(cls, config: RepositoryConfig, directory: str | Path | None = None) -> FileBackend:
        return cls(
            directory=directory or config.directory,
            filename=config.filename,
            keep_last_version=config.keep_last_version,
        )

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def path(self) -> Path:
        return self._directory / self._filename

    @property
    def last_version_path(self) -> Path:
        return self._directory / f"{LAST_VERSION_PREFIX}{self._filename}"

    def _read_document(self, path: Path | None = None) -> dict[str, Any] | None:
        path = path or self.path
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                document = json.load(f)
        except OSError as e:
            raise DatastoreError.read_failed(str(path), str(e), cause=e) from e
        except json.JSONDecodeError as e:
            raise DatastoreError.malformed(f"{path} is not valid JSON", cause=e) from e
        if not isinstance(document, dict):
            raise DatastoreError.malformed(f"{path} does not hold a repository document")
        return document

    def current_generation(self) -> int:
        document = self._read_document()
        if document is None:
            return 0
        return int(document.get("generation", 0))

    def load(self) -> tuple[int, RepositoryState | None]:
        with self._lock:
            document = self._read_document()
            if document is None:
                return 0, None
            generation = int(document.get("generation", 0))
            state = decode_state(document, self._codec)
        logger.info("file_backend_loaded", path=str(self.path), generation=generation)
        return generation, state

    def write(self, state: RepositoryState, generation: int) -> None:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DatastoreError.write_failed(str(self._directory), str(e), cause=e) from e

        document = encode_state(state, self._codec)
        document["generation"] = generation
        tmp = self.path.with_name(f".{self._filename}.tmp")
        with self._lock:
            try:
                with tmp.open("w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                if self._keep_last_version and self.path.exists():
                    shutil.copy2(self.path, self.last_version_path)
                os.replace(tmp, self.path)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise DatastoreError.write_failed(str(self.path), str(e), cause=e) from e
        logger.info("file_backend_written", path=str(self.path), generation=generation)

    def lock(self) -> AbstractContextManager[Any]:
        return self._lock

    def _referenced_payloads(self) -> set[str]:
        referenced: set[str] = set()

        def walk(node: Any) -> None:
            if isinstance(node, dict):
                if node.get("encoding") == "file" and isinstance(node.get("file"), str):
                    referenced.add(node["file"])
                for value in node.values():
                    walk(value)
            elif isinstance(node, list):
                for value in node:
                    walk(value)

        walk(self._read_document())
        if self._keep_last_version:
            walk(self._read_document(self.last_version_path))
        return referenced

    def remove_unused_payloads(self) -> int:
        """
        Delete payload files neither the committed document nor its backup references.

        Returns:
            Number of files removed.
        """
        if not self._directory.exists():
            return 0
        with self._lock:
            referenced = self._referenced_payloads()
            removed = 0
            for path in self._directory.glob(f"{PAYLOAD_FILE_PREFIX}*{PAYLOAD_FILE_SUFFIX}"):
                if path.name in referenced:
                    continue
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning("payload_delete_failed", path=str(path), error=str(e))
        logger.info("unused_payloads_removed", directory=str(self._directory), removed=removed)
        return removed
