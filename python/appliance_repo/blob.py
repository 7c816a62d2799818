"""
Opaque payload handle for firmware images and configuration exports.

The repository only relies on three things: a payload may or may not hold
its bytes in memory (``has_bytes``), it can produce its bytes on demand,
and it is stored and retrieved by reference.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from appliance_repo.exceptions import DatastoreError


class Blob:
    """A payload held either in memory or in a file."""

    def __init__(self, data: bytes | None = None, path: Path | str | None = None) -> None:
        if (data is None) == (path is None):
            msg = "Blob needs exactly one of data or path"
            raise ValueError(msg)
        self._data = data
        self._path = Path(path) if path is not None else None

    @classmethod
    def from_bytes(cls, data: bytes) -> Blob:
        return cls(data=data)

    @classmethod
    def from_file(cls, path: Path | str) -> Blob:
        return cls(path=path)

    @property
    def path(self) -> Path | None:
        """Backing file, None for in-memory payloads."""
        return self._path

    def has_bytes(self) -> bool:
        """True if the payload is held in memory."""
        return self._data is not None

    def get_bytes(self) -> bytes:
        """
        Return the payload bytes, reading the backing file if needed.

        Raises:
            DatastoreError: If the backing file cannot be read.
        """
        if self._data is not None:
            return self._data
        assert self._path is not None
        try:
            return self._path.read_bytes()
        except OSError as e:
            raise DatastoreError.read_failed(str(self._path), str(e), cause=e) from e

    def sha256(self) -> str:
        """SHA-256 hex digest of the payload."""
        return hashlib.sha256(self.get_bytes()).hexdigest()

    def __len__(self) -> int:
        if self._data is not None:
            return len(self._data)
        assert self._path is not None
        return self._path.stat().st_size

    def __repr__(self) -> str:
        if self._data is not None:
            return f"Blob(<{len(self._data)} bytes>)"
        return f"Blob(path={str(self._path)!r})"
