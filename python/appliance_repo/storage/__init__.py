"""
Storage layer for the appliance repository.

This module provides:
- Version numbering and the interchange schema version
- Retention of version history against a configurable cap
- Interchange encoding for export, import and backends
- Storage backends holding the committed graph and its generation

Design Patterns:
- Strategy Pattern: Pluggable backends and payload codecs
- Observer Pattern: Retention event notifications
"""

from appliance_repo.storage.backend import FileBackend, MemoryBackend, StorageBackend
from appliance_repo.storage.exchange import (
    FilePayloadCodec,
    InlinePayloadCodec,
    PayloadCodec,
    decode_state,
    encode_state,
    export_all,
    import_all,
)
from appliance_repo.storage.retention import (
    RetentionEvent,
    RetentionEventType,
    RetentionObserver,
    RetentionPolicy,
    RetentionResult,
)
from appliance_repo.storage.versioning import (
    CURRENT_SCHEMA_VERSION,
    MAX_VERSION_NUMBER,
    SchemaVersion,
    VersionAllocator,
)

__all__ = [
    # Versioning
    "CURRENT_SCHEMA_VERSION",
    "MAX_VERSION_NUMBER",
    # Backends
    "FileBackend",
    # Exchange
    "FilePayloadCodec",
    "InlinePayloadCodec",
    "MemoryBackend",
    "PayloadCodec",
    # Retention
    "RetentionEvent",
    "RetentionEventType",
    "RetentionObserver",
    "RetentionPolicy",
    "RetentionResult",
    "SchemaVersion",
    "StorageBackend",
    "VersionAllocator",
    "decode_state",
    "encode_state",
    "export_all",
    "import_all",
]
