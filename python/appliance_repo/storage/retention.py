"""
Retention engine for version history.

Trims the history of each versioned parent to a configured cap, oldest
first. Versions flagged in use, and any version the caller names as
protected, are never removed; when they hold the history above the cap,
pruning stops short of it without error.

Design Patterns:
- Observer Pattern: Notify on retention events
- Template Method: Common prune workflow for every parent type
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from appliance_repo.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from appliance_repo.models import AnyVersion, VersionedParent

logger = get_logger(__name__)


class RetentionEventType(str, Enum):
    """Types of retention events."""

    VERSION_PRUNED = "version_pruned"
    VERSION_PROTECTED = "version_protected"
    RETENTION_STARTED = "retention_started"
    RETENTION_COMPLETED = "retention_completed"


@dataclass
class RetentionEvent:
    """Event emitted during retention operations."""

    event_type: RetentionEventType
    parent_key: str
    version_number: int | None = None
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "event_type": self.event_type.value,
            "parent_key": self.parent_key,
            "version_number": self.version_number,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class RetentionObserver(Protocol):
    """Protocol for retention event observers."""

    def on_retention_event(self, event: RetentionEvent) -> None:
        """Handle a retention event."""
        ...


@dataclass
class RetentionResult:
    """Result of pruning one or more parents."""

    versions_deleted: int = 0
    versions_protected: int = 0
    parents_examined: int = 0
    pruned_numbers: dict[str, list[int]] = field(default_factory=dict)
    reached_cap: bool = True
    duration_seconds: float = 0.0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None

    def merge(self, other: RetentionResult) -> None:
        self.versions_deleted += other.versions_deleted
        self.versions_protected += other.versions_protected
        self.parents_examined += other.parents_examined
        self.reached_cap = self.reached_cap and other.reached_cap
        for key, numbers in other.pruned_numbers.items():
            self.pruned_numbers.setdefault(key, []).extend(numbers)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "versions_deleted": self.versions_deleted,
            "versions_protected": self.versions_protected,
            "parents_examined": self.parents_examined,
            "reached_cap": self.reached_cap,
            "duration_seconds": round(self.duration_seconds, 3),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


class RetentionPolicy:
    """
    Caps the number of versions retained per versioned parent.

    A cap of 0 or less disables pruning.
    """

    def __init__(
        self,
        max_versions: int = 0,
        observers: Sequence[RetentionObserver] | None = None,
    ) -> None:
        self._max_versions = max_versions
        self._observers: list[RetentionObserver] = list(observers) if observers else []

    @property
    def max_versions(self) -> int:
        return self._max_versions

    @max_versions.setter
    def max_versions(self, value: int) -> None:
        self._max_versions = value

    @property
    def enabled(self) -> bool:
        return self._max_versions >= 1

    def add_observer(self, observer: RetentionObserver) -> None:
        """Add an event observer."""
        self._observers.append(observer)

    def remove_observer(self, observer: RetentionObserver) -> None:
        """Remove an event observer."""
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify_observers(self, event: RetentionEvent) -> None:
        """Notify all observers of an event."""
        for observer in self._observers:
            try:
                observer.on_retention_event(event)
            except Exception as e:
                logger.warning(
                    "observer_notification_failed",
                    observer=type(observer).__name__,
                    error=str(e),
                )

    def prune(
        self,
        parent: VersionedParent,
        protected: Iterable[AnyVersion] = (),
    ) -> RetentionResult:
        """
        Delete the oldest unprotected versions until the parent is at the cap.

        Args:
            parent: Firmware, Domain or DeploymentPolicy to trim.
            protected: Versions to keep regardless of age, in addition to
                every version flagged ``in_use``.

        Returns:
            What was deleted and how many protected versions were skipped.
        """
        result = RetentionResult(parents_examined=1)
        if not self.enabled or len(parent.versions) <= self._max_versions:
            result.end_time = result.start_time
            return result

        start = time.perf_counter()
        key = parent.primary_key
        keep_ids = {id(v) for v in protected}
        excess = len(parent.versions) - self._max_versions

        self._notify_observers(
            RetentionEvent(
                event_type=RetentionEventType.RETENTION_STARTED,
                parent_key=key,
                message=f"Pruning {excess} of {len(parent.versions)} versions",
            )
        )

        survivors = []
        for version in parent.versions:
            if excess == 0:
                survivors.append(version)
                continue
            if version.in_use or id(version) in keep_ids:
                survivors.append(version)
                result.versions_protected += 1
                self._notify_observers(
                    RetentionEvent(
                        event_type=RetentionEventType.VERSION_PROTECTED,
                        parent_key=key,
                        version_number=version.version_number,
                        message="Version is protected from pruning",
                    )
                )
                continue
            excess -= 1
            result.versions_deleted += 1
            result.pruned_numbers.setdefault(key, []).append(version.version_number)
            self._notify_observers(
                RetentionEvent(
                    event_type=RetentionEventType.VERSION_PRUNED,
                    parent_key=key,
                    version_number=version.version_number,
                    message=f"Pruned version {version.version_number}",
                )
            )
            logger.debug("version_pruned", parent=key, version_number=version.version_number)

        result.reached_cap = excess == 0
        parent.versions[:] = survivors

        result.end_time = datetime.now(timezone.utc)
        result.duration_seconds = time.perf_counter() - start

        self._notify_observers(
            RetentionEvent(
                event_type=RetentionEventType.RETENTION_COMPLETED,
                parent_key=key,
                message=f"Retention completed: {result.versions_deleted} versions deleted",
            )
        )
        logger.info(
            "retention_completed",
            parent=key,
            max_versions=self._max_versions,
            retained=len(parent.versions),
            result=result.to_dict(),
        )
        return result

    def prune_all(self, parents: Iterable[VersionedParent]) -> RetentionResult:
        """Prune every parent, as after the cap is lowered."""
        total = RetentionResult()
        for parent in parents:
            total.merge(self.prune(parent))
        total.end_time = datetime.now(timezone.utc)
        return total
