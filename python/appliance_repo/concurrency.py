"""
Optimistic concurrency for repository commits.

The backing store keeps one generation counter for the whole repository.
A snapshot remembers the generation it was loaded or last saved against;
a normal commit is refused when the store has moved on since, and a forced
commit always wins. The check and the write run under the backend lock,
so commits on one store are totally ordered.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from appliance_repo.exceptions import DirtySaveError
from appliance_repo.logging import get_logger

if TYPE_CHECKING:
    from appliance_repo.state import RepositoryState
    from appliance_repo.storage.backend import StorageBackend

logger = get_logger(__name__)


@dataclass
class CommitResult:
    """Outcome of one successful commit."""

    generation: int
    previous_generation: int
    forced: bool = False
    overwrote_newer: bool = False
    duration_seconds: float = 0.0
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "generation": self.generation,
            "previous_generation": self.previous_generation,
            "forced": self.forced,
            "overwrote_newer": self.overwrote_newer,
            "duration_seconds": round(self.duration_seconds, 3),
            "committed_at": self.committed_at.isoformat(),
        }


class CommitController:
    """Tracks a snapshot's generation and gates its writes to the backend."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend
        self._snapshot_generation = 0

    @property
    def snapshot_generation(self) -> int:
        return self._snapshot_generation

    def load(self) -> RepositoryState | None:
        """Load the committed graph and adopt its generation."""
        generation, state = self._backend.load()
        self._snapshot_generation = generation
        logger.debug("snapshot_loaded", generation=generation, empty=state is None)
        return state

    def is_stale(self) -> bool:
        """True if another writer committed after this snapshot was taken."""
        return self._backend.current_generation() != self._snapshot_generation

    def commit(self, state: RepositoryState, force: bool = False) -> CommitResult:
        """
        Write the snapshot as the next generation.

        Args:
            state: Graph to commit.
            force: Write even if the store has a newer generation.

        Returns:
            The committed generation and whether a newer one was overwritten.

        Raises:
            DirtySaveError: If not forced and the snapshot is stale. Nothing is written.
            DatastoreError: If the backend write fails. The snapshot generation is unchanged.
        """
        start = time.perf_counter()
        with self._backend.lock():
            store_generation = self._backend.current_generation()
            stale = store_generation != self._snapshot_generation
            if stale and not force:
                logger.warning(
                    "dirty_save_rejected",
                    snapshot_generation=self._snapshot_generation,
                    store_generation=store_generation,
                )
                raise DirtySaveError.stale_snapshot(self._snapshot_generation, store_generation)

            generation = store_generation + 1
            self._backend.write(state, generation)
            self._snapshot_generation = generation

        result = CommitResult(
            generation=generation,
            previous_generation=store_generation,
            forced=force,
            overwrote_newer=stale,
            duration_seconds=time.perf_counter() - start,
        )
        logger.info("repository_committed", **result.to_dict())
        return result
