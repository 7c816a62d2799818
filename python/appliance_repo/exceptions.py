"""
Exception hierarchy for the appliance configuration repository.

Every repository operation surfaces one of these at the call boundary:
- RepositoryError: Base exception for all repository errors
- AlreadyExistsError: Primary key or unique attribute already taken
- NotExistError: Referenced child is not attached where expected
- NotEmptyError: Delete blocked because children still exist
- DirtySaveError: Another writer committed since this snapshot was loaded
- DatastoreError: Backend I/O, encoding, or lifecycle failure
- ConfigurationError: Invalid settings
- AuthenticationError: Repository acquisition refused

Each exception includes:
- error_code: Machine-readable error identifier
- context: Additional structured data for debugging
- is_retryable: Whether the caller may retry (the repository never retries)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for categorization and monitoring."""

    # Integrity errors (1xxx)
    ALREADY_EXISTS = "REPO_1001"
    NOT_EXIST = "REPO_1002"
    NOT_EMPTY = "REPO_1003"

    # Concurrency errors (2xxx)
    DIRTY_SAVE = "REPO_2001"

    # Datastore errors (3xxx)
    DATASTORE_READ_FAILED = "REPO_3001"
    DATASTORE_WRITE_FAILED = "REPO_3002"
    DATASTORE_MALFORMED = "REPO_3003"
    DATASTORE_NOT_STARTED = "REPO_3004"
    DATASTORE_VERSIONS_EXHAUSTED = "REPO_3005"

    # Configuration errors (4xxx)
    CONFIG_INVALID = "REPO_4001"
    CONFIG_MISSING = "REPO_4002"

    # Authentication errors (5xxx)
    AUTH_REJECTED = "REPO_5001"

    # General errors (9xxx)
    UNKNOWN = "REPO_9999"


@dataclass
class RepositoryError(Exception):
    """
    Base exception for all repository errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error identifier
        context: Additional structured data for debugging
        is_retryable: Whether the operation can be safely retried by the caller
        cause: Original exception that caused this error
    """

    message: str
    error_code: ErrorCode = ErrorCode.UNKNOWN
    context: dict[str, Any] = field(default_factory=dict)
    is_retryable: bool = False
    cause: Exception | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.error_code.value}] {self.message}"]
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f" ({context_str})")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"context={self.context!r}, "
            f"is_retryable={self.is_retryable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "context": self.context,
            "is_retryable": self.is_retryable,
            "cause": str(self.cause) if self.cause else None,
        }


@dataclass
class AlreadyExistsError(RepositoryError):
    """Raised when a create or rename would violate a uniqueness invariant."""

    error_code: ErrorCode = ErrorCode.ALREADY_EXISTS

    @classmethod
    def for_key(cls, entity: str, key: str) -> AlreadyExistsError:
        """Create error for a duplicate primary key."""
        return cls(
            message=f"{entity} already exists in the repository: {key}",
            context={"entity": entity, "key": key},
        )

    @classmethod
    def for_attribute(cls, entity: str, attribute: str, value: str) -> AlreadyExistsError:
        """Create error for a duplicate unique attribute."""
        return cls(
            message=f"{entity} with {attribute} '{value}' already exists",
            context={"entity": entity, "attribute": attribute, "value": value},
        )


@dataclass
class NotExistError(RepositoryError):
    """Raised when a remove or detach names a child that is not attached."""

    error_code: ErrorCode = ErrorCode.NOT_EXIST

    @classmethod
    def not_attached(cls, child: str, parent: str) -> NotExistError:
        """Create error for a child missing from its expected parent."""
        return cls(
            message=f"{child} is not attached to {parent}",
            context={"child": child, "parent": parent},
        )

    @classmethod
    def not_found(cls, entity: str, key: str) -> NotExistError:
        """Create error for an entity absent from the repository."""
        return cls(
            message=f"{entity} does not exist in the repository: {key}",
            context={"entity": entity, "key": key},
        )


@dataclass
class NotEmptyError(RepositoryError):
    """Raised when a delete is blocked by children that must be deleted first."""

    error_code: ErrorCode = ErrorCode.NOT_EMPTY

    @classmethod
    def has_children(cls, entity: str, key: str, children: str, count: int) -> NotEmptyError:
        """Create error for a parent that still owns children."""
        return cls(
            message=f"{entity} '{key}' still has {count} {children}",
            context={"entity": entity, "key": key, "children": children, "count": count},
        )


@dataclass
class DirtySaveError(RepositoryError):
    """Raised when save(force_save=False) finds a newer committed generation."""

    error_code: ErrorCode = ErrorCode.DIRTY_SAVE
    is_retryable: bool = True

    @classmethod
    def stale_snapshot(cls, snapshot_generation: int, store_generation: int) -> DirtySaveError:
        """Create error for a snapshot loaded against an older generation."""
        return cls(
            message=(
                f"Snapshot generation {snapshot_generation} is stale, "
                f"store is at generation {store_generation}"
            ),
            context={
                "snapshot_generation": snapshot_generation,
                "store_generation": store_generation,
            },
        )


@dataclass
class DatastoreError(RepositoryError):
    """Raised when the backing store or interchange encoding fails."""

    error_code: ErrorCode = ErrorCode.DATASTORE_WRITE_FAILED

    @classmethod
    def read_failed(cls, location: str, reason: str, cause: Exception | None = None) -> DatastoreError:
        """Create error for a failed load."""
        return cls(
            message=f"Failed to read from datastore: {reason}",
            error_code=ErrorCode.DATASTORE_READ_FAILED,
            context={"location": location, "reason": reason},
            is_retryable=True,
            cause=cause,
        )

    @classmethod
    def write_failed(cls, location: str, reason: str, cause: Exception | None = None) -> DatastoreError:
        """Create error for a failed commit."""
        return cls(
            message=f"Failed to write to datastore: {reason}",
            error_code=ErrorCode.DATASTORE_WRITE_FAILED,
            context={"location": location, "reason": reason},
            is_retryable=True,
            cause=cause,
        )

    @classmethod
    def malformed(cls, reason: str, cause: Exception | None = None) -> DatastoreError:
        """Create error for an undecodable interchange document."""
        return cls(
            message=f"Malformed repository document: {reason}",
            error_code=ErrorCode.DATASTORE_MALFORMED,
            context={"reason": reason},
            cause=cause,
        )

    @classmethod
    def not_started(cls, operation: str) -> DatastoreError:
        """Create error for an operation outside startup()/shutdown()."""
        return cls(
            message=f"Repository is not started, cannot {operation}",
            error_code=ErrorCode.DATASTORE_NOT_STARTED,
            context={"operation": operation},
        )

    @classmethod
    def versions_exhausted(cls, parent: str, retained: int) -> DatastoreError:
        """Create error for a parent with no free version number."""
        return cls(
            message=f"No free version number for '{parent}'",
            error_code=ErrorCode.DATASTORE_VERSIONS_EXHAUSTED,
            context={"parent": parent, "retained": retained},
        )


@dataclass
class ConfigurationError(RepositoryError):
    """Raised when configuration is invalid or missing."""

    error_code: ErrorCode = ErrorCode.CONFIG_INVALID

    @classmethod
    def missing_file(cls, path: str) -> ConfigurationError:
        """Create error for missing configuration file."""
        return cls(
            message=f"Configuration file not found: {path}",
            error_code=ErrorCode.CONFIG_MISSING,
            context={"path": path},
        )

    @classmethod
    def validation_failed(cls, field: str, value: Any, reason: str) -> ConfigurationError:
        """Create error for validation failure."""
        return cls(
            message=f"Configuration validation failed for '{field}': {reason}",
            error_code=ErrorCode.CONFIG_INVALID,
            context={"field": field, "value": str(value), "reason": reason},
        )


@dataclass
class AuthenticationError(RepositoryError):
    """Raised when the authenticator refuses the caller's credential."""

    error_code: ErrorCode = ErrorCode.AUTH_REJECTED

    @classmethod
    def rejected(cls, user: str) -> AuthenticationError:
        """Create error for a refused credential."""
        return cls(
            message=f"Credential rejected for user '{user}'",
            context={"user": user},
        )
