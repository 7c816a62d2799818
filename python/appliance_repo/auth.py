"""
Credentials presented when acquiring a repository.

Validating a credential is left to an ``Authenticator`` supplied by the
caller; the repository only asks it for a yes or no.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

REPOSITORY_DIRECTORY = "RepositoryDirectory"


@dataclass
class Credential:
    """User identity plus free-form properties such as the repository directory."""

    user: str
    secret: str = field(default="", repr=False)
    properties: dict[str, Any] = field(default_factory=dict)

    def get_property(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging; the secret is never included."""
        return {"user": self.user, "properties": sorted(self.properties)}


class Authenticator(Protocol):
    """Decides whether a credential may open the repository."""

    def authenticate(self, credential: Credential) -> bool: ...


class AllowAllAuthenticator:
    """Accepts every credential. For single-user and test setups."""

    def authenticate(self, credential: Credential) -> bool:
        return True
