"""Protocol definition for repository credential lookup."""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class GitCredentials:
    """Credentials for one git operation. Never persisted or logged."""

    username: str = "x-access-token"
    password: str = field(default="", repr=False)


@runtime_checkable
class CredentialProviderProtocol(Protocol):
    """Protocol for resolving credentials of a repository."""

    def get_credentials(self, repository_url: str) -> GitCredentials | None:
        """Return credentials for ``repository_url`` or None for anonymous access."""
        ...
