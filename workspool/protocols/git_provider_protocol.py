"""Protocol definition for Git operations."""

from pathlib import Path
from typing import Protocol, runtime_checkable

from workspool.protocols.credential_provider_protocol import GitCredentials


@runtime_checkable
class GitProviderProtocol(Protocol):
    """Protocol for the git operations the workspace manager needs."""

    def clone(
        self,
        repository_url: str,
        destination: Path,
        branch: str | None = None,
        credentials: GitCredentials | None = None,
    ) -> str:
        """Clone a repository into an empty or missing directory.

        Args:
            repository_url: URL to clone from
            destination: Target directory, must not contain files
            branch: Branch to check out, None for the remote default
            credentials: Optional credentials used only for this call

        Returns:
            Commit hash of the checked out HEAD

        Raises:
            CloneError: If cloning fails
        """
        ...

    def fetch_and_reset(
        self, path: Path, credentials: GitCredentials | None = None
    ) -> str:
        """Bring an existing checkout up to date with its upstream branch.

        Local modifications and untracked files are discarded.

        Returns:
            Commit hash of the new HEAD

        Raises:
            UpdateError: If fetching or resetting fails
        """
        ...

    def current_branch(self, path: Path) -> str:
        """Return the checked out branch name."""
        ...

    def status_is_clean(self, path: Path) -> bool:
        """Return True if the working tree has no changes.

        Raises:
            Exception: If git cannot read the repository
        """
        ...
