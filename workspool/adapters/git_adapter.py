"""Git adapter backed by the ``git`` command line client."""

import base64
import logging
import os
import shutil
import subprocess
from pathlib import Path

from workspool.core.errors import CloneError, UpdateError, WorkspoolError
from workspool.core.retry import is_transient_error
from workspool.protocols.credential_provider_protocol import GitCredentials
from workspool.utils.repo_url import redact_url


logger = logging.getLogger(__name__)


class GitCommandError(WorkspoolError):
    """A git command exited with a non-zero status."""

    category = "git"

    def __init__(self, args: list[str], returncode: int, stderr: str):
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: "
            f"{stderr.strip()}",
            context={"args": args, "returncode": returncode},
        )
        self.returncode = returncode
        self.stderr = stderr
        self.recoverable = is_transient_error(stderr)


class GitCliProvider:
    """Implementation of :class:`GitProviderProtocol` using subprocess."""

    def __init__(self, git_executable: str = "git", timeout: float | None = None):
        """Initialize the provider.

        Args:
            git_executable: Name or path of the git binary
            timeout: Optional per-command timeout in seconds
        """
        self.git_executable = git_executable
        self.timeout = timeout

    def is_available(self) -> bool:
        """Check if git is available on the system."""
        return shutil.which(self.git_executable) is not None

    def _environment(self, credentials: GitCredentials | None) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        if credentials is not None:
            # Passed through the environment so it never lands in argv or .git/config
            token = base64.b64encode(
                f"{credentials.username}:{credentials.password}".encode()
            ).decode()
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
            env["GIT_CONFIG_VALUE_0"] = f"Authorization: Basic {token}"
        return env

    def _run(
        self,
        args: list[str],
        cwd: Path | None = None,
        credentials: GitCredentials | None = None,
    ) -> str:
        safe_args = [redact_url(arg) for arg in args]
        logger.debug("Running git %s", " ".join(safe_args))
        if cwd is not None and not cwd.is_dir():
            raise GitCommandError(safe_args, 128, f"working directory {cwd} not found")
        try:
            result = subprocess.run(
                [self.git_executable, *args],
                cwd=cwd,
                env=self._environment(credentials),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise GitCommandError(
                safe_args, 127, f"git executable {self.git_executable} not found"
            ) from e
        except subprocess.TimeoutExpired:
            # The original exception repeats argv, which may carry credentials
            error = GitCommandError(safe_args, -1, f"timed out after {self.timeout}s")
            error.recoverable = True
            raise error from None

        if result.returncode != 0:
            raise GitCommandError(safe_args, result.returncode, result.stderr)
        return result.stdout.strip()

    def clone(
        self,
        repository_url: str,
        destination: Path,
        branch: str | None = None,
        credentials: GitCredentials | None = None,
    ) -> str:
        args = ["clone", "--quiet"]
        if branch:
            args.extend(["--branch", branch, "--single-branch"])
        args.extend([repository_url, str(destination)])

        existed = destination.exists()
        try:
            self._run(args, credentials=credentials)
            return self._run(["rev-parse", "HEAD"], cwd=destination)
        except GitCommandError as e:
            if not existed and destination.exists():
                shutil.rmtree(destination, ignore_errors=True)
            logger.warning(
                "Clone of %s failed: %s", redact_url(repository_url), e.stderr.strip()
            )
            raise CloneError(
                redact_url(repository_url),
                e.stderr.strip() or str(e),
                recoverable=e.recoverable,
                cause=e,
            ) from e

    def fetch_and_reset(
        self, path: Path, credentials: GitCredentials | None = None
    ) -> str:
        try:
            self._run(
                ["fetch", "--quiet", "--prune", "origin"],
                cwd=path,
                credentials=credentials,
            )
            upstream = self._upstream(path)
            self._run(["reset", "--quiet", "--hard", upstream], cwd=path)
            self._run(["clean", "-fdx", "--quiet"], cwd=path)
            return self._run(["rev-parse", "HEAD"], cwd=path)
        except GitCommandError as e:
            raise UpdateError(
                str(path),
                e.stderr.strip() or str(e),
                recoverable=e.recoverable,
                cause=e,
            ) from e

    def _upstream(self, path: Path) -> str:
        try:
            return self._run(
                ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"], cwd=path
            )
        except GitCommandError:
            return f"origin/{self.current_branch(path)}"

    def current_branch(self, path: Path) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path)

    def status_is_clean(self, path: Path) -> bool:
        return self._run(["status", "--porcelain"], cwd=path) == ""


def create_git_provider(
    git_executable: str = "git", timeout: float | None = None
) -> GitCliProvider:
    """Create a git provider using the command line client.

    Args:
        git_executable: Name or path of the git binary
        timeout: Optional per-command timeout in seconds

    Returns:
        Configured GitCliProvider
    """
    return GitCliProvider(git_executable=git_executable, timeout=timeout)
