"""Core test fixtures for the workspool project."""

import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from workspool.config.models.workspace import (
    CacheSettings,
    CleanupSettings,
    ErrorHandlingSettings,
    PreservationSettings,
    WorkspaceManagerConfig,
)
from workspool.protocols.credential_provider_protocol import GitCredentials
from workspool.workspace.cache_index import CacheIndex
from workspool.workspace.manager import WorkspaceManager


def make_git_checkout(path: Path, content: str = "hello") -> Path:
    """Create a directory that passes the structural git checks."""
    git_dir = path / ".git"
    (git_dir / "objects").mkdir(parents=True, exist_ok=True)
    (git_dir / "refs" / "heads").mkdir(parents=True, exist_ok=True)
    (git_dir / "HEAD").write_text("ref: refs/heads/main\n")
    (git_dir / "config").write_text("[core]\n\trepositoryformatversion = 0\n")
    (path / "README.md").write_text(content)
    return path


class FakeGitProvider:
    """In-memory stand-in for the git command line.

    Errors queued in ``clone_errors`` / ``update_errors`` are raised by the
    next calls, one per call, before any work happens.
    """

    def __init__(self) -> None:
        self.clone_calls: list[dict[str, Any]] = []
        self.update_calls: list[Path] = []
        self.clone_errors: list[BaseException] = []
        self.update_errors: list[BaseException] = []
        self.status_error: BaseException | None = None
        self.content = "hello"
        self._commits = 0

    def _next_commit(self) -> str:
        self._commits += 1
        return f"{self._commits:040x}"

    def clone(
        self,
        repository_url: str,
        destination: Path,
        branch: str | None = None,
        credentials: GitCredentials | None = None,
    ) -> str:
        self.clone_calls.append(
            {
                "repository_url": repository_url,
                "destination": destination,
                "branch": branch,
                "credentials": credentials,
            }
        )
        if self.clone_errors:
            raise self.clone_errors.pop(0)
        make_git_checkout(destination, self.content)
        return self._next_commit()

    def fetch_and_reset(
        self, path: Path, credentials: GitCredentials | None = None
    ) -> str:
        self.update_calls.append(path)
        if self.update_errors:
            raise self.update_errors.pop(0)
        return self._next_commit()

    def current_branch(self, path: Path) -> str:
        return "main"

    def status_is_clean(self, path: Path) -> bool:
        if self.status_error is not None:
            raise self.status_error
        return True


# ---- Base Fixtures ----


@pytest.fixture
def fake_git() -> FakeGitProvider:
    """Create a fake git provider for testing."""
    return FakeGitProvider()


@pytest.fixture
def make_checkout() -> Callable[..., Path]:
    """Return a helper creating a structurally valid checkout."""
    return make_git_checkout


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Managed base directory, resolved so it compares with stored paths."""
    path = tmp_path.resolve() / "workspaces"
    path.mkdir()
    return path


@pytest.fixture
def workspace_config(tmp_path: Path, base_dir: Path) -> WorkspaceManagerConfig:
    """Configuration with fast retries and no disk space requirement."""
    return WorkspaceManagerConfig(
        base_directory=base_dir,
        temp_directory=tmp_path / "tmp",
        cache=CacheSettings(max_workspaces=10),
        cleanup=CleanupSettings(timing="immediate"),
        preservation=PreservationSettings(),
        error_handling=ErrorHandlingSettings(
            max_retries=2,
            initial_retry_delay_ms=0,
            max_retry_delay_ms=0,
            required_disk_space_bytes=0,
        ),
    )


@pytest.fixture
def cache_index(base_dir: Path) -> Generator[CacheIndex, None, None]:
    """Create a cache index below the base directory."""
    index = CacheIndex(base_dir)
    yield index
    index.close()


@pytest.fixture
def workspace_manager(
    workspace_config: WorkspaceManagerConfig, fake_git: FakeGitProvider
) -> Generator[WorkspaceManager, None, None]:
    """Create a started workspace manager using the fake git provider."""
    manager = WorkspaceManager(workspace_config, fake_git, sleep=lambda _s: None)
    manager.start()
    yield manager
    manager.stop()


# ---- Test Isolation Fixtures ----


@pytest.fixture
def isolated_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> dict[str, Path]:
    """Isolate XDG directories, the working directory and WORKSPOOL_ variables.

    Usage:
        def test_settings(isolated_environment):
            config_dir = isolated_environment["config_dir"]
    """
    for key in list(os.environ):
        if key.startswith("WORKSPOOL_"):
            monkeypatch.delenv(key, raising=False)

    root = tmp_path.resolve()
    config_home = root / "xdg-config"
    cache_home = root / "xdg-cache"
    work_dir = root / "cwd"
    for path in (config_home, cache_home, work_dir):
        path.mkdir()

    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("XDG_CACHE_HOME", str(cache_home))
    monkeypatch.chdir(work_dir)

    return {
        "config_dir": config_home / "workspool",
        "cache_dir": cache_home / "workspool",
        "cwd": work_dir,
    }
