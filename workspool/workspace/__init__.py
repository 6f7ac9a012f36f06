"""Workspace pool: reservation, recovery, preservation and cleanup."""

from pathlib import Path

from workspool.adapters.git_adapter import create_git_provider
from workspool.config.models.workspace import WorkspaceManagerConfig
from workspool.config.presets import get_environment_config
from workspool.config.settings import WorkspoolSettings, load_settings
from workspool.protocols.credential_provider_protocol import CredentialProviderProtocol
from workspool.protocols.git_provider_protocol import GitProviderProtocol

from .cache_index import CacheIndex
from .cleanup_scheduler import BackgroundSweeper, CleanupScheduler
from .filesystem_guard import (
    ensure_sufficient_space,
    ensure_writable_directory,
    get_filesystem_info,
    run_pre_flight_checks,
    validate_managed_path,
)
from .key_lock import KeyLock
from .manager import WorkspaceManager
from .preservation import PreservationPolicy
from .recovery import (
    is_incomplete,
    recover_from_interruption,
    validate_integrity,
    with_operation_lock,
)


def create_workspace_manager(
    config: WorkspaceManagerConfig | None = None,
    git_provider: GitProviderProtocol | None = None,
    credential_provider: CredentialProviderProtocol | None = None,
    environment: str | None = None,
    start: bool = True,
) -> WorkspaceManager:
    """Create a WorkspaceManager with default dependencies.

    Args:
        config: Configuration to use, built from ``environment`` if None
        git_provider: Git implementation, the git command line by default
        credential_provider: Optional credential source
        environment: Preset name used when ``config`` is None
        start: Start the manager (background cleanup, shutdown hook)

    Returns:
        Configured WorkspaceManager instance
    """
    if config is None:
        config = (
            get_environment_config(environment)
            if environment
            else WorkspaceManagerConfig()
        )
    manager = WorkspaceManager(
        config=config,
        git_provider=git_provider or create_git_provider(),
        credential_provider=credential_provider,
    )
    if start:
        manager.start()
    return manager


def create_workspace_manager_from_settings(
    settings: WorkspoolSettings | None = None,
    config_path: str | Path | None = None,
    git_provider: GitProviderProtocol | None = None,
    credential_provider: CredentialProviderProtocol | None = None,
) -> WorkspaceManager:
    """Create and start a WorkspaceManager from file and environment settings."""
    settings = settings or load_settings(config_path)
    return create_workspace_manager(
        config=settings.build_workspace_config(),
        git_provider=git_provider,
        credential_provider=credential_provider,
    )


__all__ = [
    "BackgroundSweeper",
    "CacheIndex",
    "CleanupScheduler",
    "KeyLock",
    "PreservationPolicy",
    "WorkspaceManager",
    "create_workspace_manager",
    "create_workspace_manager_from_settings",
    "ensure_sufficient_space",
    "ensure_writable_directory",
    "get_filesystem_info",
    "is_incomplete",
    "recover_from_interruption",
    "run_pre_flight_checks",
    "validate_integrity",
    "validate_managed_path",
    "with_operation_lock",
]
