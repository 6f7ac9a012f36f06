"""XDG Base Directory specification helpers."""

import os
from pathlib import Path


def get_xdg_config_dir() -> Path:
    """Get XDG config directory for workspool.

    Returns:
        Path to config directory: $XDG_CONFIG_HOME/workspool or ~/.config/workspool
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "workspool"
    return Path.home() / ".config" / "workspool"


def get_xdg_cache_dir() -> Path:
    """Get XDG cache directory for workspool.

    Returns:
        Path to cache directory: $XDG_CACHE_HOME/workspool or ~/.cache/workspool
    """
    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache:
        return Path(xdg_cache) / "workspool"
    return Path.home() / ".cache" / "workspool"
