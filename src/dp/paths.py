"""Path resolution for diagram-preview global and workspace directories.

diagram-preview uses a two-tier directory structure:
- Global: ~/.diagram-preview/: user-wide settings.yaml
- Workspace: .diagram-preview/: workspace.yaml with per-environment blocks

Nothing is created on disk; missing directories simply mean "use defaults".
"""

from __future__ import annotations

import os
from pathlib import Path

# Directory names
GLOBAL_DIR_NAME = ".diagram-preview"
PROJECT_DIR_NAME = ".diagram-preview"

# Config file names inside those directories
USER_SETTINGS_FILE = "settings.yaml"
WORKSPACE_SETTINGS_FILE = "workspace.yaml"

# Environment variable overriding the workspace root
CWD_ENV_VAR = "DP_CWD"


def get_effective_cwd() -> Path:
    """Get the effective workspace root.

    Returns DP_CWD if set, else Path.cwd().

    Returns:
        Resolved Path for the workspace root
    """
    env_cwd = os.getenv(CWD_ENV_VAR)
    if env_cwd:
        return Path(env_cwd).resolve()
    return Path.cwd()


def get_global_dir() -> Path:
    """Get the global diagram-preview directory path.

    Returns:
        Path to ~/.diagram-preview/ (not necessarily existing)
    """
    return Path.home() / GLOBAL_DIR_NAME


def get_project_dir(start: Path | None = None) -> Path | None:
    """Get the workspace diagram-preview directory.

    Returns <root>/.diagram-preview if it exists, else None. No tree-walking.

    Args:
        start: Workspace root (default: get_effective_cwd())

    Returns:
        Path to .diagram-preview/ if found, None otherwise
    """
    cwd = start or get_effective_cwd()
    candidate = cwd / PROJECT_DIR_NAME
    if candidate.is_dir():
        return candidate
    return None


def get_user_settings_path() -> Path:
    """Path of the user settings file (may not exist)."""
    return get_global_dir() / USER_SETTINGS_FILE


def get_workspace_settings_path(start: Path | None = None) -> Path | None:
    """Path of the workspace settings file, or None if it does not exist."""
    project_dir = get_project_dir(start)
    if project_dir is None:
        return None
    candidate = project_dir / WORKSPACE_SETTINGS_FILE
    return candidate if candidate.is_file() else None


def resolve_workspace_path(path: str | Path, root: Path | None = None) -> Path:
    """Resolve a configured path against the workspace root.

    Absolute paths and ~-prefixed paths are returned expanded; everything
    else is taken relative to ``root`` (default: get_effective_cwd()).
    """
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return (root or get_effective_cwd()) / candidate
