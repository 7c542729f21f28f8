"""Configuration models and the layered loader."""

from dp.config.loader import (
    Configuration,
    ContainerSettings,
    LocalToolPaths,
    MermaidThemes,
    RemoteAuthConfig,
    load_configuration,
    merge_layers,
    resolve_configuration,
)

__all__ = [
    "Configuration",
    "ContainerSettings",
    "LocalToolPaths",
    "MermaidThemes",
    "RemoteAuthConfig",
    "load_configuration",
    "merge_layers",
    "resolve_configuration",
]
