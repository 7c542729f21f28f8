"""Layered YAML configuration for diagram-preview.

Four layers are merged property by property, later layers winning:

1. built-in defaults (field defaults below)
2. user settings: ~/.diagram-preview/settings.yaml
3. workspace settings: <workspace>/.diagram-preview/workspace.yaml
4. the active environment block inside the workspace file

Example workspace.yaml:

    remote_endpoint: https://kroki.internal.example
    local_tool_paths:
      archive_path: tools/plantuml/plantuml.jar

    active_environment: ci
    environments:
      ci:
        remote_rate_limit_ms: 0
        backend_preference:
          plantuml: remote

    # Use !include for shared fragments
    container_settings: !include container.yaml

The resolved ``Configuration`` is frozen. Reloading produces a new instance;
sessions swap it wholesale and rebuild their backends.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from dp.models import BackendKind, DiagramType, Theme
from dp.paths import (
    get_effective_cwd,
    get_user_settings_path,
    get_workspace_settings_path,
)

# Environment variable selecting the active environment block
ENVIRONMENT_ENV_VAR = "DP_ENV"

# Keys that steer layering and never reach the Configuration model
LAYER_KEYS = ("environments", "active_environment")


# Custom YAML Loader with !include support
class IncludeLoader(yaml.SafeLoader):
    """YAML loader that supports !include tag for modular configs.

    The !include tag loads another YAML file and inlines its contents.
    Paths are resolved relative to the including file.
    """

    _base_path: Path | None = None

    @classmethod
    def with_base_path(cls, base_path: Path) -> type[IncludeLoader]:
        """Create a loader class with a specific base path for includes."""

        class BoundLoader(cls):  # type: ignore[valid-type,misc]
            _base_path = base_path

        return BoundLoader


def _include_constructor(loader: IncludeLoader, node: yaml.Node) -> Any:
    """Handle !include YAML tag by loading the referenced file."""
    include_path = loader.construct_scalar(node)  # type: ignore[arg-type]

    if loader._base_path is None:
        raise yaml.YAMLError(f"Cannot resolve !include path: {include_path}")

    resolved = (loader._base_path / include_path).resolve()

    if not resolved.exists():
        logger.warning(f"!include file not found: {resolved}")
        return None

    try:
        with resolved.open() as f:
            bound_loader = IncludeLoader.with_base_path(resolved.parent)
            return yaml.load(f, Loader=bound_loader)  # noqa: S506
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error loading !include {include_path}: {e}") from e


IncludeLoader.add_constructor("!include", _include_constructor)


class RemoteAuthConfig(BaseModel):
    """Credentials sent to the remote rendering service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["basic", "bearer"] = Field(
        description="Authorization scheme",
    )
    credentials: str = Field(
        description="user:password for basic, token for bearer",
    )


class LocalToolPaths(BaseModel):
    """Locations of the locally installed toolchain."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    archive_path: str = Field(
        default="tools/plantuml/plantuml.jar",
        description="Diagram archive run through the interpreter (PlantUML/Structurizr)",
    )
    cli_path: str = Field(
        default="mmdc",
        description="Mermaid command-line renderer",
    )
    interpreter_path: str = Field(
        default="java",
        description="Interpreter used to run the archive",
    )


class ContainerSettings(BaseModel):
    """Containerized Structurizr pipeline settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    script_path: str = Field(
        default="scripts/render-dsl-to-svg.sh",
        description="Orchestration script, relative to the workspace root",
    )
    container_name: str = Field(
        default="structurizr-cli",
        description="Container the script executes in",
    )
    runtime: str = Field(
        default="docker",
        description="Container runtime CLI used for the availability probe",
    )
    output_dir: str = Field(
        default="docs/03_architecture/diagrams/out",
        description="Directory scanned for produced SVGs when script output is inconclusive",
    )


class MermaidThemes(BaseModel):
    """Mermaid theme name per editor theme."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    light: str = Field(default="default")
    dark: str = Field(default="dark")

    def for_theme(self, theme: Theme) -> str:
        return self.dark if theme is Theme.DARK else self.light


def _default_backend_preference() -> dict[DiagramType, BackendKind]:
    return {
        DiagramType.PLANTUML: BackendKind.LOCAL,
        DiagramType.MERMAID: BackendKind.LOCAL,
        DiagramType.STRUCTURIZR: BackendKind.REMOTE,
    }


class Configuration(BaseModel):
    """Fully resolved settings for one session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    remote_endpoint: str = Field(
        default="https://kroki.io",
        description="Kroki-compatible rendering service URL",
    )
    remote_rate_limit_ms: int = Field(
        default=500,
        ge=0,
        le=60_000,
        description="Minimum spacing between remote requests",
    )
    remote_timeout_s: float = Field(
        default=10.0,
        ge=1.0,
        le=120.0,
        description="Remote request timeout in seconds",
    )
    remote_auth: RemoteAuthConfig | None = Field(
        default=None,
        description="Optional Authorization for the remote service",
    )
    format_fallback: bool = Field(
        default=True,
        description="Retry a failed SVG render once as PNG",
    )
    local_tool_paths: LocalToolPaths = Field(default_factory=LocalToolPaths)
    container_settings: ContainerSettings = Field(default_factory=ContainerSettings)
    cache_capacity: int = Field(
        default=50,
        ge=1,
        le=10_000,
        description="Render cache entries kept per session",
    )
    debounce_ms: int = Field(
        default=300,
        ge=0,
        le=10_000,
        description="Quiet period before a live preview render starts",
    )
    concurrency_limit: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Concurrent renders during batch export",
    )
    backend_preference: dict[DiagramType, BackendKind] = Field(
        default_factory=_default_backend_preference,
        description="Backend chosen when an extension allows several",
    )
    mermaid_theme: MermaidThemes = Field(default_factory=MermaidThemes)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )

    def preferred_backend(
        self, diagram_type: DiagramType | None, allowed: tuple[BackendKind, ...]
    ) -> BackendKind:
        """Pick a backend among ``allowed`` using ``backend_preference``.

        Falls back to the first allowed backend when no preference applies.
        """
        if diagram_type is not None:
            preferred = self.backend_preference.get(diagram_type)
            if preferred in allowed:
                return preferred  # type: ignore[return-value]
        return allowed[0]


def merge_layers(*layers: dict[str, Any]) -> dict[str, Any]:
    """Merge configuration layers recursively, later layers winning per property.

    Nested mappings are merged key by key; any other value (including lists)
    replaces the earlier one. Inputs are not modified.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = merge_layers(current, value)
            else:
                merged[key] = copy.deepcopy(value)
    return merged


def _load_yaml_file(config_path: Path) -> dict[str, Any]:
    """Load and parse YAML file with error handling.

    Supports !include tags for modular configuration files.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If YAML is invalid, not a mapping, or can't be read.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            bound_loader = IncludeLoader.with_base_path(config_path.parent)
            raw_data = yaml.load(f, Loader=bound_loader)  # noqa: S506
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading {config_path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ValueError(f"Invalid configuration in {config_path}: expected a mapping")
    return raw_data


def _validate_layer(data: dict[str, Any], source: str) -> None:
    """Validate one layer on its own so errors name the file they came from."""
    try:
        Configuration.model_validate(data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {source}: {e}") from e


def _split_environments(
    data: dict[str, Any], source: str, environment: str | None
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate the environment block from the base workspace settings."""
    base = {k: v for k, v in data.items() if k not in LAYER_KEYS}
    environments = data.get("environments") or {}
    if not isinstance(environments, dict):
        raise ValueError(f"Invalid configuration in {source}: environments must be a mapping")

    active = environment or data.get("active_environment")
    if not active:
        return base, {}
    if active not in environments:
        raise ValueError(f"Unknown environment '{active}' in {source}")
    block = environments[active] or {}
    if not isinstance(block, dict):
        raise ValueError(f"Invalid configuration in {source}: environment '{active}' must be a mapping")
    return base, block


def resolve_configuration(*layers: dict[str, Any]) -> Configuration:
    """Merge already-loaded layers over the defaults and validate the result.

    Raises:
        ValueError: If the merged settings fail validation
    """
    # Start from the defaults so partially overridden mappings keep their other keys
    merged = merge_layers(Configuration().model_dump(mode="json"), *layers)
    try:
        return Configuration.model_validate(merged)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def load_configuration(
    workspace_root: Path | str | None = None,
    *,
    user_settings: Path | str | None = None,
    environment: str | None = None,
) -> Configuration:
    """Load and merge all configuration layers.

    Args:
        workspace_root: Workspace root (default: DP_CWD or the current directory)
        user_settings: Explicit user settings file (default: ~/.diagram-preview/settings.yaml)
        environment: Environment block to apply (default: DP_ENV, then the
            workspace file's ``active_environment``)

    Returns:
        Resolved, frozen Configuration

    Raises:
        FileNotFoundError: If an explicit user settings path doesn't exist
        ValueError: If any YAML file is invalid or validation fails
    """
    root = Path(workspace_root).resolve() if workspace_root else get_effective_cwd()
    layers: list[dict[str, Any]] = []

    if user_settings is not None:
        user_path: Path | None = Path(user_settings)
        if not user_path.exists():
            raise FileNotFoundError(f"Config file not found: {user_path}")
    else:
        user_path = get_user_settings_path()
        if not user_path.is_file():
            user_path = None

    if user_path is not None:
        logger.debug(f"Loading user settings from {user_path}")
        user_data = _load_yaml_file(user_path)
        _validate_layer(user_data, str(user_path))
        layers.append(user_data)

    workspace_path = get_workspace_settings_path(root)
    if workspace_path is not None:
        logger.debug(f"Loading workspace settings from {workspace_path}")
        workspace_data = _load_yaml_file(workspace_path)
        base, block = _split_environments(
            workspace_data,
            str(workspace_path),
            environment or os.getenv(ENVIRONMENT_ENV_VAR),
        )
        _validate_layer(base, str(workspace_path))
        _validate_layer(block, f"{workspace_path} (environment)")
        layers.extend([base, block])
    elif environment:
        raise ValueError(f"Unknown environment '{environment}': no workspace settings in {root}")

    if not layers:
        logger.debug("No config files found, using defaults")

    return resolve_configuration(*layers)
