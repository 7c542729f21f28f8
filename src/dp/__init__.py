"""diagram-preview - render textual diagram source to sanitized SVG/PNG.

Features:
- Classification of Mermaid, PlantUML, GraphViz and Structurizr sources
- Local toolchain, remote Kroki and containerized CLI backends
- Content-addressed LRU render cache and outbound rate limiting
- SVG sanitization for every rendered artifact
- Debounced, staleness-safe live preview controller and batch export

Usage:
    # Render one file
    dp render docs/diagrams/context.puml

    # Export a whole directory
    dp export docs/diagrams --output-dir build/diagrams
"""

from importlib.metadata import version
from typing import Any

__version__ = version("diagram-preview")

__all__ = ["Session", "__version__"]


def __getattr__(name: str) -> Any:
    """Lazy import for the session module to avoid loading config at import time."""
    if name == "Session":
        from dp.session import Session

        return Session
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
