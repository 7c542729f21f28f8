"""Resolve diagram source to a (backend, diagram type) pair.

Resolution order:
    1. File extension lookup in EXTENSION_MAP (fast path)
    2. Ordered content-sniffing rules against the trimmed text, first match wins
    3. None, meaning the caller has to ask the user

Rule order matters: GraphViz's ``graph`` keyword collides with Mermaid's
``graph``. GraphViz only matches when the name is followed by ``{``; Mermaid
only matches ``graph`` with a direction (TB, BT, RL, LR, TD).
"""

from __future__ import annotations

import re
from collections.abc import Callable
from types import MappingProxyType
from typing import TYPE_CHECKING

from dp.models import (
    BackendKind,
    ClassificationResult,
    DiagramSource,
    DiagramType,
    ExtensionMapping,
)

if TYPE_CHECKING:
    from dp.config import Configuration

__all__ = [
    "EXTENSION_MAP",
    "SNIFF_RULES",
    "SniffRule",
    "classify",
    "sniff",
    "supported_extensions",
]

_LOCAL_OR_REMOTE = (BackendKind.LOCAL, BackendKind.REMOTE)
_REMOTE = (BackendKind.REMOTE,)

EXTENSION_MAP: MappingProxyType[str, ExtensionMapping] = MappingProxyType(
    {
        # Mermaid: type detected by the backend
        ".mmd": ExtensionMapping(_LOCAL_OR_REMOTE),
        ".mermaid": ExtensionMapping(_LOCAL_OR_REMOTE),
        # PlantUML family
        ".puml": ExtensionMapping(_LOCAL_OR_REMOTE, DiagramType.PLANTUML),
        ".plantuml": ExtensionMapping(_LOCAL_OR_REMOTE, DiagramType.PLANTUML),
        ".iuml": ExtensionMapping(_LOCAL_OR_REMOTE, DiagramType.PLANTUML),
        ".pu": ExtensionMapping(_LOCAL_OR_REMOTE, DiagramType.PLANTUML),
        ".wsd": ExtensionMapping(_LOCAL_OR_REMOTE, DiagramType.PLANTUML),
        # GraphViz
        ".dot": ExtensionMapping(_REMOTE, DiagramType.GRAPHVIZ),
        ".gv": ExtensionMapping(_REMOTE, DiagramType.GRAPHVIZ),
        # Structurizr DSL
        ".dsl": ExtensionMapping(
            (BackendKind.REMOTE, BackendKind.CONTAINER), DiagramType.STRUCTURIZR
        ),
        # Remote-only grammars
        ".bpmn": ExtensionMapping(_REMOTE, DiagramType.BPMN),
        ".excalidraw": ExtensionMapping(_REMOTE, DiagramType.EXCALIDRAW),
        ".vg": ExtensionMapping(_REMOTE, DiagramType.VEGA),
        ".vdx": ExtensionMapping(_REMOTE, DiagramType.VEGA),
        ".vl": ExtensionMapping(_REMOTE, DiagramType.VEGALITE),
        ".ditaa": ExtensionMapping(_REMOTE, DiagramType.DITAA),
        ".er": ExtensionMapping(_REMOTE, DiagramType.ERD),
        ".nomnoml": ExtensionMapping(_REMOTE, DiagramType.NOMNOML),
        ".pikchr": ExtensionMapping(_REMOTE, DiagramType.PIKCHR),
        ".svgbob": ExtensionMapping(_REMOTE, DiagramType.SVGBOB),
        ".umlet": ExtensionMapping(_REMOTE, DiagramType.UMLET),
        ".wavedrom": ExtensionMapping(_REMOTE, DiagramType.WAVEDROM),
    }
)

MERMAID_KEYWORDS = (
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram",
    "erDiagram",
    "gantt",
    "pie",
    "flowchart",
    "journey",
    "gitGraph",
    "mindmap",
    "timeline",
    "quadrantChart",
    "requirementDiagram",
    "C4Context",
    "C4Container",
    "C4Component",
    "C4Dynamic",
    "C4Deployment",
)

# Undirected graphs need the header form `graph [ID] {` so that Mermaid's
# `graph TD; A{decision}` never matches
_GRAPHVIZ = re.compile(r'^(strict\s+)?(digraph\b|graph(\s+("[^"]*"|[\w.]+))?\s*\{)')
_MERMAID_GRAPH = re.compile(r"^graph\s+(TB|BT|RL|LR|TD)\b")
_MERMAID_KEYWORD = re.compile(
    r"^(" + "|".join(MERMAID_KEYWORDS) + r")(-v2)?\b"
)

SniffRule = tuple[Callable[[str], bool], ClassificationResult]

# Ordered; first match wins
SNIFF_RULES: tuple[SniffRule, ...] = (
    (
        lambda text: text.startswith("workspace"),
        ClassificationResult(BackendKind.REMOTE, DiagramType.STRUCTURIZR),
    ),
    (
        lambda text: text.startswith("@start"),
        ClassificationResult(BackendKind.LOCAL, DiagramType.PLANTUML),
    ),
    (
        lambda text: _GRAPHVIZ.match(text) is not None,
        ClassificationResult(BackendKind.REMOTE, DiagramType.GRAPHVIZ),
    ),
    (
        lambda text: _MERMAID_GRAPH.match(text) is not None,
        ClassificationResult(BackendKind.LOCAL, DiagramType.MERMAID),
    ),
    (
        lambda text: _MERMAID_KEYWORD.match(text) is not None,
        ClassificationResult(BackendKind.LOCAL, DiagramType.MERMAID),
    ),
)


def supported_extensions() -> frozenset[str]:
    return frozenset(EXTENSION_MAP)


def sniff(text: str) -> ClassificationResult | None:
    """Apply the content rules to ``text``; None when nothing matches."""
    trimmed = text.strip() if isinstance(text, str) else ""
    if not trimmed:
        return None
    for predicate, result in SNIFF_RULES:
        if predicate(trimmed):
            return result
    return None


def classify(
    path: str,
    text: str,
    config: Configuration | None = None,
) -> ClassificationResult | None:
    """Classify a diagram source. Never raises.

    Args:
        path: File path (only the extension is used)
        text: Source text, used when the extension is unknown or carries
            no diagram type
        config: Supplies ``backend_preference`` for extensions that allow
            several backends (default: first allowed backend)

    Returns:
        The classification, or None when manual selection is needed
    """
    mapping = EXTENSION_MAP.get(DiagramSource(path or "", "").file_extension)
    if mapping is None:
        return sniff(text)

    diagram_type = mapping.diagram_type
    if diagram_type is None:
        sniffed = sniff(text)
        diagram_type = sniffed.diagram_type if sniffed else None
    if config is not None:
        # Untyped extensions are all Mermaid
        preference_type = mapping.diagram_type or DiagramType.MERMAID
        backend = config.preferred_backend(preference_type, mapping.backend_kinds)
    else:
        backend = mapping.backend_kinds[0]
    return ClassificationResult(backend, diagram_type)
