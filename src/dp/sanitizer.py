"""SVG sanitization applied to every rendered artifact before display.

The document is parsed first and cleaned structurally, so markup tricks that
defeat regex filters (split tags, odd quoting, entity-encoded schemes) never
reach the attribute checks as raw text. Anything that does not parse is
dropped entirely.

Removed:
    - <script> and <foreignObject> elements
    - on* event handler attributes (any case)
    - href / xlink:href pointing at javascript:, other schemes, or
      absolute / protocol-relative URLs
    - animations that rewrite href or event handler attributes

Kept:
    - same-document fragment references (#id), needed for <use>/<symbol>
    - relative references and raster data: URIs
    - everything else, including <style> blocks
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Any

from dp.errors import SanitizationFailure
from dp.logging import LogEntry, default_logger

if TYPE_CHECKING:
    from loguru import Logger

__all__ = ["SvgSanitizer", "is_unsafe_reference", "sanitize"]

SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"

ET.register_namespace("", SVG_NS)
ET.register_namespace("xlink", XLINK_NS)

# Elements dropped with their whole subtree
BLOCKED_ELEMENTS = frozenset({"script", "foreignobject"})

# Animation elements that can retarget attributes at runtime
ANIMATION_ELEMENTS = frozenset({"animate", "set", "animatemotion", "animatetransform"})

REFERENCE_ATTRIBUTES = frozenset({"href"})

_SCHEME = re.compile(r"^([a-z][a-z0-9+.\-]*):")
_SAFE_DATA_URI = re.compile(r"^data:image/(png|jpe?g|gif|webp|bmp);")
_CONTROL_CHARS = re.compile(r"[\x00-\x20]")


def _local_name(name: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on qualified names."""
    return name.rsplit("}", 1)[-1].lower()


def is_unsafe_reference(value: str) -> bool:
    """Return True if an href value must be stripped.

    Whitespace and control characters are ignored when looking for a scheme,
    since browsers ignore them too ("java\\tscript:").
    """
    compact = _CONTROL_CHARS.sub("", value).lower()
    if compact.startswith("#"):
        return False
    if compact.startswith(("//", "\\\\", "/\\")):
        return True
    match = _SCHEME.match(compact)
    if match is None:
        return False
    if match.group(1) == "data":
        return _SAFE_DATA_URI.match(compact) is None
    return True


class SvgSanitizer:
    """Strips active content from SVG markup.

    Example:
        sanitizer = SvgSanitizer()
        clean = sanitizer.sanitize('<svg><script>alert(1)</script></svg>')
    """

    def __init__(self, logger: Logger | None = None) -> None:
        self._logger = logger or default_logger

    def sanitize(self, svg: Any) -> str:
        """Return a cleaned copy of ``svg``, or "" if it is not usable SVG."""
        if not isinstance(svg, str) or not svg.strip():
            return ""

        try:
            root = self.parse(svg)
        except SanitizationFailure as e:
            self._logger.warning(
                str(LogEntry("sanitizer.rejected", error=str(e), inputLen=len(svg)))
            )
            return ""

        removed = self._clean(root)
        if removed:
            self._logger.debug(str(LogEntry("sanitizer.cleaned", removed=removed)))
        return ET.tostring(root, encoding="unicode")

    def parse(self, svg: str) -> ET.Element:
        """Parse markup into an element tree.

        Raises:
            SanitizationFailure: If the markup is not well-formed XML, declares
                entities, or its root is itself a blocked element.
        """
        if "<!ENTITY" in svg.upper():
            raise SanitizationFailure("Entity declarations are not allowed in SVG")
        try:
            root = ET.fromstring(svg)
        except ET.ParseError as e:
            raise SanitizationFailure(f"Malformed SVG: {e}") from e
        if _local_name(root.tag) in BLOCKED_ELEMENTS:
            raise SanitizationFailure(f"Blocked root element <{_local_name(root.tag)}>")
        return root

    def _clean(self, root: ET.Element) -> int:
        removed = 0
        # Snapshot the tree first; removal mutates child lists
        for parent in list(root.iter()):
            for child in list(parent):
                if self._is_blocked(child):
                    _remove_preserving_tail(parent, child)
                    removed += 1

        for element in root.iter():
            for name in list(element.attrib):
                if self._is_unsafe_attribute(name, element.attrib[name]):
                    del element.attrib[name]
                    removed += 1
        return removed

    @staticmethod
    def _is_blocked(element: ET.Element) -> bool:
        if not isinstance(element.tag, str):
            return False
        tag = _local_name(element.tag)
        if tag in BLOCKED_ELEMENTS:
            return True
        if tag in ANIMATION_ELEMENTS:
            target = _local_name(element.attrib.get("attributeName", "").split(":")[-1])
            return target in REFERENCE_ATTRIBUTES or target.startswith("on")
        return False

    @staticmethod
    def _is_unsafe_attribute(name: str, value: str) -> bool:
        local = _local_name(name)
        if local.startswith("on"):
            return True
        if local in REFERENCE_ATTRIBUTES:
            return is_unsafe_reference(value)
        return False


def _remove_preserving_tail(parent: ET.Element, child: ET.Element) -> None:
    """Remove ``child`` but keep the text that followed it in the document."""
    if child.tail:
        siblings = list(parent)
        index = siblings.index(child)
        if index > 0:
            previous = siblings[index - 1]
            previous.tail = (previous.tail or "") + child.tail
        else:
            parent.text = (parent.text or "") + child.tail
    parent.remove(child)


_default_sanitizer = SvgSanitizer()


def sanitize(svg: Any) -> str:
    """Sanitize SVG markup with the module-level sanitizer."""
    return _default_sanitizer.sanitize(svg)
