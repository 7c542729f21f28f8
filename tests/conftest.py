"""Shared fixtures for diagram-preview tests."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest


# Fake Mermaid CLI: writes an SVG naming the theme and the source's first line
_FAKE_MMDC = """
while [ $# -gt 0 ]; do
  case "$1" in
    -i) in="$2"; shift 2 ;;
    -o) out="$2"; shift 2 ;;
    -t) theme="$2"; shift 2 ;;
    *) shift ;;
  esac
done
first=$(head -n 1 "$in")
printf '<svg xmlns="http://www.w3.org/2000/svg" data-theme="%s"><text>%s</text></svg>' "$theme" "$first" > "$out"
"""

# Fake interpreter: `java -jar <archive> -tsvg <input>` writes <input stem>.svg with a script tag
_FAKE_JAVA = """
in="$4"
printf '<svg xmlns="http://www.w3.org/2000/svg"><script>alert(1)</script><rect width="1"/></svg>' > "${in%.*}.svg"
"""


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write an executable /bin/sh script into tmp_path/bin and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body.lstrip("\n"))
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def fake_mmdc(make_script: Callable[[str, str], Path]) -> Path:
    """Executable standing in for the Mermaid CLI."""
    return make_script("mmdc", _FAKE_MMDC)


@pytest.fixture
def fake_java(make_script: Callable[[str, str], Path]) -> Path:
    """Executable standing in for the interpreter running the diagram archive."""
    return make_script("java", _FAKE_JAVA)


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at an empty directory so no real user settings leak in."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("DP_CWD", raising=False)
    monkeypatch.delenv("DP_ENV", raising=False)
    assert os.environ["HOME"] == str(home)
    return home
