"""Smoke tests for the dp CLI."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from dp_cli.cli import app

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are shell scripts")

runner = CliRunner()


def _workspace_settings(root: Path, data: dict) -> None:
    settings = root / ".diagram-preview" / "workspace.yaml"
    settings.parent.mkdir(parents=True, exist_ok=True)
    settings.write_text(yaml.safe_dump(data))


@pytest.mark.smoke
def test_dp_help() -> None:
    """Verify dp --help lists the commands."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("render", "export", "probe", "config"):
        assert command in result.output


@pytest.mark.smoke
def test_dp_version() -> None:
    """Verify dp --version prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.startswith("dp ")


@pytest.mark.smoke
def test_config_show_masks_credentials(tmp_path: Path, isolated_home: Path) -> None:
    _workspace_settings(
        tmp_path,
        {"debounce_ms": 120, "remote_auth": {"type": "bearer", "credentials": "hunter2"}},
    )

    result = runner.invoke(app, ["--workspace", str(tmp_path), "config", "show"])

    assert result.exit_code == 0
    shown = yaml.safe_load(result.stdout)
    assert shown["debounce_ms"] == 120
    assert shown["remote_endpoint"] == "https://kroki.io"
    assert shown["remote_auth"] == {"type": "bearer", "credentials": "***"}
    assert "hunter2" not in result.output


@pytest.mark.smoke
def test_config_validate(tmp_path: Path, isolated_home: Path) -> None:
    result = runner.invoke(app, ["--workspace", str(tmp_path), "config", "validate"])

    assert result.exit_code == 0
    assert "Configuration is valid" in result.output


@pytest.mark.smoke
def test_config_validate_reports_invalid_yaml(tmp_path: Path, isolated_home: Path) -> None:
    settings = tmp_path / ".diagram-preview" / "workspace.yaml"
    settings.parent.mkdir()
    settings.write_text("debounce_ms: [unclosed\n")

    result = runner.invoke(app, ["--workspace", str(tmp_path), "config", "validate"])

    assert result.exit_code == 1
    assert "Invalid YAML" in result.output


@pytest.mark.smoke
@posix_only
def test_render_mermaid_with_local_cli(
    tmp_path: Path, isolated_home: Path, fake_mmdc: Path
) -> None:
    _workspace_settings(tmp_path, {"local_tool_paths": {"cli_path": str(fake_mmdc)}})
    source = tmp_path / "flow.mmd"
    source.write_text("flowchart LR\n  A --> B\n")

    result = runner.invoke(
        app, ["--workspace", str(tmp_path), "render", str(source), "--theme", "dark"]
    )

    assert result.exit_code == 0, result.output
    svg = (tmp_path / "flow.svg").read_text()
    assert 'data-theme="dark"' in svg
    assert "flowchart LR" in svg


@pytest.mark.smoke
def test_render_unclassifiable_file_fails(tmp_path: Path, isolated_home: Path) -> None:
    source = tmp_path / "notes.txt"
    source.write_text("just prose\n")

    result = runner.invoke(app, ["--workspace", str(tmp_path), "render", str(source)])

    assert result.exit_code == 1
    assert "Unable to determine diagram type" in result.output
    assert not (tmp_path / "notes.svg").exists()


@pytest.mark.smoke
def test_export_empty_directory(tmp_path: Path, isolated_home: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()

    result = runner.invoke(app, ["--workspace", str(tmp_path), "export", str(empty)])

    assert result.exit_code == 0
    assert "No diagram source files found" in result.output


@pytest.mark.smoke
@posix_only
def test_export_directory(tmp_path: Path, isolated_home: Path, fake_mmdc: Path) -> None:
    _workspace_settings(tmp_path, {"local_tool_paths": {"cli_path": str(fake_mmdc)}})
    src = tmp_path / "diagrams"
    src.mkdir()
    (src / "one.mmd").write_text("pie\n")
    (src / "two.mmd").write_text("gantt\n")
    out = tmp_path / "out"

    result = runner.invoke(
        app, ["--workspace", str(tmp_path), "export", str(src), "--output-dir", str(out)]
    )

    assert result.exit_code == 0, result.output
    assert (out / "one.svg").is_file()
    assert (out / "two.svg").is_file()
    assert "Completed: 2/2" in result.output


@pytest.mark.smoke
def test_probe_lists_backends(tmp_path: Path, isolated_home: Path) -> None:
    result = runner.invoke(app, ["--workspace", str(tmp_path), "probe"])

    assert result.exit_code == 0
    assert "Backends" in result.output
    assert "remote" in result.output
