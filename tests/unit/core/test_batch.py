"""Unit tests for batch export."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from dp.backends.remote import decode_source
from dp.batch import BatchExporter, BatchReport
from dp.config import Configuration
from dp.session import Session

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are shell scripts")

PNG_BYTES = b"\x89PNG\r\n\x1a\nbatch"


def _svg_handler(request: httpx.Request) -> httpx.Response:
    source = decode_source(request.url.path.rsplit("/", 1)[-1])
    if "bad" in source:
        return httpx.Response(400, text="Error: syntax error in line 1")
    return httpx.Response(200, text='<svg xmlns="http://www.w3.org/2000/svg"><g/></svg>')


def _export(
    workspace: Path,
    handler: Callable[[httpx.Request], object],
    run: Callable[[BatchExporter], object],
    **overrides: object,
) -> BatchReport:
    settings = {"remote_rate_limit_ms": 0, "format_fallback": False, **overrides}

    async def scenario() -> BatchReport:
        session = Session(
            Configuration(**settings),
            workspace_root=workspace,
            transport=httpx.MockTransport(handler),
        )
        async with session:
            return await run(BatchExporter(session))

    return asyncio.run(scenario())


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.mark.unit
@pytest.mark.core
def test_recursive_export_mirrors_tree_and_records_failures(tmp_path: Path) -> None:
    src = tmp_path / "diagrams"
    _write(src / "a.dot", "digraph { a }")
    _write(src / "sub" / "b.gv", "digraph { b }")
    _write(src / "sub" / "bad.dot", "digraph { bad")
    _write(src / "README.txt", "not a diagram")
    out = tmp_path / "out"

    report = _export(
        tmp_path, _svg_handler, lambda e: e.export_directory(src, out, recursive=True)
    )

    assert report.total == 3
    assert report.succeeded == 2
    assert report.failed == 1
    assert (out / "a.svg").read_text().startswith("<svg")
    assert (out / "sub" / "b.svg").is_file()
    assert not (out / "sub" / "bad.svg").exists()
    (failure,) = report.failures
    assert failure.source == src / "sub" / "bad.dot"
    assert "HTTP 400" in failure.error
    assert report.summary() == "Export complete.\nCompleted: 2/3\nFailed: 1"


@pytest.mark.unit
@pytest.mark.core
def test_non_recursive_export_writes_beside_sources(tmp_path: Path) -> None:
    src = tmp_path / "diagrams"
    _write(src / "a.dot", "digraph { a }")
    _write(src / "nested" / "b.dot", "digraph { b }")

    report = _export(tmp_path, _svg_handler, lambda e: e.export_directory(src))

    assert report.total == 1
    assert (src / "a.svg").is_file()
    assert not (src / "nested" / "b.svg").exists()


@pytest.mark.unit
@pytest.mark.core
def test_pattern_filters_files(tmp_path: Path) -> None:
    src = tmp_path / "diagrams"
    _write(src / "a.dot", "digraph { a }")
    _write(src / "b.gv", "digraph { b }")

    report = _export(
        tmp_path, _svg_handler, lambda e: e.export_directory(src, tmp_path / "out", pattern="*.gv")
    )

    assert [o.source.name for o in report.outcomes] == ["b.gv"]


@pytest.mark.unit
@pytest.mark.core
def test_png_fallback_is_written_as_png(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.split("/")[2] == "svg":
            return httpx.Response(500, text="svg renderer down")
        return httpx.Response(200, content=PNG_BYTES)

    _write(tmp_path / "chart.ditaa", "+--+\n|  |\n+--+")
    out = tmp_path / "out"

    report = _export(
        tmp_path,
        handler,
        lambda e: e.export_files([tmp_path / "chart.ditaa"], out),
        format_fallback=True,
    )

    assert report.succeeded == 1
    assert report.outcomes[0].output == out / "chart.png"
    assert (out / "chart.png").read_bytes() == PNG_BYTES


@pytest.mark.unit
@pytest.mark.core
def test_concurrency_is_bounded(tmp_path: Path) -> None:
    active = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.05)
        active -= 1
        return httpx.Response(200, text="<svg><g/></svg>")

    src = tmp_path / "diagrams"
    for i in range(7):
        _write(src / f"d{i}.dot", f"digraph {{ n{i} }}")

    report = _export(
        tmp_path,
        handler,
        lambda e: e.export_directory(src, tmp_path / "out"),
        concurrency_limit=2,
    )

    assert report.succeeded == 7
    assert 1 <= peak <= 2


@pytest.mark.unit
@pytest.mark.core
def test_unclassifiable_file_fails_alone(tmp_path: Path) -> None:
    good = _write(tmp_path / "a.dot", "digraph { a }")
    prose = _write(tmp_path / "notes.txt", "hello there")

    report = _export(
        tmp_path, _svg_handler, lambda e: e.export_files([good, prose], tmp_path / "out")
    )

    assert report.succeeded == 1
    (failure,) = report.failures
    assert failure.error == f"Unable to determine diagram type for {prose}"


@pytest.mark.unit
@pytest.mark.core
def test_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        _export(tmp_path, _svg_handler, lambda e: e.export_directory(tmp_path / "absent"))


@pytest.mark.unit
@pytest.mark.core
@posix_only
def test_container_files_share_one_pipeline_run(
    tmp_path: Path, make_script: Callable[[str, str], Path]
) -> None:
    script = make_script(
        "render.sh",
        """
echo run >> runs.log
mkdir -p out
for f in *.dsl; do
  stem="${f%.dsl}"
  printf '<svg xmlns="http://www.w3.org/2000/svg"><script>x()</script><text>%s</text></svg>' "$stem" > "out/$stem.svg"
  echo "- $stem.svg"
done
""",
    )
    docker = make_script("docker", "exit 0\n")
    _write(tmp_path / "shop.dsl", 'workspace "Shop" {}')
    _write(tmp_path / "bank.dsl", 'workspace "Bank" {}')
    out = tmp_path / "exported"

    report = _export(
        tmp_path,
        _svg_handler,
        lambda e: e.export_directory(tmp_path, out, pattern="*.dsl"),
        backend_preference={"structurizr": "container"},
        container_settings={"script_path": str(script), "output_dir": "out", "runtime": str(docker)},
    )

    assert report.succeeded == 2
    assert (tmp_path / "runs.log").read_text().count("run") == 1
    shop = (out / "shop.svg").read_text()
    assert "<text>shop</text>" in shop
    assert "script" not in shop


def _container_settings(script: Path, docker: Path) -> dict[str, object]:
    return {
        "backend_preference": {"structurizr": "container"},
        "container_settings": {
            "script_path": str(script),
            "output_dir": "out",
            "runtime": str(docker),
        },
    }


@pytest.mark.unit
@pytest.mark.core
@posix_only
def test_container_files_without_a_named_view_fail(
    tmp_path: Path, make_script: Callable[[str, str], Path]
) -> None:
    script = make_script(
        "render.sh",
        """
mkdir -p out
printf '<svg xmlns="http://www.w3.org/2000/svg"><g/></svg>' > out/SystemContext.svg
echo "- SystemContext.svg"
""",
    )
    docker = make_script("docker", "exit 0\n")
    _write(tmp_path / "shop.dsl", 'workspace "Shop" {}')
    _write(tmp_path / "bank.dsl", 'workspace "Bank" {}')
    out = tmp_path / "exported"

    report = _export(
        tmp_path,
        _svg_handler,
        lambda e: e.export_directory(tmp_path, out, pattern="*.dsl"),
        **_container_settings(script, docker),
    )

    assert report.succeeded == 0
    assert sorted(o.error for o in report.failures) == [
        "No view produced for bank.dsl",
        "No view produced for shop.dsl",
    ]
    assert not out.exists()


@pytest.mark.unit
@pytest.mark.core
@posix_only
def test_undecodable_container_view_fails_alone(
    tmp_path: Path, make_script: Callable[[str, str], Path]
) -> None:
    script = make_script(
        "render.sh", "mkdir -p out\nprintf '\\377\\376' > out/shop.svg\necho '- shop.svg'\n"
    )
    docker = make_script("docker", "exit 0\n")
    shop = _write(tmp_path / "shop.dsl", 'workspace "Shop" {}')
    ok = _write(tmp_path / "ok.dot", "digraph { a -> b }")
    out = tmp_path / "exported"

    report = _export(
        tmp_path,
        _svg_handler,
        lambda e: e.export_files([shop, ok], out),
        **_container_settings(script, docker),
    )

    outcomes = {o.source.name: o for o in report.outcomes}
    assert outcomes["shop.dsl"].status == "failed"
    assert "utf-8" in outcomes["shop.dsl"].error
    assert outcomes["ok.dot"].status == "success"
    assert (out / "ok.svg").is_file()
