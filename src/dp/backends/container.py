"""Containerized Structurizr pipeline backend.

An orchestration script in the workspace runs the Structurizr CLI inside a
container and exports one SVG per view:

    {script} {filename}    # single workspace file, 60s budget
    {script} --all         # every .dsl file, 120s budget

Script output is parsed for ``- <view>.svg`` success lines and ``[ERROR]``
lines; stderr counts as errors once Docker's chatter is filtered out. When
parsing finds neither views nor errors, the configured output directory is
scanned instead for SVG files written by this run, since the script's log
format varies between versions.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

from dp.backends.base import Backend
from dp.errors import BackendUnavailable, ClientError, RenderFailure, RenderTimeout
from dp.logging import LogSpan
from dp.models import BackendCapability, BackendKind, DiagramType, RenderResult, Theme
from dp.paths import get_effective_cwd, resolve_workspace_path

if TYPE_CHECKING:
    from loguru import Logger

    from dp.config import Configuration

__all__ = [
    "ContainerBackend",
    "PipelineResult",
    "RenderedView",
    "format_view_name",
    "parse_script_output",
    "scan_output_directory",
    "snapshot_output_directory",
]

SINGLE_TIMEOUT_S = 60.0
BATCH_TIMEOUT_S = 120.0
PROBE_TIMEOUT_S = 5.0

_EXECUTION_TIME = re.compile(r"Execution time:\s*(.+)", re.IGNORECASE)
_STDERR_NOISE = ("level=warning", "level=info", "obsolete", "time=")
_NUMERIC_LINE = re.compile(r"^[\d:.,\s]+$")


@dataclass(frozen=True)
class RenderedView:
    """One exported view of a Structurizr workspace."""

    key: str
    name: str
    svg_path: Path


@dataclass
class PipelineResult:
    views: list[RenderedView] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    execution_time: str | None = None


def format_view_name(key: str) -> str:
    """Turn a view key into a display name.

    >>> format_view_name("c4_context")
    'C4 Context'
    >>> format_view_name("SystemContext")
    'System Context'
    """
    spaced = re.sub(r"([A-Z])", r" \1", key.replace("_", " "))
    return " ".join(word[:1].upper() + word[1:].lower() for word in spaced.split())


def _is_stderr_noise(line: str) -> bool:
    return any(marker in line for marker in _STDERR_NOISE) or bool(_NUMERIC_LINE.match(line))


def snapshot_output_directory(output_dir: Path) -> dict[Path, int]:
    """Map each SVG in ``output_dir`` to its modification time (ns)."""
    if not output_dir.is_dir():
        return {}
    return {
        path: path.stat().st_mtime_ns for path in output_dir.glob("*.svg") if path.is_file()
    }


def scan_output_directory(
    output_dir: Path, before: Mapping[Path, int] | None = None
) -> list[RenderedView]:
    """List the SVG files in ``output_dir`` as views (empty if missing).

    With a ``before`` snapshot only files that are new or were rewritten
    since the snapshot count.
    """
    after = snapshot_output_directory(output_dir)
    return [
        RenderedView(key=path.stem, name=format_view_name(path.stem), svg_path=path)
        for path, mtime in sorted(after.items())
        if before is None or before.get(path) != mtime
    ]


def parse_script_output(
    stdout: str,
    stderr: str,
    output_dir: Path,
    before: Mapping[Path, int] | None = None,
) -> PipelineResult:
    """Extract views, errors and timing from the pipeline script's output.

    ``before`` is the output directory snapshot taken before the run; it
    limits the directory fallback to freshly written files.
    """
    result = PipelineResult()

    for raw in stdout.splitlines():
        line = raw.strip()
        if line.startswith("- ") and line.endswith(".svg"):
            filename = line[2:].strip()
            key = Path(filename).stem
            result.views.append(
                RenderedView(key=key, name=format_view_name(key), svg_path=output_dir / filename)
            )
        if "[ERROR]" in line:
            result.errors.append(line)
        match = _EXECUTION_TIME.search(line)
        if match:
            result.execution_time = match.group(1).strip()

    for raw in stderr.splitlines():
        line = raw.strip()
        if line and not _is_stderr_noise(line):
            result.errors.append(line)

    if not result.views and not result.errors:
        try:
            result.views.extend(scan_output_directory(output_dir, before))
        except OSError as e:
            result.errors.append(f"Failed to scan output directory: {e}")

    return result


class ContainerBackend(Backend):
    """Renders Structurizr DSL through the containerized pipeline script."""

    kind = BackendKind.CONTAINER

    def __init__(
        self,
        config: Configuration,
        *,
        workspace_root: Path | None = None,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(config, logger=logger)
        self.workspace_root = workspace_root or get_effective_cwd()
        settings = config.container_settings
        self.script_path = resolve_workspace_path(settings.script_path, self.workspace_root)
        self.output_dir = resolve_workspace_path(settings.output_dir, self.workspace_root)
        self.runtime = settings.runtime
        self.container_name = settings.container_name

    async def probe(self) -> BackendCapability:
        if not self.script_path.is_file():
            return self._unavailable(f"pipeline script '{self.script_path}' not found")
        try:
            process = await asyncio.create_subprocess_exec(
                self.runtime,
                "ps",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            return self._unavailable(f"container runtime '{self.runtime}' not found: {e}")
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=PROBE_TIMEOUT_S)
        except TimeoutError:
            process.kill()
            await process.wait()
            return self._unavailable(f"'{self.runtime} ps' did not answer")
        if returncode != 0:
            return self._unavailable(f"container runtime '{self.runtime}' is not running")
        return BackendCapability(
            backend_kind=self.kind,
            available=True,
            supported_types=frozenset({DiagramType.STRUCTURIZR}),
        )

    def _unavailable(self, diagnostic: str) -> BackendCapability:
        return BackendCapability(backend_kind=self.kind, available=False, diagnostic=diagnostic)

    def detect_type(self, text: str) -> DiagramType | None:
        return DiagramType.STRUCTURIZR

    async def render(
        self,
        content: str,
        diagram_type: DiagramType,
        theme: Theme = Theme.LIGHT,
        *,
        source_path: str | None = None,
    ) -> RenderResult:
        """Render the saved workspace file and return its primary view.

        The script reads the file from disk, so ``source_path`` is required;
        unsaved edits are not visible to it.
        """
        if diagram_type is not DiagramType.STRUCTURIZR:
            raise BackendUnavailable(str(self.kind), str(diagram_type))
        if not source_path:
            raise ClientError("Container rendering needs a saved .dsl file")

        result = await self.render_file(Path(source_path))
        if not result.views:
            detail = "\n".join(result.errors) or "pipeline produced no views"
            raise ClientError(detail)
        if result.errors:
            self._logger.warning(
                f"Pipeline reported {len(result.errors)} error(s) for {source_path}: {result.errors[0]}"
            )

        view = self.primary_view(result.views, Path(source_path).stem)
        try:
            async with aiofiles.open(view.svg_path, encoding="utf-8") as f:
                svg = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise RenderFailure(f"Cannot read rendered view {view.svg_path}: {e}") from e
        return RenderResult.svg(svg)

    @staticmethod
    def matching_view(views: list[RenderedView], stem: str) -> RenderedView | None:
        """Find the view named after a source file (``stem`` or ``stem-*``)."""
        for view in views:
            if view.key == stem or view.key.startswith(f"{stem}-"):
                return view
        return None

    @staticmethod
    def primary_view(views: list[RenderedView], stem: str) -> RenderedView:
        """Pick the view named after the source file, else the first one."""
        return ContainerBackend.matching_view(views, stem) or views[0]

    async def render_file(self, source: Path) -> PipelineResult:
        """Run the pipeline for one workspace file."""
        return await self._run_script([source.name], timeout=SINGLE_TIMEOUT_S, target=source.name)

    async def render_all(self) -> PipelineResult:
        """Run the pipeline for every workspace file."""
        return await self._run_script(["--all"], timeout=BATCH_TIMEOUT_S, target="--all")

    async def _run_script(self, args: list[str], *, timeout: float, target: str) -> PipelineResult:
        command = [str(self.script_path), *args]
        if sys.platform == "win32":
            command = ["cmd.exe", "/c", *command]

        with LogSpan(span="container.render", logger=self._logger, target=target) as span:
            try:
                before = snapshot_output_directory(self.output_dir)
            except OSError as e:
                raise RenderFailure(f"Cannot read output directory {self.output_dir}: {e}") from e
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.workspace_root),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise RenderFailure(f"Cannot start pipeline script {self.script_path}: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except TimeoutError as e:
                process.kill()
                await process.wait()
                raise RenderTimeout(f"Rendering pipeline timed out after {timeout:.0f}s") from e
            except asyncio.CancelledError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
                raise

            # Non-zero exits still carry per-view output worth parsing
            span.add(returncode=process.returncode)
            result = parse_script_output(
                stdout.decode("utf-8", errors="replace"),
                stderr.decode("utf-8", errors="replace"),
                self.output_dir,
                before,
            )
            span.add(views=len(result.views), errors=len(result.errors))
            if result.execution_time:
                span.add(executionTime=result.execution_time)
            return result
