"""Local toolchain backend.

Two independent tools:
    - a diagram archive run through an interpreter
      (``{interpreter} -jar {archive} -tsvg {input}``), rendering PlantUML
      and Structurizr and writing ``<input stem>.svg`` beside the input
    - the Mermaid CLI (``{cli} -i {input} -o {output} -t {theme}``)

Either tool alone is a valid partial installation. Scratch files live in a
private temporary directory that is removed whether or not the render works.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

from dp.backends.base import Backend
from dp.errors import BackendUnavailable, ClientError, RenderFailure
from dp.logging import LogSpan
from dp.models import BackendCapability, BackendKind, DiagramType, RenderResult, Theme
from dp.paths import get_effective_cwd, resolve_workspace_path

if TYPE_CHECKING:
    from loguru import Logger

    from dp.config import Configuration

__all__ = ["LocalBackend"]

ARCHIVE_TYPES = frozenset({DiagramType.PLANTUML, DiagramType.STRUCTURIZR})
CLI_TYPES = frozenset({DiagramType.MERMAID})

# Scratch input suffix per diagram type
SCRATCH_SUFFIX = {
    DiagramType.PLANTUML: ".puml",
    DiagramType.STRUCTURIZR: ".dsl",
    DiagramType.MERMAID: ".mmd",
}

# Longest stderr kept in a diagnostic
MAX_DIAGNOSTIC_LENGTH = 2000


def _which(command: str) -> str | None:
    """Resolve a command name or path to an executable, if reachable."""
    found = shutil.which(command)
    if found:
        return found
    candidate = Path(command).expanduser()
    if candidate.is_file():
        return str(candidate)
    return None


class LocalBackend(Backend):
    """Renders with locally installed tools."""

    kind = BackendKind.LOCAL

    def __init__(
        self,
        config: Configuration,
        *,
        workspace_root: Path | None = None,
        logger: Logger | None = None,
    ) -> None:
        super().__init__(config, logger=logger)
        self.workspace_root = workspace_root or get_effective_cwd()
        tools = config.local_tool_paths
        self.archive_path = resolve_workspace_path(tools.archive_path, self.workspace_root)
        self.cli_path = tools.cli_path
        self.interpreter_path = tools.interpreter_path

    async def probe(self) -> BackendCapability:
        supported: set[DiagramType] = set()
        missing: list[str] = []

        if _which(self.interpreter_path) and self.archive_path.is_file():
            supported |= ARCHIVE_TYPES
        else:
            if not _which(self.interpreter_path):
                missing.append(f"interpreter '{self.interpreter_path}' not found")
            if not self.archive_path.is_file():
                missing.append(f"archive '{self.archive_path}' not found")

        if _which(self.cli_path):
            supported |= CLI_TYPES
        else:
            missing.append(f"Mermaid CLI '{self.cli_path}' not found")

        return BackendCapability(
            backend_kind=self.kind,
            available=bool(supported),
            supported_types=frozenset(supported),
            diagnostic="; ".join(missing) or None,
        )

    def detect_type(self, text: str) -> DiagramType | None:
        trimmed = text.strip()
        if trimmed.startswith("@start"):
            return DiagramType.PLANTUML
        if trimmed.startswith("workspace"):
            return DiagramType.STRUCTURIZR
        return DiagramType.MERMAID

    def is_theme_aware(self, diagram_type: DiagramType) -> bool:
        return diagram_type in CLI_TYPES

    async def render(
        self,
        content: str,
        diagram_type: DiagramType,
        theme: Theme = Theme.LIGHT,
        *,
        source_path: str | None = None,
    ) -> RenderResult:
        if diagram_type not in ARCHIVE_TYPES | CLI_TYPES:
            raise BackendUnavailable(str(self.kind), str(diagram_type))

        scratch = Path(tempfile.mkdtemp(prefix="dp-local-"))
        try:
            input_path = scratch / f"diagram{SCRATCH_SUFFIX[diagram_type]}"
            async with aiofiles.open(input_path, "w", encoding="utf-8") as f:
                await f.write(content)

            if diagram_type in CLI_TYPES:
                output_path = scratch / "diagram.svg"
                command = [
                    self.cli_path,
                    "-i", str(input_path),
                    "-o", str(output_path),
                    "-t", self.config.mermaid_theme.for_theme(theme),
                ]
            else:
                output_path = input_path.with_suffix(".svg")
                command = [
                    self.interpreter_path,
                    "-jar", str(self.archive_path),
                    "-tsvg", str(input_path),
                ]

            with LogSpan(
                span="local.render",
                logger=self._logger,
                diagramType=str(diagram_type),
                tool=command[0],
            ) as span:
                returncode, stderr = await self._run(command, cwd=scratch)
                span.add(returncode=returncode)

                if returncode != 0:
                    detail = stderr.strip()[:MAX_DIAGNOSTIC_LENGTH] or f"exit code {returncode}"
                    raise ClientError(f"{Path(command[0]).name} failed: {detail}")
                if not output_path.is_file():
                    raise RenderFailure(f"{Path(command[0]).name} produced no output file")

                try:
                    async with aiofiles.open(output_path, encoding="utf-8") as f:
                        svg = await f.read()
                except (OSError, UnicodeDecodeError) as e:
                    raise RenderFailure(
                        f"Cannot read {Path(command[0]).name} output: {e}"
                    ) from e
                span.add(outputLen=len(svg))
            return RenderResult.svg(svg)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    async def _run(self, command: list[str], *, cwd: Path) -> tuple[int, str]:
        """Run a tool to completion; returns (exit code, stderr)."""
        if sys.platform == "win32" and command[0].lower().endswith((".cmd", ".bat")):
            command = ["cmd.exe", "/c", *command]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RenderFailure(f"Cannot start {Path(command[0]).name}: {e}") from e
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            # The scratch directory is removed next; the tool must be gone first
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise
        return process.returncode or 0, stderr.decode("utf-8", errors="replace")
