"""Batch export of diagram source files.

Files are rendered by a fixed pool of worker tasks (``concurrency_limit``)
fed from a bounded queue, so a large directory never turns into unbounded
parallel subprocesses or requests. Per-file failures are recorded and the
batch carries on; the report is returned once every file has settled.

Files routed to the container backend are rendered together with a single
``--all`` pipeline run instead of one run per file; each file takes the view
named after it (``stem`` or ``stem-*``) and fails when there is none.
"""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import aiofiles

from dp.backends.container import ContainerBackend
from dp.cache import cache_key
from dp.classifier import classify, supported_extensions
from dp.errors import ClassificationAmbiguous, DiagramError
from dp.logging import LogSpan
from dp.models import BackendKind, DiagramType, RenderResult, ResultKind, Theme

if TYPE_CHECKING:
    from dp.session import Session

__all__ = ["BatchExporter", "BatchReport", "FileOutcome"]


@dataclass(frozen=True)
class FileOutcome:
    source: Path
    status: Literal["success", "failed"]
    output: Path | None = None
    error: str | None = None


@dataclass
class BatchReport:
    outcomes: list[FileOutcome] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "success")

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def failures(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def summary(self) -> str:
        return (
            f"Export complete.\n"
            f"Completed: {self.succeeded}/{self.total}\n"
            f"Failed: {self.failed}"
        )


@dataclass(frozen=True)
class _Job:
    source: Path
    output_dir: Path


class BatchExporter:
    """Renders many files with one session's backends and cache."""

    def __init__(self, session: Session, *, theme: Theme = Theme.LIGHT) -> None:
        self.session = session
        self.theme = theme
        self._logger = session.logger

    def discover(self, source_dir: Path, *, recursive: bool = False, pattern: str = "*") -> list[Path]:
        """Find diagram files by extension under ``source_dir``."""
        candidates = source_dir.rglob(pattern) if recursive else source_dir.glob(pattern)
        extensions = supported_extensions()
        return sorted(p for p in candidates if p.is_file() and p.suffix.lower() in extensions)

    async def export_directory(
        self,
        source_dir: Path | str,
        output_dir: Path | str | None = None,
        *,
        recursive: bool = False,
        pattern: str = "*",
    ) -> BatchReport:
        """Discover and render every diagram file in a directory.

        Args:
            source_dir: Directory containing diagram source files
            output_dir: Where artifacts go (default: beside each source).
                Subdirectory structure is mirrored in recursive mode.
            recursive: Search subdirectories
            pattern: Glob pattern to match files (e.g., "*.puml")

        Raises:
            FileNotFoundError: If source_dir does not exist
        """
        root = Path(source_dir)
        if not root.is_dir():
            raise FileNotFoundError(f"Directory not found: {root}")

        files = self.discover(root, recursive=recursive, pattern=pattern)
        jobs = [
            _Job(path, Path(output_dir) / path.parent.relative_to(root) if output_dir else path.parent)
            for path in files
        ]
        return await self.export(jobs)

    async def export_files(self, files: list[Path], output_dir: Path) -> BatchReport:
        """Render an explicit list of files into one output directory."""
        return await self.export([_Job(Path(f), Path(output_dir)) for f in files])

    async def export(self, jobs: list[_Job]) -> BatchReport:
        started = time.perf_counter()
        report = BatchReport()

        with LogSpan(span="batch.export", logger=self._logger, level="INFO", found=len(jobs)) as span:
            container_jobs: list[_Job] = []
            pool_jobs: list[_Job] = []
            for job in jobs:
                classification = classify(str(job.source), "", self.session.config)
                if classification is not None and classification.backend_kind is BackendKind.CONTAINER:
                    container_jobs.append(job)
                else:
                    pool_jobs.append(job)

            if container_jobs:
                report.outcomes.extend(await self._export_container(container_jobs))
            report.outcomes.extend(await self._run_pool(pool_jobs))

            report.duration_s = round(time.perf_counter() - started, 3)
            span.add(completed=report.succeeded, failed=report.failed)

        for outcome in report.failures:
            self._logger.warning(f"Export failed for {outcome.source}: {outcome.error}")
        return report

    async def _run_pool(self, jobs: list[_Job]) -> list[FileOutcome]:
        limit = self.session.config.concurrency_limit
        queue: asyncio.Queue[_Job | None] = asyncio.Queue(maxsize=limit)
        outcomes: list[FileOutcome] = []

        async def worker() -> None:
            while True:
                job = await queue.get()
                try:
                    if job is None:
                        return
                    outcomes.append(await self._export_one(job))
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(min(limit, max(len(jobs), 1)))]
        for job in jobs:
            await queue.put(job)
        for _ in workers:
            await queue.put(None)
        await asyncio.gather(*workers)
        return outcomes

    async def _export_one(self, job: _Job) -> FileOutcome:
        session = self.session
        try:
            async with aiofiles.open(job.source, encoding="utf-8") as f:
                text = await f.read()

            classification = classify(str(job.source), text, session.config)
            if classification is None:
                raise ClassificationAmbiguous(str(job.source))
            diagram_type = session.registry.resolve_type(classification, text)
            if diagram_type is None:
                raise ClassificationAmbiguous(str(job.source))

            key = cache_key(str(job.source), text)
            result = None
            if not session.registry.is_theme_aware(classification.backend_kind, diagram_type):
                result = session.cache.get(key)
            if result is None:
                result = await session.registry.render(
                    classification.backend_kind,
                    text,
                    diagram_type,
                    self.theme,
                    source_path=str(job.source),
                )
                if not session.registry.is_theme_aware(classification.backend_kind, diagram_type):
                    session.cache.set(key, result)

            if result.is_error:
                return FileOutcome(job.source, "failed", error=result.message)
            output = await self._write(result, job.output_dir / job.source.stem)
            return FileOutcome(job.source, "success", output=output)
        except (DiagramError, OSError, UnicodeDecodeError) as e:
            return FileOutcome(job.source, "failed", error=str(e))

    async def _export_container(self, jobs: list[_Job]) -> list[FileOutcome]:
        """Render all container-routed files with one pipeline run."""
        registry = self.session.registry
        capability = await registry.probe(BackendKind.CONTAINER)
        if not capability.supports(DiagramType.STRUCTURIZR):
            message = f"Container backend unavailable: {capability.diagnostic or 'not available'}"
            return [FileOutcome(job.source, "failed", error=message) for job in jobs]

        backend = registry.get(BackendKind.CONTAINER)
        assert isinstance(backend, ContainerBackend)
        try:
            pipeline = await backend.render_all()
        except DiagramError as e:
            return [FileOutcome(job.source, "failed", error=str(e)) for job in jobs]

        if not pipeline.views:
            message = "\n".join(pipeline.errors) or "pipeline produced no views"
            return [FileOutcome(job.source, "failed", error=message) for job in jobs]

        outcomes: list[FileOutcome] = []
        for job in jobs:
            # Each file needs a view named after it
            view = backend.matching_view(pipeline.views, job.source.stem)
            if view is None:
                message = f"No view produced for {job.source.name}"
                outcomes.append(FileOutcome(job.source, "failed", error=message))
                continue
            try:
                async with aiofiles.open(view.svg_path, encoding="utf-8") as f:
                    markup = await f.read()
                clean = self.session.sanitizer.sanitize(markup)
                if not clean:
                    raise DiagramError(f"Rendered view {view.svg_path} could not be parsed")
                output = await self._write(RenderResult.svg(clean), job.output_dir / job.source.stem)
                outcomes.append(FileOutcome(job.source, "success", output=output))
            except (DiagramError, OSError, UnicodeDecodeError) as e:
                outcomes.append(FileOutcome(job.source, "failed", error=str(e)))
        return outcomes

    @staticmethod
    async def _write(result: RenderResult, stem_path: Path) -> Path:
        """Write an artifact as ``<stem>.svg`` or ``<stem>.png``."""
        stem_path.parent.mkdir(parents=True, exist_ok=True)
        if result.kind is ResultKind.PNG:
            output = stem_path.with_name(f"{stem_path.name}.png")
            _, _, encoded = result.payload.partition("base64,")
            async with aiofiles.open(output, "wb") as f:
                await f.write(base64.b64decode(encoded))
        else:
            output = stem_path.with_name(f"{stem_path.name}.svg")
            async with aiofiles.open(output, "w", encoding="utf-8") as f:
                await f.write(result.payload)
        return output
