"""CLI entry point for diagram-preview."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from pathlib import Path

import typer
import yaml
from rich.markup import escape
from rich.table import Table

import dp
from dp._cli import console, create_cli, error_console, version_callback
from dp.batch import BatchExporter, BatchReport
from dp.classifier import classify
from dp.config import Configuration, load_configuration
from dp.errors import ClassificationAmbiguous
from dp.logging import configure_logging
from dp.models import (
    BackendCapability,
    BackendKind,
    ClassificationResult,
    RenderResult,
    ResultKind,
    Theme,
)
from dp.session import Session

app = create_cli(
    "dp",
    "Render Mermaid, PlantUML, GraphViz and Structurizr sources to sanitized SVG/PNG.",
    no_args_is_help=True,
)

config_app = typer.Typer(name="config", help="Inspect the resolved configuration.", no_args_is_help=True)
app.add_typer(config_app)


@dataclass
class _Options:
    workspace: Path | None
    environment: str | None
    log_level: str | None


@app.callback()
def main(
    ctx: typer.Context,
    _version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback("dp", dp.__version__),
        is_eager=True,
        help="Show version and exit.",
    ),
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        envvar="DP_CWD",
        help="Workspace root (default: current directory).",
        file_okay=False,
    ),
    environment: str | None = typer.Option(
        None,
        "--env",
        "-e",
        envvar="DP_ENV",
        help="Environment block of workspace.yaml to apply.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Override the configured log level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Render diagram sources with local tools, a Kroki service, or a container pipeline.

    Commands:
        render  - Render one file
        export  - Render every diagram file in a directory
        probe   - Show which backends are available
        config  - Show or validate the resolved configuration
    """
    ctx.obj = _Options(workspace=workspace, environment=environment, log_level=log_level)


def _load_config(options: _Options) -> Configuration:
    try:
        config = load_configuration(options.workspace, environment=options.environment)
    except (FileNotFoundError, ValueError) as e:
        error_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e
    configure_logging((options.log_level or config.log_level).upper())
    return config


def _session(ctx: typer.Context) -> Session:
    options: _Options = ctx.obj
    config = _load_config(options)
    root = options.workspace.resolve() if options.workspace else None
    return Session(config, workspace_root=root)


def _write_artifact(result: RenderResult, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    if result.kind is ResultKind.PNG:
        _, _, encoded = result.payload.partition("base64,")
        output.write_bytes(base64.b64decode(encoded))
    else:
        output.write_text(result.payload, encoding="utf-8")


async def _render_file(
    session: Session, file: Path, backend: BackendKind | None, theme: Theme
) -> RenderResult:
    async with session:
        text = file.read_text(encoding="utf-8")
        classification = classify(str(file), text, session.config)
        if backend is not None:
            classification = ClassificationResult(
                backend, classification.diagram_type if classification else None
            )
        if classification is None:
            return RenderResult.error(str(ClassificationAmbiguous(str(file))))
        diagram_type = session.registry.resolve_type(classification, text)
        if diagram_type is None:
            return RenderResult.error(str(ClassificationAmbiguous(str(file))))
        return await session.registry.render(
            classification.backend_kind, text, diagram_type, theme, source_path=str(file)
        )


@app.command()
def render(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Diagram source file."),
    backend: BackendKind | None = typer.Option(None, "--backend", "-b", help="Force a backend."),
    theme: Theme = typer.Option(Theme.LIGHT, "--theme", "-t", help="Theme for theme-aware renderers."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Output file (default: beside the source)."),
) -> None:
    """Render one diagram file to SVG (or PNG when the service falls back)."""
    session = _session(ctx)
    result = asyncio.run(_render_file(session, file, backend, theme))

    if result.is_error:
        error_console.print(f"[red]Render failed:[/red] {escape(result.message or '')}")
        raise typer.Exit(1)

    target = output or file.with_suffix(f".{result.kind.value}")
    if output is not None and output.suffix.lower() != f".{result.kind.value}":
        error_console.print(f"[yellow]Note:[/yellow] output is {result.kind.value.upper()}")
    _write_artifact(result, target)
    console.print(f"[green]✓[/green] {file} → {target}")


async def _export(
    session: Session, directory: Path, output_dir: Path | None, recursive: bool, pattern: str, theme: Theme
) -> BatchReport:
    async with session:
        exporter = BatchExporter(session, theme=theme)
        return await exporter.export_directory(directory, output_dir, recursive=recursive, pattern=pattern)


@app.command()
def export(
    ctx: typer.Context,
    directory: Path = typer.Argument(..., exists=True, file_okay=False, help="Directory with diagram sources."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Output directory (default: beside sources)."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Search subdirectories."),
    pattern: str = typer.Option("*", "--pattern", "-p", help="Glob pattern, e.g. '*.puml'."),
    theme: Theme = typer.Option(Theme.LIGHT, "--theme", "-t", help="Theme for theme-aware renderers."),
) -> None:
    """Render every diagram file in a directory."""
    session = _session(ctx)
    report = asyncio.run(_export(session, directory, output_dir, recursive, pattern, theme))

    if report.total == 0:
        console.print(f"No diagram source files found in {directory}")
        return

    table = Table(title=f"Export ({report.duration_s:.1f}s)")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Output / Error")
    for outcome in sorted(report.outcomes, key=lambda o: str(o.source)):
        if outcome.status == "success":
            table.add_row(str(outcome.source), "[green]ok[/green]", str(outcome.output))
        else:
            table.add_row(str(outcome.source), "[red]failed[/red]", escape(outcome.error or ""))
    console.print(table)
    console.print(report.summary())

    if report.failed:
        raise typer.Exit(1)


async def _probe(session: Session) -> dict[BackendKind, BackendCapability]:
    async with session:
        return await session.registry.probe_all(refresh=True)


@app.command()
def probe(ctx: typer.Context) -> None:
    """Show backend availability and supported diagram types."""
    capabilities = asyncio.run(_probe(_session(ctx)))

    table = Table(title="Backends")
    table.add_column("Backend")
    table.add_column("Available")
    table.add_column("Types")
    table.add_column("Diagnostic")
    for kind, capability in capabilities.items():
        table.add_row(
            kind.value,
            "[green]yes[/green]" if capability.available else "[red]no[/red]",
            ", ".join(sorted(t.value for t in capability.supported_types)),
            escape(capability.diagnostic or ""),
        )
    console.print(table)


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Print the resolved configuration as YAML."""
    config = _load_config(ctx.obj)
    data = config.model_dump(mode="json")
    if data.get("remote_auth"):
        data["remote_auth"]["credentials"] = "***"
    console.print(
        yaml.safe_dump(data, sort_keys=False), end="", markup=False, highlight=False, soft_wrap=True
    )


@config_app.command("validate")
def config_validate(ctx: typer.Context) -> None:
    """Check that every configuration layer loads and validates."""
    _load_config(ctx.obj)
    console.print("[green]✓[/green] Configuration is valid")


def cli() -> None:
    """Run the CLI application."""
    app()


if __name__ == "__main__":
    cli()
