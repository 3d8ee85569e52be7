"""Command Line Interface for fhirgen.

This module provides a CLI using Typer for running the generator, inspecting
specification bundles and showing the effective configuration.

Exit codes:
    - 0: generation succeeded
    - 1: any fatal error (the aggregated errors are printed to stderr)
    - 130: interrupted by the user
"""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from fhirgen import __version__
from fhirgen.adapters.loaders.json_bundle_loader import JsonBundleLoader
from fhirgen.domain.services.orchestrator import CancellationToken, PipelineReport
from fhirgen.infrastructure.generation_report import generate_generation_report
from fhirgen.infrastructure.logging_config import setup_logging
from fhirgen.infrastructure.settings import settings
from fhirgen.main import run_generation

# Initialize Typer app and Rich consoles
app = typer.Typer(
    name="fhirgen",
    help="fhirgen: FHIR specification to pydantic model generator",
    add_completion=False
)
console = Console()
err_console = Console(stderr=True)


def _print_errors(report: PipelineReport, limit: int = 50) -> None:
    errors = report.fatal_errors
    if not errors:
        return
    err_console.print(f"\n[bold red]{len(errors)} fatal errors:[/bold red]")
    for error in errors[:limit]:
        err_console.print(f"  [red]✗[/red] {error.describe()}", markup=False, highlight=False)
    if len(errors) > limit:
        err_console.print(f"  ... and {len(errors) - limit} more (see --report)")


@app.command()
def generate(
    input_dir: Path = typer.Argument(..., help="Directory with the specification bundles", exists=True,
                                     file_okay=False),
    output_dir: Path = typer.Argument(..., help="Output directory"),
    permissive: bool = typer.Option(False, "--permissive", help="Log unknown JSON keys instead of failing"),
    package_name: Optional[str] = typer.Option(None, "--package-name", "-p", help="Generated package name"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Thread pool size"),
    report_path: Optional[Path] = typer.Option(None, "--report", "-r", help="Write the JSON generation report here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    """Generate pydantic models from a FHIR specification directory."""
    setup_logging(use_json=json_logs or settings.json_logs,
                  log_level="DEBUG" if verbose else settings.log_level)

    try:
        config = settings.config_manager.get_generator_config(
            input_dir=input_dir,
            output_dir=output_dir,
            strict=False if permissive else None,
            package_name=package_name,
            max_workers=workers,
            report_path=report_path,
        )
    except ValidationError as e:
        err_console.print(f"[red]✗[/red] Invalid configuration: {e.errors()[0]['msg']}")
        raise typer.Exit(code=1)

    console.print(f"\n[bold blue]fhirgen {__version__}[/bold blue]")
    console.print(f"[dim]Input directory:[/dim] {config.input_dir}")
    console.print(f"[dim]Output directory:[/dim] {config.output_dir}")
    console.print(f"[dim]Mode:[/dim] {'strict' if config.strict else 'permissive'}")
    console.print()

    cancellation = CancellationToken()
    try:
        with console.status("[bold green]Generating models..."):
            report = run_generation(config, cancellation)
    except KeyboardInterrupt:
        cancellation.cancel()
        err_console.print("\n[yellow]⚠[/yellow] Generation interrupted by user")
        raise typer.Exit(code=130)

    summary = generate_generation_report(report).value
    summary_table = Table(show_header=True, header_style="bold")
    summary_table.add_column("Phase", style="cyan")
    summary_table.add_column("Count", justify="right")
    for phase, count in summary["counts"].items():
        summary_table.add_row(phase, str(count))
    for kind, count in summary["error_counts"].items():
        summary_table.add_row(f"[yellow]{kind}[/yellow]", str(count))
    console.print("[bold]Generation Summary:[/bold]")
    console.print(summary_table)

    if config.report_path:
        console.print(f"\n[green]✓[/green] Report saved: {config.report_path}")

    if report.success:
        console.print(f"\n[green]✓[/green] Generated {len(report.files_written)} files")
        raise typer.Exit(code=0)

    _print_errors(report)
    if report.cancelled:
        raise typer.Exit(code=130)
    err_console.print("\n[red]✗[/red] Generation failed")
    raise typer.Exit(code=1)


@app.command()
def inspect(
    input_dir: Path = typer.Argument(..., help="Directory with the specification bundles", exists=True,
                                     file_okay=False),
    permissive: bool = typer.Option(True, "--permissive/--strict", help="Fail on unknown JSON keys"),
) -> None:
    """Load the bundles and print an inventory of their resources."""
    setup_logging(use_json=settings.json_logs, log_level="WARNING")
    loader = JsonBundleLoader(strict=not permissive)
    result = loader.load_directory(input_dir)
    if result.is_failure():
        for error in result.errors():
            err_console.print(f"  [red]✗[/red] {error.describe()}", markup=False, highlight=False)
        raise typer.Exit(code=1)

    specification = result.value
    console.print(f"[bold blue]Specification inventory[/bold blue] "
                  f"(FHIR {specification.fhir_version or 'unknown'})\n")
    table = Table(show_header=True, header_style="bold")
    table.add_column("File", style="cyan")
    table.add_column("Resource type")
    table.add_column("Count", justify="right")
    for source, per_type in specification.inventory().items():
        for resource_type, count in sorted(per_type.items()):
            table.add_row(source, resource_type, str(count))
    console.print(table)

    warnings = result.errors()
    if warnings:
        console.print(f"\n[yellow]⚠[/yellow] {len(warnings)} warnings (unknown fields or unreadable version.info)")


@app.command()
def info() -> None:
    """Display configuration defaults."""
    console.print("[bold blue]fhirgen configuration[/bold blue]\n")

    defaults = settings.config_manager.get_generator_config()
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Log level:", settings.log_level)
    info_table.add_row("Strict loading:", "Enabled" if defaults.strict else "Disabled")
    info_table.add_row("Parallel load:", "Enabled" if defaults.parallel_load else "Disabled")
    info_table.add_row("Parallel emit:", "Enabled" if defaults.parallel_emit else "Disabled")
    info_table.add_row("Workers:", str(defaults.max_workers))
    info_table.add_row("Name suffix budget:", str(defaults.name_suffix_budget))
    info_table.add_row("Specification base URL:", defaults.specification_base_url)

    console.print(info_table)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"fhirgen v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information",
                                 callback=_version_callback, is_eager=True)
) -> None:
    """fhirgen: FHIR specification to pydantic model generator."""


if __name__ == "__main__":
    app()
