"""CLI entry point for aumai-stackkeeper."""

from __future__ import annotations

import sys

import click

from .assets import list_manifests
from .config import OrchestrationContext, get_settings
from .core import CancellationToken, Orchestrator, cancellation_signals
from .errors import AssetDirectoryError
from .logging import setup_logging, summary_logger
from .models import RunReport
from .report import render


def _emit(report: RunReport, as_json: bool, ctx: OrchestrationContext | None = None) -> None:
    summary = summary_logger()
    lines = render(report, ctx)
    for line in lines:
        summary.info(line)
    if as_json:
        click.echo(report.model_dump_json(indent=2))
        return
    for line in lines:
        click.echo(line)


@click.group()
@click.version_option(package_name="aumai-stackkeeper")
def main() -> None:
    """AumAI StackKeeper: keep Ollama and Open WebUI deployed and current."""


@main.command("run")
@click.option(
    "--strict",
    is_flag=True,
    help="Exit 1 if any phase failed or ended degraded.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON.")
def run_command(strict: bool, as_json: bool) -> None:
    """Check versions, update what is stale and make sure both services run."""
    settings = get_settings()
    setup_logging(settings)
    token = CancellationToken()
    orchestrator = Orchestrator(settings, token=token)
    with cancellation_signals(token):
        report = orchestrator.run()
    _emit(report, as_json, orchestrator.context)
    sys.exit(report.exit_code(strict=strict))


@main.command("status")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
def status_command(as_json: bool) -> None:
    """Probe both services and the asset directory without changing anything."""
    settings = get_settings()
    setup_logging(settings)
    orchestrator = Orchestrator(settings)
    report = orchestrator.status()
    _emit(report, as_json, orchestrator.context)


@main.command("resolve")
def resolve_command() -> None:
    """Print the asset directory a run would use."""
    settings = get_settings()
    setup_logging(settings)
    try:
        assets = Orchestrator(settings).resolver.resolve(create=False)
    except AssetDirectoryError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Directory : {assets.path}")
    click.echo(f"Source    : {assets.source}")
    if assets.source == "missing":
        click.echo("No asset directory found; a run would create the directory above.")
        return
    click.echo(f"Manifests : {assets.manifest_count}")
    click.echo(f"Blobs     : {assets.blob_count}")
    for name in list_manifests(assets.path)[:20]:
        click.echo(f"  - {name}")


if __name__ == "__main__":
    main()
