"""CLI entry point for the research council intelligence engine.

Usage:
    intelligence init-db
    intelligence generate https://www.linkedin.com/in/jsmith --name "John Smith" --company "Sequoia Capital"
    intelligence status 7f0c...
    intelligence worker --concurrency 2
    intelligence serve --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from intelligence.config import settings, validate_config
from intelligence.errors import JobNotFoundError
from intelligence.models import Identity, JobStatus, JobStatusView
from intelligence.store.database import init_db

console = Console()


def _setup_logging(verbose: bool = False):
    if verbose:
        settings.log_level = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_service():
    from intelligence.service import IntelligenceContext, IntelligenceService

    ctx = IntelligenceContext()
    ctx.start()
    return ctx, IntelligenceService(ctx)


def _print_status(view: JobStatusView) -> None:
    color = {
        JobStatus.completed: "green",
        JobStatus.failed: "red",
        JobStatus.processing: "yellow",
    }.get(view.status, "blue")

    table = Table(show_header=False, box=None)
    table.add_row("[bold]Job[/bold]", view.job_id)
    table.add_row("[bold]Status[/bold]", f"[{color}]{view.status.value.upper()}[/{color}]")
    table.add_row("[bold]Progress[/bold]", f"{view.progress}%")
    if view.current_step:
        table.add_row("[bold]Step[/bold]", view.current_step)
    if view.report_id:
        table.add_row("[bold]Report[/bold]", view.report_id)
    if view.report_url:
        table.add_row("[bold]URL[/bold]", view.report_url)
    if view.error_message:
        table.add_row("[bold]Error[/bold]", f"[red]{view.error_message}[/red]")
    console.print(table)


@click.group("intelligence")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Verbose logging")
def cli(verbose: bool):
    """Research council intelligence engine."""
    _setup_logging(verbose)


@cli.command("init-db")
def init_db_command():
    """Create the database tables."""
    init_db()
    console.print("[bold green]Database ready.[/bold green]")


@cli.command("generate")
@click.argument("profile_url")
@click.option("--name", "-n", required=True, help="Subject's full name")
@click.option("--company", "-c", default="", help="Current company")
@click.option("--title", "-t", default="", help="Current title")
@click.option("--location", "-l", default="", help="Location")
@click.option("--org", "org_id", default="", help="Requesting organisation id")
@click.option(
    "--queue-only",
    is_flag=True,
    default=False,
    help="Only enqueue; leave the job for a running worker",
)
def generate(
    profile_url: str,
    name: str,
    company: str,
    title: str,
    location: str,
    org_id: str,
    queue_only: bool,
):
    """Generate a report for PROFILE_URL."""
    missing = validate_config()
    identity = Identity(
        name=name,
        affiliation=company,
        title=title,
        location=location,
        external_profile_url=profile_url,
    )
    dash = "-"
    console.print(
        Panel(
            f"[bold]{identity.name}[/bold]\n"
            f"Company: {identity.affiliation or dash}  |  Title: {identity.title or dash}\n"
            f"Profile: {identity.external_profile_url}",
            title="Research Council",
            border_style="blue",
        )
    )
    if missing:
        console.print(f"[yellow]Missing configuration: {', '.join(missing)}[/yellow]")

    async def _run() -> JobStatusView:
        ctx, service = _build_service()
        try:
            job_id = await service.enqueue_generation(identity, org_id=org_id)
            console.print(f"[bold]Queued job:[/bold] {job_id}")
            if not queue_only:
                with console.status("[bold green]Running research council..."):
                    await ctx.pool.run_until_idle()
            return await service.get_job_status(job_id)
        finally:
            await ctx.close()

    view = asyncio.run(_run())
    console.print()
    _print_status(view)
    if view.status == JobStatus.failed:
        sys.exit(2)


@cli.command("status")
@click.argument("job_id")
def status(job_id: str):
    """Show progress for JOB_ID."""

    async def _run() -> JobStatusView:
        ctx, service = _build_service()
        try:
            return await service.get_job_status(job_id)
        finally:
            await ctx.close()

    try:
        view = asyncio.run(_run())
    except JobNotFoundError:
        console.print(f"[red]Error: job {job_id} not found.[/red]")
        sys.exit(1)
    _print_status(view)


@cli.command("worker")
@click.option("--concurrency", "-c", type=int, default=None, help="Jobs processed at once")
@click.option("--once", is_flag=True, default=False, help="Drain the queue and exit")
def worker(concurrency: int | None, once: bool):
    """Consume report jobs from the queue."""
    validate_config()

    async def _run():
        from intelligence.service import IntelligenceContext

        ctx = IntelligenceContext(concurrency=concurrency)
        ctx.start()
        try:
            if once:
                return await ctx.pool.run_until_idle()
            await ctx.pool.run_forever()
            return None
        finally:
            await ctx.close()

    try:
        counts = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped.[/yellow]")
        return
    if counts is not None:
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "no jobs"
        console.print(f"[bold]Processed:[/bold] {summary}")


@cli.command("serve")
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", "-p", type=int, default=8000, help="Bind port")
def serve(host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("intelligence.api:app", host=host, port=port, log_level=settings.log_level.lower())


def main():
    cli()


if __name__ == "__main__":
    main()
