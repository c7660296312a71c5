"""CLI: python -m ml_job_crawler"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import load_config
from .errors import InvalidRequest
from .models import RunStatus
from .orchestrator import CrawlService
from .runs import Run, RunRegistry
from .sources import build_sources

app = typer.Typer(help="Machine-learning job crawler with live run progress")
console = Console()

_LEVEL_STYLE = {"info": "", "warning": "yellow", "error": "bold red"}


async def _run_and_stream(service: CrawlService, mode: str, token: Optional[str]) -> Run:
    run = service.start(mode, token)
    subscription = run.subscribe()
    try:
        async for message in subscription:
            if message["type"] == "snapshot":
                continue
            if message.get("message"):
                style = _LEVEL_STYLE.get(message.get("level", "info")) or None
                console.print(
                    f"{message['progress']:>3}% {message['message']}",
                    style=style, markup=False, highlight=False,
                )
    finally:
        subscription.close()
    return await service.wait(run)


@app.command()
def crawl(
    mode: str = typer.Option("standard", "--mode", "-m", help="standard or advanced"),
    token: Optional[str] = typer.Option(
        None, "--token", "-t", envvar="OPENAI_API_KEY", help="LLM credential (advanced mode)",
    ),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config override"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write JSON run snapshot to file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one crawl and stream its progress."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    cfg = load_config(config)
    service = CrawlService(RunRegistry(cfg.runs.max_events), cfg)
    # Only pass the token through where it is used, so a stray OPENAI_API_KEY doesn't matter
    llm_token = token if mode == "advanced" else None

    try:
        run = asyncio.run(_run_and_stream(service, mode, llm_token))
    except InvalidRequest as exc:
        console.print(f"[bold red]Invalid request:[/bold red] {exc}")
        raise typer.Exit(2)

    table = Table(title=f"Crawl Run {run.id}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Mode", run.mode.value)
    table.add_row("Status", run.status.value)
    table.add_row("Progress", f"{run.progress}%")
    table.add_row("Jobs", str(len(run.jobs)))
    console.print(table)

    if run.jobs:
        jobs_table = Table(title="ML Jobs")
        jobs_table.add_column("#", justify="right", style="dim")
        jobs_table.add_column("Title")
        jobs_table.add_column("Company")
        jobs_table.add_column("Source")
        jobs_table.add_column("Fit", justify="right")
        jobs_table.add_column("URL", style="cyan")

        for i, job in enumerate(run.jobs, 1):
            jobs_table.add_row(
                str(i),
                job.title[:60],
                job.company[:30],
                job.source,
                "" if job.fit_score is None else f"{job.fit_score:.0f}",
                job.url[:80],
            )
        console.print(jobs_table)

    if output:
        output.write_text(json.dumps(run.snapshot(), indent=2))
        console.print(f"\nJSON written to [bold]{output}[/bold]")

    if run.status is RunStatus.failed:
        raise typer.Exit(1)


@app.command()
def sources(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config override"),
):
    """Show the configured job sources."""
    cfg = load_config(config)
    active = {s.name for s in build_sources(cfg)}

    table = Table(title="Job Sources")
    table.add_column("Name", style="bold")
    table.add_column("Label")
    table.add_column("Enabled")
    table.add_column("URL", style="cyan")
    for target in cfg.sources.targets:
        table.add_row(
            target.name,
            target.display_name,
            "yes" if target.name in active else "no",
            target.url,
        )
    console.print(table)
    console.print(f"Concurrent fetch: {'on' if cfg.sources.concurrent else 'off'}")


if __name__ == "__main__":
    app()
