"""CLI commands for queueing coverage jobs and running the job processor."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, NoReturn, Optional

import typer

from .agents import AGENTS, get_agent
from .config import Settings, load_settings
from .errors import CoverageBotError
from .orchestrator import JobOrchestrator
from .scheduler import JobScheduler
from .service import JobService
from .storage.schema import AiProvider, AnalysisJob, ImprovementJob
from .storage.store import AnyJob, CoverageStore

APP_HELP = "Coverage bot: measure test coverage and open PRs with generated tests."

app = typer.Typer(help=APP_HELP, no_args_is_help=True)


@dataclass(slots=True)
class CliState:
    config_path: Optional[Path] = None


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to coverage-bot.yaml (defaults to ./coverage-bot.yaml when present).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CliState(config_path=config)


def _settings(ctx: typer.Context) -> Settings:
    state: CliState = ctx.obj or CliState()
    try:
        return load_settings(state.config_path)
    except CoverageBotError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error


@contextmanager
def _open_store(settings: Settings) -> Iterator[CoverageStore]:
    with CoverageStore(settings.database_path) as store:
        yield store


def _fail(error: Exception) -> NoReturn:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1) from error


def _render_job(job: AnyJob) -> None:
    typer.echo(f"Job {job.id} [{job.type}] {job.status.value} {job.progress}%")
    typer.echo(f"  Repository: {job.repository_id}")
    if isinstance(job, AnalysisJob):
        typer.echo(f"  Source: {job.repository_url} ({job.branch})")
        if job.status.value == "completed":
            typer.echo(f"  Files found: {job.files_found} | below threshold: {job.files_below_threshold}")
    elif isinstance(job, ImprovementJob):
        typer.echo(f"  Provider: {job.ai_provider.value} | attempts: {job.attempts}")
        for path in job.file_paths:
            typer.echo(f"  - {path}")
        if job.pr_url:
            typer.echo(f"  Pull request: {job.pr_url}")
    if job.error:
        typer.echo(f"  Error: {job.error}")


@app.command()
def analyze(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="GitHub repository URL (https or ssh)."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to analyse."),
) -> None:
    """Queue a coverage analysis for a repository."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        try:
            result = JobService(store, default_provider=settings.default_ai_provider).start_analysis(url, branch)
        except (CoverageBotError, ValueError) as error:
            _fail(error)
    if result.is_existing:
        typer.echo(f"Analysis already queued: {result.job.id} ({result.job.status.value})")
    else:
        typer.echo(f"Queued analysis job {result.job.id}")
    typer.echo(f"Repository: {result.job.repository_id}")


@app.command()
def improve(
    ctx: typer.Context,
    repo_id: str = typer.Argument(..., help="Repository id from `covbot analyze`."),
    file_ids: List[str] = typer.Option([], "--file-id", "-f", help="Coverage file id (repeatable)."),
    all_below: Optional[float] = typer.Option(
        None,
        "--all-below",
        help="Target every file below this coverage percentage.",
    ),
    provider: Optional[AiProvider] = typer.Option(None, "--provider", "-p", help="AI provider to use."),
) -> None:
    """Queue an improvement job for one or more coverage files."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        service = JobService(store, default_provider=settings.default_ai_provider)
        try:
            targets = list(file_ids)
            if all_below is not None:
                targets.extend(record.id for record in service.files_below_threshold(repo_id, all_below))
            if not targets:
                typer.echo("No files selected; pass --file-id or --all-below.", err=True)
                raise typer.Exit(code=1)
            result = service.start_improvement(repo_id, targets, provider)
        except (CoverageBotError, ValueError) as error:
            _fail(error)
    if result.is_existing:
        typer.echo(f"Improvement already queued for these files: {result.job.id}")
    else:
        typer.echo(f"Queued improvement job {result.job.id}")
    _render_job(result.job)


@app.command()
def jobs(
    ctx: typer.Context,
    repo_id: Optional[str] = typer.Option(None, "--repo-id", "-r", help="Only show jobs for this repository."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of jobs to list."),
) -> None:
    """List recent jobs, newest first."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        listed = JobService(store).list_jobs(repo_id, limit=limit)
    if not listed:
        typer.echo("No jobs found.")
        return
    for job in listed:
        typer.echo(f"{job.id}  {job.type:<11} {job.status.value:<9} {job.progress:>3}%  {job.repository_id}")


@app.command()
def status(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id."),
) -> None:
    """Show the current state of a job."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        try:
            job = JobService(store).get_job(job_id)
        except CoverageBotError as error:
            _fail(error)
    _render_job(job)


@app.command()
def cancel(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id."),
) -> None:
    """Cancel a pending or running job."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        try:
            job = JobService(store).cancel(job_id)
        except CoverageBotError as error:
            _fail(error)
    typer.echo(f"Cancelled job {job.id}")


@app.command()
def coverage(
    ctx: typer.Context,
    repo_id: str = typer.Argument(..., help="Repository id."),
    below: Optional[float] = typer.Option(None, "--below", help="Only list files under this percentage."),
) -> None:
    """Show stored per-file coverage for a repository."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        try:
            repository, files = JobService(store).coverage(repo_id)
        except CoverageBotError as error:
            _fail(error)
    analysed = repository.last_analyzed_at.isoformat() if repository.last_analyzed_at else "never"
    typer.echo(f"{repository.full_name} ({repository.branch}) last analysed: {analysed}")
    if below is not None:
        files = [record for record in files if record.coverage_percentage < below]
    if not files:
        typer.echo("No coverage data.")
        return
    threshold = settings.coverage_threshold
    for record in files:
        marker = "!" if record.coverage_percentage < threshold else " "
        typer.echo(f"{marker} {record.coverage_percentage:5.1f}%  {record.status.value:<9} {record.path}  [{record.id}]")


@app.command("run-next")
def run_next(ctx: typer.Context) -> None:
    """Process one eligible job in the foreground."""
    settings = _settings(ctx)
    with _open_store(settings) as store:
        job = JobOrchestrator(store, settings).process_next_job()
    if job is None:
        typer.echo("No eligible jobs.")
        return
    _render_job(job)
    if job.status.value != "completed":
        raise typer.Exit(code=1)


@app.command()
def worker(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        help="Seconds between polls (defaults to JOB_POLL_INTERVAL_MS).",
    ),
) -> None:
    """Run the job scheduler until interrupted."""
    settings = _settings(ctx)
    if not settings.enable_job_processor:
        typer.echo("Job processor is disabled (ENABLE_JOB_PROCESSOR=false).", err=True)
        raise typer.Exit(code=1)
    with _open_store(settings) as store:
        scheduler = JobScheduler(JobOrchestrator(store, settings), interval=interval or settings.poll_interval_s)
        scheduler.start()
        typer.echo(f"Worker started; polling every {scheduler.interval:.1f}s. Press Ctrl+C to stop.")
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            typer.echo("Stopping worker...")
        finally:
            scheduler.stop()


@app.command()
def providers(ctx: typer.Context) -> None:
    """Report which AI providers have credentials available."""
    settings = _settings(ctx)
    for provider in AGENTS:
        agent = get_agent(provider, timeout=settings.ai_timeout_s)
        state = "available" if agent.is_available() else "unavailable"
        default = " (default)" if provider.value == settings.default_ai_provider else ""
        typer.echo(f"{provider.value}: {state}{default}")


if __name__ == "__main__":
    app()
