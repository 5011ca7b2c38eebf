"""Command line interface for the coverage improver."""

import asyncio
import signal
from datetime import timedelta

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from improver.config import Settings, get_settings
from improver.core.job import ImprovementJob
from improver.core.pipeline import JobPipeline
from improver.core.scan import RepositoryScanner, lines_needed
from improver.core.service import JobService
from improver.core.state import JobStatus
from improver.core.worker import PollLoop
from improver.db import SqlCoverageStore, SqlJobStore, SqlRepositoryDirectory, init_db, make_engine
from improver.errors import ImproverError
from improver.log import configure_logging
from improver.sandbox import ProcessSupervisor
from improver.tools import CliTestGenerator, CoverageTool, LocalGit, get_github_client
from improver.workspace import WorkspaceManager

app = typer.Typer(
    name="improver",
    help="Coverage Improver CLI",
    add_completion=False,
)

console = Console()
logger = structlog.get_logger()

STATUS_COLORS = {
    JobStatus.PENDING: "white",
    JobStatus.RETRY: "yellow",
    JobStatus.RUNNING: "cyan",
    JobStatus.SUCCEEDED: "green",
    JobStatus.FAILED: "red",
}


def _setup() -> Settings:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json, settings.redact_sensitive_logs)
    return settings


def _workspaces(settings: Settings) -> WorkspaceManager:
    return WorkspaceManager(
        settings.workspace_base_dir, max_age=timedelta(hours=settings.workspace_max_age_hours)
    )


def _scanner(settings: Settings, hosting) -> RepositoryScanner:
    return RepositoryScanner(
        git=LocalGit(),
        hosting=hosting,
        coverage=CoverageTool.from_settings(settings, ProcessSupervisor.from_settings(settings)),
        workspaces=_workspaces(settings),
    )


def _service(settings: Settings) -> JobService:
    engine = make_engine(settings.database_url)
    init_db(engine)
    hosting = get_github_client()
    return JobService(
        SqlJobStore(engine),
        SqlRepositoryDirectory(engine),
        hosting,
        SqlCoverageStore(engine),
        scanner=_scanner(settings, hosting),
        threshold=settings.coverage_threshold,
    )


def _split_repo(repo: str) -> tuple[str, str]:
    owner, _, name = repo.partition("/")
    if not owner or not name:
        console.print("[red]Repository must be in format owner/name[/red]")
        raise typer.Exit(1)
    return owner, name


def _status(job: ImprovementJob) -> str:
    color = STATUS_COLORS[job.status]
    return f"[{color}]{job.status.value}[/{color}]"


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Run a single poll tick and wait for its jobs"),
) -> None:
    """Poll for queued jobs and run them until interrupted."""
    asyncio.run(_worker_async(_setup(), once))


async def _worker_async(settings: Settings, once: bool) -> None:
    engine = make_engine(settings.database_url)
    init_db(engine)
    store = SqlJobStore(engine)

    supervisor = ProcessSupervisor.from_settings(settings)
    if settings.use_sandbox and await supervisor.docker.is_available():
        await supervisor.docker.ensure_image()

    workspaces = _workspaces(settings)
    pipeline = JobPipeline(
        store=store,
        repositories=SqlRepositoryDirectory(engine),
        git=LocalGit(),
        hosting=get_github_client(),
        coverage=CoverageTool.from_settings(settings, supervisor),
        generator=CliTestGenerator.from_settings(settings, supervisor),
        workspaces=workspaces,
        max_attempts=settings.max_attempts,
    )
    poll_loop = PollLoop(
        store,
        pipeline,
        poll_interval=settings.poll_interval_seconds,
        max_concurrent_jobs=settings.max_concurrent_jobs,
    )

    if once:
        try:
            await poll_loop.poll_once()
            await poll_loop.drain()
        finally:
            workspaces.cleanup_all()
        return

    running_loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        running_loop.add_signal_handler(signum, poll_loop.stop)

    console.print("[bold cyan]Coverage improver worker[/bold cyan] (Ctrl+C to stop)")
    sweeper = asyncio.create_task(
        workspaces.sweep_forever(settings.workspace_sweep_interval_seconds)
    )
    try:
        await poll_loop.run()
        await poll_loop.drain()
    finally:
        sweeper.cancel()
        workspaces.cleanup_all()
        logger.info("Worker shut down")


@app.command()
def enqueue(
    repo: str = typer.Argument(..., help="Repository (owner/name)"),
    file_path: str = typer.Argument(..., help="File to cover, relative to the repository root"),
    requested_by: str = typer.Option("cli", "--by", help="Requester recorded on the job"),
) -> None:
    """Queue a coverage improvement job."""
    settings = _setup()
    owner, name = _split_repo(repo)

    try:
        job = asyncio.run(_service(settings).request_improvement(owner, name, file_path, requested_by))
    except ImproverError as e:
        console.print(f"[red]Failed to queue job:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]Queued job[/green] {job.id} for {job.repository_id}:{job.file_path}")


@app.command()
def scan(repo: str = typer.Argument(..., help="Repository (owner/name)")) -> None:
    """Measure the coverage of every file in a repository."""
    settings = _setup()
    owner, name = _split_repo(repo)
    console.print(f"Scanning [bold]{owner}/{name}[/bold]...")

    try:
        result = asyncio.run(_service(settings).scan_repository(owner, name))
    except ImproverError as e:
        console.print(f"[red]Scan failed:[/red] {e}")
        raise typer.Exit(1)

    console.print(
        Panel(
            "\n".join(
                [
                    f"Files scanned: {result.files_scanned}",
                    f"Files below threshold ({result.threshold:g}%): {result.files_below_threshold}",
                    f"Scanned at: {result.scanned_at.isoformat()}",
                ]
            ),
            title=f"[green]Scan complete[/green] {result.repository.id}",
        )
    )


@app.command()
def coverage(
    repo: str = typer.Argument(..., help="Repository (owner/name)"),
    threshold: float | None = typer.Option(
        None, "--threshold", "-t", min=0, max=100, help="Only files below this percentage, ranked by priority"
    ),
) -> None:
    """List the stored coverage of a scanned repository."""
    owner, name = _split_repo(repo)
    service = _service(_setup())
    try:
        files = service.list_coverage_files(owner, name, threshold=threshold)
    except ImproverError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if not files:
        console.print("[green]All files meet the coverage threshold![/green]")
        return

    table = Table(title=f"Coverage of {owner}/{name}")
    table.add_column("File")
    table.add_column("Coverage", justify="right")
    table.add_column("Lines", justify="right")
    if threshold is not None:
        table.add_column("Lines needed", justify="right")
    for row in files:
        cells = [row.file_path, f"{row.percent:.2f}%", f"{row.covered}/{row.total}"]
        if threshold is not None:
            cells.append(str(lines_needed(row, threshold)))
        table.add_row(*cells)
    console.print(table)


@app.command()
def status(
    job_id: str | None = typer.Argument(None, help="Job id; omit to list recent jobs"),
    repo: str | None = typer.Option(None, "--repo", "-r", help="Only jobs of this repository (owner/name)"),
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """Show one job in detail or a table of recent jobs."""
    service = _service(_setup())

    if job_id:
        try:
            job = service.get_job(job_id)
        except ImproverError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
        details = [
            f"Status: {_status(job)}  Progress: {job.progress}%  Attempts: {job.attempt_count}",
            f"Repository: {job.repository_id}  File: {job.file_path}",
            f"Branch: {job.branch_name or '-'}",
            f"PR: {job.pr_url or '-'}",
            f"Coverage: {job.coverage_before if job.coverage_before is not None else '-'}"
            f" -> {job.coverage_after if job.coverage_after is not None else '-'}",
        ]
        console.print(Panel("\n".join(details), title=f"Job {job.id}"))
        if job.logs:
            console.print(job.logs, markup=False, highlight=False)
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Repository")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("PR")
    for job in service.list_jobs(repository_id=repo, limit=limit):
        table.add_row(
            job.id,
            job.repository_id,
            job.file_path,
            _status(job),
            f"{job.progress}%",
            str(job.attempt_count),
            job.pr_url or "",
        )
    console.print(table)


@app.command()
def retry(job_id: str = typer.Argument(..., help="Id of a FAILED job")) -> None:
    """Requeue a failed job."""
    service = _service(_setup())
    try:
        job = service.retry_job(job_id)
    except ImproverError as e:
        console.print(f"[red]Retry refused:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Job {job.id} requeued[/green] (attempts so far: {job.attempt_count})")


@app.command("init-db")
def init_database() -> None:
    """Create the database tables."""
    settings = _setup()
    console.print("\n[bold cyan]Initializing Database[/bold cyan]\n")
    try:
        init_db(make_engine(settings.database_url))
    except Exception as e:
        console.print(f"\n[red]Database initialization failed:[/red] {e}\n")
        raise typer.Exit(1)
    console.print("[green]Database initialized successfully![/green]")


@app.command("cleanup-workspaces")
def cleanup_workspaces(
    max_age_hours: float | None = typer.Option(None, "--max-age-hours", help="Defaults to the configured age"),
) -> None:
    """Remove stale job workspaces left behind by crashed workers."""
    settings = _setup()
    workspaces = _workspaces(settings)
    hours = settings.workspace_max_age_hours if max_age_hours is None else max_age_hours
    removed = workspaces.cleanup_older_than(timedelta(hours=hours))
    stats = workspaces.stats()
    console.print(f"Removed [bold]{removed}[/bold] workspaces older than {hours}h")
    console.print(f"Remaining: {stats.total_count} directories, {stats.total_size_mb} MiB")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    settings = _setup()
    uvicorn.run("improver.api.server:app", host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
