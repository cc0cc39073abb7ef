"""
Defines the command-line interface for the application using Typer.

The CLI is the submission surface and a text rendering of the queue. Every
command loads the configuration, sets up logging and talks to an AppController.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ._version import __version__
from .config import ConfigManager, Settings
from .constants import CONFIG_FILE
from .controller import AppController
from .exceptions import TubeQueueError
from .jobs import DownloadJob, JobStatus, MediaFormat, VideoMetadata
from .logging_config import setup_logging

T = TypeVar('T')

console = Console()

app = typer.Typer(
    name="tubequeue",
    help="Queue video and audio downloads, with subtitles, through yt-dlp.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

STATUS_STYLES = {
    JobStatus.PENDING: 'cyan',
    JobStatus.DOWNLOADING: 'yellow',
    JobStatus.PAUSED: 'magenta',
    JobStatus.COMPLETED: 'green',
    JobStatus.ERROR: 'red',
}


def format_size(num_bytes: Optional[int]) -> str:
    if not num_bytes:
        return '-'
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.0f} {unit}" if unit == 'B' else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _load_settings(ctx: typer.Context) -> tuple:
    config_manager = ConfigManager(ctx.obj['config_path'])
    settings = config_manager.load()

    verbose = ctx.obj['verbose']
    console_level = 'DEBUG' if verbose >= 2 else 'INFO' if verbose == 1 else 'WARNING'
    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False, show_level=False)
    console_handler.setLevel(console_level)
    setup_logging(settings.log_level, settings.log_dir, extra_handlers=[console_handler])
    return config_manager, settings


def _run(ctx: typer.Context, action: Callable[[AppController], Awaitable[T]], start: bool = True) -> T:
    """Runs an async action against a fresh controller and turns app errors into exit code 1."""
    config_manager, settings = _load_settings(ctx)

    async def runner() -> T:
        controller = AppController(config_manager, settings)
        if start:
            await controller.start()
        try:
            return await action(controller)
        finally:
            await controller.stop()

    try:
        return asyncio.run(runner())
    except TubeQueueError as e:
        console.print(f"✗ {e}", style="red", markup=False)
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted. Run 'tubequeue recover' to clear unfinished jobs.[/yellow]")
        raise typer.Exit(code=130) from None


def _status_text(job: DownloadJob) -> str:
    style = STATUS_STYLES[job.status]
    return f"[{style}]{job.status.value}[/{style}]"


def print_job(job: DownloadJob, controller: AppController):
    """Prints one job as a Rich panel."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("ID", job.job_id)
    table.add_row("URL", escape(job.url))
    table.add_row("Title", escape(job.title or '-'))
    table.add_row("Format", f"{job.format.value} ({job.quality})")
    table.add_row("Status", _status_text(job))
    table.add_row("Progress", f"{job.progress}%")
    table.add_row("Duration", job.duration or '-')
    table.add_row("Size", format_size(job.file_size))
    if job.file_path:
        table.add_row("File", controller.artifact_url(job.file_path))
    for subtitle in job.subtitles:
        table.add_row(f"Subtitle ({subtitle.language})", controller.artifact_url(subtitle.path))
    if job.error:
        table.add_row("Error", f"[red]{escape(job.error)}[/red]")
    console.print(Panel(table, title=escape(job.display_title), box=box.ROUNDED, expand=False))


def print_queue(jobs: List[DownloadJob]):
    """Prints the queue as a Rich table, newest first."""
    if not jobs:
        console.print("[dim]No jobs in the queue.[/dim]")
        return
    table = Table(box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", overflow="ellipsis")
    table.add_column("Format")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Size", justify="right")
    for job in jobs:
        table.add_row(
            job.job_id[:8], escape(job.display_title), f"{job.format.value} {job.quality}",
            _status_text(job), f"{job.progress}%", format_size(job.file_size),
        )
    console.print(table)


def print_metadata(url: str, metadata: VideoMetadata):
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("URL", escape(url))
    table.add_row("Duration", metadata.duration or '-')
    table.add_row("Approx. size", format_size(metadata.file_size))
    table.add_row("Qualities", ", ".join(metadata.available_qualities))
    table.add_row("Subtitles", ", ".join(metadata.subtitle_languages) or '-')
    table.add_row("Auto captions", ", ".join(metadata.auto_subtitle_languages) or '-')
    if metadata.thumbnail:
        table.add_row("Thumbnail", metadata.thumbnail)
    console.print(Panel(table, title=escape(metadata.title), box=box.ROUNDED, expand=False))


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    config: Path = typer.Option(CONFIG_FILE, "--config", "-c", help="Path to the JSON configuration file."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase console logging (-vv for debug)."),
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """tubequeue download queue"""
    if version:
        console.print(f"[bold]tubequeue[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()
    ctx.obj = {'config_path': config, 'verbose': verbose}
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


async def _watch(controller: AppController, submit: Callable[[], Awaitable[DownloadJob]]) -> DownloadJob:
    """Runs a job to the end while drawing its progress."""
    columns = (SpinnerColumn(), TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"))
    with Progress(*columns, console=console, transient=True) as progress:
        bar = progress.add_task("Starting...", total=100)
        watched = {}

        async def on_event(event):
            kind, value = event
            if kind == 'update_job' and value.job_id == watched.get('job_id'):
                progress.update(bar, completed=value.progress, description=f"{value.status.value}: {escape(value.display_title)}")

        controller.add_listener(on_event)
        job = await submit()
        watched['job_id'] = job.job_id
        return await controller.wait_for(job.job_id)


def _finish(job: DownloadJob, controller: AppController) -> DownloadJob:
    print_job(job, controller)
    return job


@app.command()
def download(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="The video URL."),
    quality: Optional[str] = typer.Option(None, "--quality", "-q", help="Maximum resolution, e.g. 720p or best."),
    media_format: Optional[MediaFormat] = typer.Option(None, "--format", "-f", case_sensitive=False, help="video or audio."),
):
    """Submit a URL and wait for it to finish."""
    async def action(controller: AppController) -> DownloadJob:
        job = await _watch(controller, lambda: controller.submit(url, quality, media_format))
        return _finish(job, controller)

    job = _run(ctx, action)
    if job.status is JobStatus.ERROR:
        raise typer.Exit(code=1)


@app.command()
def info(ctx: typer.Context, url: str = typer.Argument(..., help="The video URL.")):
    """Show metadata for a URL without downloading it."""
    async def action(controller: AppController):
        with console.status("[cyan]Extracting video information...[/cyan]"):
            metadata = await controller.probe(url)
        print_metadata(url, metadata)

    _run(ctx, action)


@app.command(name="list")
def list_command(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, "--status", "-s", case_sensitive=False, help="Only show jobs in this status."),
):
    """Show the queue, newest first."""
    async def action(controller: AppController):
        print_queue(await controller.list_jobs(status))
        counts = await controller.counts()
        summary = "  ".join(f"{name}: {count}" for name, count in counts.items() if count)
        if summary:
            console.print(f"[dim]{summary}[/dim]")

    _run(ctx, action, start=False)


@app.command()
def show(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id or unique prefix.")):
    """Show one job in detail."""
    async def action(controller: AppController):
        job = await controller.get_job(await controller.resolve_job_id(job_id))
        print_job(job, controller)

    _run(ctx, action, start=False)


@app.command()
def pause(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id or unique prefix.")):
    """Pause a downloading job at its next step."""
    async def action(controller: AppController):
        job = await controller.pause(await controller.resolve_job_id(job_id))
        console.print(f"[magenta]⏸ Paused[/magenta] {escape(job.display_title)}")

    _run(ctx, action, start=False)


@app.command()
def resume(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id or unique prefix."),
    restart: bool = typer.Option(False, "--restart", help="Run the retrieval in this process and wait for it."),
):
    """Resume a paused job."""
    async def action(controller: AppController) -> DownloadJob:
        resolved = await controller.resolve_job_id(job_id)
        if not restart:
            job = await controller.resume(resolved, relaunch=False)
            console.print(f"[yellow]▶ Resumed[/yellow] {escape(job.display_title)}")
            return job
        job = await _watch(controller, lambda: controller.resume(resolved, relaunch=True))
        return _finish(job, controller)

    job = _run(ctx, action, start=restart)
    if job.status is JobStatus.ERROR:
        raise typer.Exit(code=1)


@app.command()
def remove(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id or unique prefix."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete a job from the queue, whatever its status."""
    if not yes and not typer.confirm(f"Remove job {job_id}?"):
        raise typer.Abort()

    async def action(controller: AppController):
        resolved = await controller.resolve_job_id(job_id)
        await controller.remove(resolved)
        console.print(f"[green]✓ Removed {resolved}[/green]")

    _run(ctx, action, start=False)


@app.command()
def clear(ctx: typer.Context):
    """Remove every completed job from the queue."""
    async def action(controller: AppController):
        removed = await controller.clear_completed()
        console.print(f"[green]✓ Cleared {len(removed)} completed job(s).[/green]")

    _run(ctx, action, start=False)


@app.command()
def recover(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Mark jobs left unfinished by a stopped process as failed."""
    if not yes and not typer.confirm("No other tubequeue process may be running. Continue?"):
        raise typer.Abort()

    async def action(controller: AppController):
        recovered = await controller.recover_interrupted()
        console.print(f"[green]✓ Marked {len(recovered)} interrupted job(s) as failed.[/green]")

    _run(ctx, action, start=False)


@app.command()
def versions(ctx: typer.Context):
    """Show the versions of yt-dlp and FFmpeg in use."""
    async def action(controller: AppController):
        for name, version in (await controller.get_dependency_versions()).items():
            console.print(f"[bold]{name}[/bold]: {version}")

    _run(ctx, action)


@app.command(name="config")
def config_command(
    ctx: typer.Context,
    assignments: Optional[List[str]] = typer.Option(None, "--set", help="Change a setting, as KEY=VALUE. Repeatable."),
):
    """Show the configuration, or change settings with --set."""
    config_manager, settings = _load_settings(ctx)
    if assignments:
        updates: dict[str, Any] = {}
        for assignment in assignments:
            key, sep, value = assignment.partition('=')
            if not sep or key not in Settings.model_fields:
                console.print(f"✗ Not a KEY=VALUE setting: {assignment}", style="red", markup=False)
                raise typer.Exit(code=1)
            updates[key] = value
        ok, message = AppController(config_manager, settings).save_settings(updates)
        if not ok:
            console.print(f"✗ {message}", style="red", markup=False)
            raise typer.Exit(code=1)
        console.print(f"[green]✓ {message}[/green]")
        settings = config_manager.load()

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column(style="bold")
    table.add_column()
    for key, value in settings.model_dump(mode='json').items():
        if key == 'storage_key' and value:
            value = '********'
        table.add_row(key, str(value))
    console.print(Panel(table, title=str(ctx.obj['config_path']), expand=False))
    logging.getLogger(__name__).debug("Configuration displayed.")
