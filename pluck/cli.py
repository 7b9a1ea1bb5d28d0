"""
Defines the command-line front end using Typer, with a Rich live queue display.

The CLI is a thin caller of `JobScheduler`: it submits URLs, starts the batch,
renders scheduler events as progress bars and maps Ctrl+C to cancel-all.
"""

import signal
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from . import __version__
from .binaries import BinaryLocator
from .config import AudioFormat, ConfigManager, DownloadMode, Settings, apply_overrides
from .constants import CONFIG_FILE, MAX_CONCURRENT_LIMIT
from .exceptions import ConfigurationError
from .jobs import JobEntry, JobStatus
from .logging_config import setup_logging
from .scheduler import JobScheduler

console = Console()
logger = logging.getLogger(__name__)

app = typer.Typer(
    name="pluck",
    help="Concurrent yt-dlp downloads with optional ffmpeg conversion.",
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

STATUS_STYLES = {
    JobStatus.QUEUED: "dim",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.CONVERTING: "magenta",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
}
TITLE_WIDTH = 48


def _handle_async_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]):
    """Logs unhandled exceptions from asyncio tasks."""
    msg = context.get("exception", context["message"])
    logging.getLogger().critical(f"Caught exception from asyncio task: {msg}")


def _short_title(entry: JobEntry) -> str:
    title = entry.title or entry.source_url
    if entry.playlist_group:
        group = entry.playlist_group
        title = f"[{group.index}/{group.total}] {title}"
    if len(title) > TITLE_WIDTH:
        title = title[:TITLE_WIDTH - 1] + "…"
    return escape(title)


class QueueView:
    """Mirrors the scheduler queue as one Rich progress bar per entry."""

    def __init__(self, console: Console):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TextColumn("{task.fields[status]}"),
            console=console,
            transient=False,
        )
        self._tasks: Dict[str, TaskID] = {}

    def __enter__(self) -> "QueueView":
        self.progress.start()
        return self

    def __exit__(self, *exc_info):
        self.progress.stop()

    async def handle_event(self, event: Tuple[str, Any]):
        event_type, value = event
        if event_type == 'add_job':
            self._add(value)
        elif event_type == 'update_job':
            self._update(value)
        elif event_type == 'replace_job':
            old_id, children = value
            self._remove(old_id)
            for child in children:
                self._add(child)
        elif event_type == 'remove_jobs':
            for entry_id in value:
                self._remove(entry_id)

    def _add(self, entry: JobEntry):
        self._tasks[entry.job_id] = self.progress.add_task(
            _short_title(entry), total=100, status=self._status_text(entry)
        )
        self._update(entry)

    def _update(self, entry: JobEntry):
        task_id = self._tasks.get(entry.job_id)
        if task_id is None:
            return
        self.progress.update(
            task_id,
            description=_short_title(entry),
            completed=entry.overall_progress * 100,
            status=self._status_text(entry),
        )

    def _remove(self, entry_id: str):
        task_id = self._tasks.pop(entry_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    @staticmethod
    def _status_text(entry: JobEntry) -> str:
        style = STATUS_STYLES[entry.status]
        message = entry.error if entry.status is JobStatus.FAILED and entry.error else entry.status_message
        return f"[{style}]{escape(message)}[/{style}]"


def _load_settings() -> Tuple[ConfigManager, Settings]:
    config_manager = ConfigManager(CONFIG_FILE)
    return config_manager, config_manager.load()


def _print_summary(entries: List[JobEntry]):
    table = Table(title="Summary", show_lines=False)
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Output / Error", overflow="fold")
    for entry in entries:
        style = STATUS_STYLES[entry.status]
        detail = entry.output_path if entry.status is JobStatus.COMPLETED else (entry.error or "")
        table.add_row(f"[{style}]{entry.status.value}[/{style}]", _short_title(entry), escape(detail or ""))
    console.print(table)


async def _run_downloads(settings: Settings, urls: List[str], retries: int) -> int:
    """Runs one batch (plus optional retry rounds) and returns the process exit code."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_handle_async_exception)

    view = QueueView(console)
    scheduler = JobScheduler(settings, event_callback=view.handle_event)
    if scheduler.downloader is None:
        console.print("[red]✗ yt-dlp was not found.[/red] Install it or place it in a 'bin' folder next to pluck.")
        return 1
    if scheduler.converter is None and settings.snapshot().conversion_requested:
        console.print("[yellow]⚠️  ffmpeg was not found; files will be kept as downloaded.[/yellow]")

    interrupted = False
    cancel_tasks: List[asyncio.Task] = []

    def request_cancel():
        nonlocal interrupted
        if interrupted:
            return
        interrupted = True
        console.print("\n[yellow]⚠️  Cancelling downloads...[/yellow]")
        cancel_tasks.append(asyncio.create_task(scheduler.cancel_all()))

    try:
        loop.add_signal_handler(signal.SIGINT, request_cancel)
    except (NotImplementedError, RuntimeError):
        pass # Windows: Ctrl+C surfaces as KeyboardInterrupt from asyncio.run

    with view:
        if not await scheduler.submit(urls):
            console.print("[red]✗ No valid http(s) URLs provided.[/red]")
            return 1
        await scheduler.start_all()
        for attempt in range(1, retries + 1):
            failed = [entry for entry in scheduler.entries if entry.status is JobStatus.FAILED]
            if interrupted or not failed:
                break
            logger.info(f"Retry round {attempt}/{retries}: {len(failed)} item(s)")
            for entry in failed:
                await scheduler.retry(entry.job_id)
            await scheduler.wait_idle()

    if cancel_tasks:
        await asyncio.gather(*cancel_tasks)
    try:
        loop.remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass

    entries = scheduler.entries
    _print_summary(entries)
    if interrupted or any(entry.status in (JobStatus.FAILED, JobStatus.CANCELLED) for entry in entries):
        return 1
    return 0


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output, including raw tool output."),
    version: bool = typer.Option(False, "--version", help="Show version and exit.", is_eager=True),
):
    """Pluck: download media with yt-dlp and convert it with ffmpeg."""
    if version:
        console.print(f"[bold]pluck[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    _, settings = _load_settings()
    console_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    setup_logging(console_handler, settings.log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command(name="download")
def download_command(
    urls: List[str] = typer.Argument(..., help="One or more video or playlist URLs."),
    audio_only: Optional[bool] = typer.Option(
        None, "--audio-only/--video", help="Download audio only, or video with audio."
    ),
    audio_format: Optional[AudioFormat] = typer.Option(
        None, "--audio-format", "-f", case_sensitive=False, help="Audio container for audio-only downloads."
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Destination directory."),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, max=MAX_CONCURRENT_LIMIT, help="Simultaneous downloads."
    ),
    no_convert: bool = typer.Option(False, "--no-convert", help="Skip the ffmpeg conversion step."),
    keep_original: bool = typer.Option(False, "--keep-original", help="Keep the downloaded file after converting."),
    retries: int = typer.Option(0, "--retries", min=0, help="Retry failed items this many times."),
):
    """Download (and optionally convert) the given URLs."""
    cli_options = {
        key: value
        for key, value in {
            "download_mode": None if audio_only is None else (DownloadMode.AUDIO_ONLY if audio_only else DownloadMode.BOTH),
            "audio_format": audio_format,
            "output_directory": output,
            "max_concurrent_downloads": concurrency,
            "auto_convert": False if no_convert else None,
            "preserve_original": True if keep_original else None,
        }.items()
        if value is not None
    }

    _, settings = _load_settings()
    try:
        settings = apply_overrides(settings, cli_options)
    except ConfigurationError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1) from e

    exit_code = asyncio.run(_run_downloads(settings, urls, retries))
    raise typer.Exit(code=exit_code)


def _parse_assignment(assignment: str) -> Tuple[str, Any]:
    key, sep, value = assignment.partition('=')
    if not sep or not key.strip():
        raise typer.BadParameter(f"Expected KEY=VALUE, got '{assignment}'")
    value = value.strip()
    return key.strip(), int(value) if value.isdigit() else value


@app.command(name="config")
def config_command(
    show: bool = typer.Option(True, "--show/--quiet", help="Print the effective settings."),
    set_values: Optional[List[str]] = typer.Option(
        None, "--set", help="Persist a setting, e.g. --set audio_format=flac (repeatable)."
    ),
):
    """Show or change the saved settings."""
    config_manager, settings = _load_settings()
    if set_values:
        changes = dict(_parse_assignment(assignment) for assignment in set_values)
        try:
            settings = config_manager.update(settings, changes)
        except ConfigurationError as e:
            console.print(f"[bold red]Error: {e}[/bold red]")
            raise typer.Exit(code=1) from e
        console.print(f"[green]✓ Saved {', '.join(changes)} to '{config_manager.config_path}'[/green]")

    if show:
        table = Table(title=str(config_manager.config_path))
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for key, value in settings.model_dump(mode='json').items():
            table.add_row(key, str(value))
        console.print(table)


@app.command(name="tools")
def tools_command():
    """Show where yt-dlp, ffmpeg and ffprobe were found and their versions."""
    locator = BinaryLocator()
    paths = {'yt-dlp': locator.yt_dlp_path, 'ffmpeg': locator.ffmpeg_path, 'ffprobe': locator.ffprobe_path}

    async def _versions() -> List[str]:
        return await asyncio.gather(*(locator.get_version(path) for path in paths.values()))

    versions = asyncio.run(_versions())
    table = Table(title="External tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Path")
    table.add_column("Version")
    for (name, path), version in zip(paths.items(), versions):
        table.add_row(name, str(path) if path else "[red]not found[/red]", version)
    console.print(table)
    if not all(paths.values()):
        raise typer.Exit(code=1)
