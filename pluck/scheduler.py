"""Owns the job queue and runs download/convert pipelines under a concurrency cap."""
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Optional, Set, Tuple

from pathvalidate import sanitize_filename

from .binaries import BinaryLocator
from .config import JobSettings, Settings
from .converter import Converter
from .downloads import Downloader
from .exceptions import ProbeError, ProcessError, ProcessLaunchError, ProcessTerminatedError
from .jobs import JobEntry, JobStatus, PlaylistGroup, UrlKind, parse_urls
from .process_runner import ProcessRegistry, ProcessRunner
from .prober import MediaProber, parse_yt_dlp_error

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]


class _SlotLease:
    """One held concurrency slot; releasing twice is a no-op."""

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self._held = True

    def release(self):
        if self._held:
            self._held = False
            self._semaphore.release()


class JobScheduler:
    """
    Manages the queue of entries and dispatches them to the yt-dlp / ffmpeg workers.

    Events are delivered through the async `event_callback` as `(type, value)` tuples:
    'add_job', 'update_job', 'replace_job', 'remove_jobs' and 'batch_done'.
    """

    def __init__(self,
                 settings: Settings,
                 event_callback: Optional[EventCallback] = None,
                 locator: Optional[BinaryLocator] = None,
                 registry: Optional[ProcessRegistry] = None,
                 downloader: Optional[Downloader] = None,
                 converter: Optional[Converter] = None,
                 prober: Optional[MediaProber] = None):
        """
        Initializes the JobScheduler.

        Args:
            settings: The live settings; a frozen snapshot is taken per batch.
            event_callback: The async function to call with scheduler events.
            locator: Finds the external tools when workers are not supplied.
            registry: Shared live-process registry and cancellation flag.
            downloader, converter, prober: Optional pre-built workers.
        """
        self.settings = settings
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)
        self.registry = registry or ProcessRegistry()
        self.runner = ProcessRunner(self.registry)

        self._queue: List[JobEntry] = []
        self._destinations: Dict[str, Path] = {}
        self._slots: Optional[asyncio.Semaphore] = None
        self._snapshot: Optional[JobSettings] = None
        self._batch_task: Optional[asyncio.Task] = None
        self._extra_tasks: Set[asyncio.Task] = set()
        self._running = False

        if locator is None and (downloader is None or prober is None or converter is None):
            locator = BinaryLocator()
        self.prober = prober or MediaProber(self.runner, locator.yt_dlp_path, locator.ffprobe_path)
        if downloader is None and locator.yt_dlp_path:
            downloader = Downloader(self.runner, locator.yt_dlp_path, locator.ffmpeg_path)
        if converter is None and locator is not None and locator.ffmpeg_path:
            converter = Converter(self.runner, locator.ffmpeg_path, self.prober)
        self.downloader = downloader
        self.converter = converter

    # --- Queue access ---

    @property
    def entries(self) -> List[JobEntry]:
        return list(self._queue)

    @property
    def is_running(self) -> bool:
        return self._running

    def get(self, entry_id: str) -> Optional[JobEntry]:
        return next((entry for entry in self._queue if entry.job_id == entry_id), None)

    def update_settings(self, settings: Settings):
        """Replaces the live settings; in-flight batches keep their snapshot."""
        self.settings = settings

    async def _emit(self, event_type: str, value: Any):
        if self.event_callback:
            await self.event_callback((event_type, value))

    # --- Caller API ---

    async def submit(self, urls: Iterable[str]) -> List[JobEntry]:
        """Adds one entry per http(s) URL found in the given strings."""
        parsed = [url for text in urls for url in parse_urls(text)]
        if not parsed:
            self.logger.info("No valid URLs found.")
            return []
        new_entries = [JobEntry.from_url(url) for url in parsed]
        for entry in new_entries:
            self._queue.append(entry)
            await self._emit('add_job', entry)
        self.logger.info(f"Added {len(new_entries)} URL(s) to queue.")
        return new_entries

    async def start_all(self) -> bool:
        """Processes every queued entry and returns once the batch has finished."""
        if self._running:
            self.logger.info("A batch is already running.")
            return False
        pending = [entry for entry in self._queue if entry.status is JobStatus.QUEUED]
        if not pending:
            self.logger.info("No queued items to process.")
            return False
        if self.downloader is None:
            self.logger.error("yt-dlp path is not set. Cannot start downloads.")
            return False
        self._begin_batch()
        await self.registry.reset()
        generation = await self.registry.current_generation()
        self._batch_task = asyncio.current_task()
        return await self._run_batch(pending, generation)

    async def retry(self, entry_id: str) -> bool:
        """Re-queues one failed entry and dispatches it, joining a running batch if there is one."""
        entry = self.get(entry_id)
        if entry is None or entry.status is not JobStatus.FAILED:
            self.logger.warning(f"Cannot retry entry {entry_id}: not found or not failed.")
            return False
        if self.downloader is None:
            self.logger.error("yt-dlp path is not set. Cannot retry.")
            return False

        entry.reset_for_retry()
        await self._emit('update_job', entry)
        self.logger.info(f"Retrying: {entry.source_url}")

        joins_batch = self._running
        if not joins_batch:
            self._begin_batch()
        await self.registry.reset()
        generation = await self.registry.current_generation()
        if joins_batch:
            task = asyncio.create_task(self._dispatch([entry], self._snapshot, generation), name=f"retry-{entry.job_id[:8]}")
            self._extra_tasks.add(task)
            task.add_done_callback(self._task_done_callback(self._extra_tasks))
        else:
            self._batch_task = asyncio.create_task(self._run_batch([entry], generation), name=f"batch-{entry.job_id[:8]}")
            self._batch_task.add_done_callback(self._task_done_callback(set()))
        return True

    async def cancel_all(self) -> int:
        """Stops dispatching, terminates live processes and marks active entries Cancelled."""
        self.logger.info("STOP signal received. Terminating downloads...")
        terminated = await self.registry.request_cancel()
        cancelled = [entry for entry in self._queue if entry.is_active and entry.cancel()]
        for entry in cancelled:
            await self._emit('update_job', entry)
        self.logger.info(f"Cancelled {len(cancelled)} item(s); {terminated} process(es) asked to terminate.")
        return len(cancelled)

    async def wait_idle(self):
        """Waits for the current batch (including retries) to finish."""
        if self._batch_task is not None and self._batch_task is not asyncio.current_task():
            await asyncio.gather(self._batch_task, return_exceptions=True)

    async def remove(self, entry_id: str) -> bool:
        entry = self.get(entry_id)
        if entry is None:
            return False
        if entry.is_active:
            self.logger.warning(f"Cannot remove entry {entry_id} while it is {entry.status.value}.")
            return False
        await self._remove_entries([entry])
        return True

    async def clear_completed(self) -> int:
        finished = [entry for entry in self._queue if entry.status is JobStatus.COMPLETED]
        await self._remove_entries(finished)
        self.logger.info(f"Cleared {len(finished)} finished item(s) from the list.")
        return len(finished)

    async def clear_all(self):
        await self.cancel_all()
        await self._remove_entries(list(self._queue))

    async def _remove_entries(self, entries: List[JobEntry]):
        if not entries:
            return
        removed_ids = {entry.job_id for entry in entries}
        self._queue = [entry for entry in self._queue if entry.job_id not in removed_ids]
        for entry_id in removed_ids:
            self._destinations.pop(entry_id, None)
        await self._emit('remove_jobs', [entry.job_id for entry in entries])

    # --- Dispatch ---

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def _begin_batch(self) -> JobSettings:
        """Marks a batch as running and captures its settings snapshot and slot pool."""
        self._snapshot = self.settings.snapshot()
        self._slots = asyncio.Semaphore(self._snapshot.max_concurrent_downloads)
        self._running = True
        return self._snapshot

    async def _run_batch(self, entries: List[JobEntry], generation: int) -> bool:
        assert self._snapshot is not None
        self.logger.info(f"--- Starting {len(entries)} item(s), {self._snapshot.max_concurrent_downloads} concurrent ---")
        try:
            await self._dispatch(entries, self._snapshot, generation)
            while self._extra_tasks:
                await asyncio.gather(*list(self._extra_tasks), return_exceptions=True)
        finally:
            self._running = False
            self.logger.info("--- All queued downloads are complete! ---")
            await self._emit('batch_done', None)
        return True

    def _next_pending(self, pending: Set[str]) -> Optional[JobEntry]:
        """Takes the first queued entry of `pending` in live queue order."""
        for entry in self._queue:
            if entry.job_id in pending and entry.status is JobStatus.QUEUED:
                pending.discard(entry.job_id)
                return entry
        return None

    async def _dispatch(self, entries: List[JobEntry], snapshot: JobSettings, generation: int):
        """
        Launches entries in queue order, never more than the slot pool allows at once.

        The next entry is picked only after a slot is acquired, so playlist
        children that replaced their placeholder in the meantime go first.
        """
        assert self._slots is not None
        slots = self._slots
        pending = {entry.job_id for entry in entries}
        in_flight: Set[asyncio.Task] = set()
        while await self.registry.may_dispatch(generation):
            await slots.acquire()
            lease = _SlotLease(slots)
            if not await self.registry.may_dispatch(generation):
                lease.release()
                break
            entry = self._next_pending(pending)
            if entry is None:
                lease.release()
                if not in_flight:
                    break
                # A playlist still being probed may add children.
                _, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                continue
            in_flight = {task for task in in_flight if not task.done()}
            in_flight.add(asyncio.create_task(self._run_entry(entry, snapshot, lease, generation, pending),
                                              name=f"job-{entry.job_id[:8]}"))
        if in_flight:
            await asyncio.gather(*in_flight)

    async def _run_entry(self, entry: JobEntry, snapshot: JobSettings, lease: _SlotLease, generation: int,
                         pending: Set[str]):
        output_dir = self._destinations.get(entry.job_id, snapshot.output_directory)
        try:
            # Cancel-all may land between task creation and its first step.
            if not await self.registry.may_dispatch(generation):
                return
            if entry.status is not JobStatus.QUEUED or self.get(entry.job_id) is None:
                return
            if entry.is_playlist_placeholder:
                children = await self._expand_playlist(entry, output_dir)
                if children is not None:
                    pending.update(child.job_id for child in children)
                    return
                if entry.is_terminal:
                    return
            await self._process_single(entry, output_dir, snapshot)
        except Exception as e:
            self.logger.exception(f"Unexpected error while processing {entry.source_url}")
            if entry.fail(f"Unexpected error: {e}"):
                await self._emit('update_job', entry)
        finally:
            lease.release()

    # --- Pipelines ---

    async def _expand_playlist(self, entry: JobEntry, output_dir: Path) -> Optional[List[JobEntry]]:
        """
        Probes a playlist URL and replaces the placeholder with its children.

        Returns the children (already in the queue), or None when the entry should
        continue as a single video (or has already failed / been cancelled).
        """
        entry.transition(JobStatus.DOWNLOADING, "Fetching playlist info...")
        await self._emit('update_job', entry)
        self.logger.info(f"Fetching playlist: {entry.source_url}")

        try:
            info = await self.prober.probe_playlist(entry.source_url)
        except ProbeError as e:
            if entry.fail(str(e), "Failed to fetch playlist"):
                self.logger.error(f"Playlist error: {e}")
                await self._emit('update_job', entry)
            return None

        if entry.is_terminal:
            return None
        if not info.is_playlist:
            entry.kind = UrlKind.VIDEO
            if entry.title == entry.source_url and info.title != "Unknown":
                entry.title = info.title
            return None

        total = len(info.entries)
        self.logger.info(f"Playlist '{info.title}' has {total} videos")
        playlist_dir = output_dir / (sanitize_filename(info.title).strip() or "Playlist")
        playlist_dir.mkdir(parents=True, exist_ok=True)

        children = [
            JobEntry.from_url(item.url, title=item.title,
                              playlist_group=PlaylistGroup(info.title, position, total))
            for position, item in enumerate(info.entries, start=1)
        ]
        try:
            index = self._queue.index(entry)
        except ValueError:
            self.logger.info(f"Playlist entry for {entry.source_url} was removed; skipping its items.")
            return []
        self._queue[index:index + 1] = children
        for child in children:
            self._destinations[child.job_id] = playlist_dir
        self._destinations.pop(entry.job_id, None)
        await self._emit('replace_job', (entry.job_id, children))
        return children

    async def _process_single(self, entry: JobEntry, output_dir: Path, snapshot: JobSettings):
        if entry.status is JobStatus.QUEUED:
            entry.transition(JobStatus.DOWNLOADING, "Starting download...")
        else:
            entry.status_message = "Starting download..."
        await self._emit('update_job', entry)
        if entry.playlist_group:
            group = entry.playlist_group
            self.logger.info(f"[{group.index}/{group.total}] {entry.title}")
        else:
            self.logger.info(f"Downloading: {entry.source_url}")

        async def on_download_progress(fraction: Optional[float], message: str):
            if entry.report_download(fraction, message):
                await self._emit('update_job', entry)

        async def on_conversion_progress(fraction: Optional[float], message: str):
            if entry.report_conversion(fraction, message):
                await self._emit('update_job', entry)

        async def on_title(title: str):
            if entry.title == entry.source_url and not entry.is_terminal:
                entry.title = title
                await self._emit('update_job', entry)

        try:
            downloaded = await self.downloader.download(
                entry.source_url, output_dir, snapshot.download_mode, snapshot.audio_format,
                progress=on_download_progress, on_title=on_title
            )
            if entry.is_terminal:
                return
            if entry.title == entry.source_url and downloaded.is_file():
                entry.title = downloaded.stem
            self.logger.info(f"Downloaded: {downloaded.name}")

            output_path = downloaded
            if snapshot.conversion_requested and self.converter is not None:
                if not entry.start_conversion():
                    return
                await self._emit('update_job', entry)
                converted = await self.converter.convert(downloaded, output_dir, snapshot, progress=on_conversion_progress)
                if not snapshot.preserve_original and converted != downloaded:
                    try:
                        downloaded.unlink(missing_ok=True)
                    except OSError as e:
                        self.logger.error(f"Error deleting original file {downloaded.name}: {e}")
                self.logger.info(f"Converted: {converted.name}")
                output_path = converted
            elif snapshot.conversion_requested:
                self.logger.warning("Conversion requested but ffmpeg is not available; keeping the download as is.")

            if entry.complete(str(output_path)):
                await self._emit('update_job', entry)
        except ProcessTerminatedError:
            if entry.cancel():
                await self._emit('update_job', entry)
        except (ProcessError, ProcessLaunchError, OSError) as e:
            message = parse_yt_dlp_error(e.stderr_tail) if isinstance(e, ProcessError) and e.stderr_tail.strip() else str(e)
            if entry.fail(message):
                self.logger.error(f"Error: {e}")
                await self._emit('update_job', entry)
