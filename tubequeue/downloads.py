"""Drives download jobs through probe, fetch, upload and completion."""
import asyncio
import shutil
import uuid
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .artifact_store import ArtifactStore, StoredArtifact, artifact_key
from .collector import collect_outputs, read_info_file, refine_title_and_duration, subtitle_language
from .exceptions import (
    TubeQueueError, ValidationError, FetchError, NotFoundError, StorageError, InvalidTransitionError,
)
from .constants import QUALITY_PATTERN
from .extractor import MediaExtractor
from .job_store import JobStore, ACTIVE_STATUSES
from .jobs import DownloadJob, JobStatus, MediaFormat, Subtitle

EventCallback = Callable[[Tuple[str, Any]], Awaitable[None]]

# Lines of extractor stderr kept in a failed job's error.
STDERR_TAIL_LINES = 15

# Progress stays below 100 until the job is completed.
MAX_RUNNING_PROGRESS = 99


def validate_submission(url: str, quality: str, media_format: Any) -> Tuple[str, str, MediaFormat]:
    """
    Normalizes a submission or raises ValidationError.

    Returns:
        A tuple of (url, quality, media_format).
    """
    url = (url or '').strip()
    if not url:
        raise ValidationError("A URL is required.")
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError(f"Not a valid http(s) URL: {url}")
    try:
        media_format = MediaFormat(media_format)
    except ValueError:
        raise ValidationError(f"Unknown format '{media_format}'. Use 'video' or 'audio'.")
    quality = (quality or '').strip().lower()
    if not QUALITY_PATTERN.match(quality):
        raise ValidationError(f"Unknown quality '{quality}'. Use a tag like '720p' or 'best'.")
    return url, quality, media_format


def failure_message(error: Exception) -> str:
    """The text recorded for a failed job: the error, then the tail of any extractor stderr."""
    message = str(error)
    stderr = getattr(error, 'stderr', '').strip()
    if not stderr:
        return message
    tail = '\n'.join(stderr.splitlines()[-STDERR_TAIL_LINES:])
    return f"{message}\n\n{tail}"


class DownloadManager:
    """
    The job state machine.

    Every submission runs as its own asyncio task. Extractor invocations are
    bounded by a semaphore, and all writes to one job go through that job's
    lock so they are applied in order.
    """
    def __init__(self, job_store: JobStore, artifact_store: ArtifactStore, extractor: MediaExtractor,
                 work_dir: Path, max_concurrent_downloads: int = 4, pause_poll_interval: float = 1.0,
                 remove_artifacts_with_job: bool = False, event_callback: Optional[EventCallback] = None):
        """
        Initializes the DownloadManager.

        Args:
            job_store: Where job records live.
            artifact_store: Where produced files are uploaded.
            extractor: The yt-dlp adapter.
            work_dir: Parent of the per-job scratch directories.
            max_concurrent_downloads: Bound on simultaneous extractor invocations.
            pause_poll_interval: Seconds between status checks while a job is paused.
            remove_artifacts_with_job: Whether Remove also deletes uploaded artifacts.
            event_callback: The async function to call with manager events.
        """
        self.job_store = job_store
        self.artifact_store = artifact_store
        self.extractor = extractor
        self.work_dir = Path(work_dir)
        self.max_concurrent_downloads = max_concurrent_downloads
        self.pause_poll_interval = pause_poll_interval
        self.remove_artifacts_with_job = remove_artifacts_with_job
        self.event_callback = event_callback
        self.logger = logging.getLogger(__name__)
        self.job_tasks: Dict[str, asyncio.Task] = {}
        self._job_locks: Dict[str, asyncio.Lock] = {}
        self._resume_events: Dict[str, asyncio.Event] = {}
        self._extractor_slots = asyncio.Semaphore(max_concurrent_downloads)

    async def initialize(self):
        """Performs asynchronous initialization, such as cleaning stale scratch directories."""
        await asyncio.to_thread(self.work_dir.mkdir, parents=True, exist_ok=True)
        await self.cleanup_temporary_files()

    # --- Control surface ---

    async def submit(self, url: str, quality: str, media_format: Any) -> DownloadJob:
        """
        Creates a pending job and starts its pipeline without waiting for it.

        Raises:
            ValidationError: If the submission is rejected; no job is created.
        """
        url, quality, media_format = validate_submission(url, quality, media_format)
        job = DownloadJob(job_id=str(uuid.uuid4()), url=url, quality=quality, format=media_format)
        await asyncio.to_thread(self.job_store.create, job)
        self.logger.info(f"Queued job {job.job_id} for {url} ({media_format.value}, {quality})")
        await self._emit('add_job', job)
        self._launch(job, probe=True)
        return job

    async def pause(self, job_id: str) -> DownloadJob:
        """
        Records the intent to pause a downloading job.

        A running yt-dlp process is not suspended; the pipeline holds at its
        next stage boundary until the job is resumed.

        Raises:
            NotFoundError: For an unknown job.
            InvalidTransitionError: If the job is not downloading.
        """
        job = await self._write(job_id, self.job_store.transition, (JobStatus.DOWNLOADING,), JobStatus.PAUSED)
        self._resume_event(job_id).clear()
        return job

    async def resume(self, job_id: str, relaunch: bool = True) -> DownloadJob:
        """
        Resumes a paused job.

        A pipeline held in this process continues where it stopped. Without a
        live pipeline, and if `relaunch` is set, retrieval starts again from
        the fetch step using the metadata already recorded.

        Raises:
            NotFoundError: For an unknown job.
            InvalidTransitionError: If the job is not paused.
        """
        job = await self._write(job_id, self.job_store.transition, (JobStatus.PAUSED,), JobStatus.DOWNLOADING)
        task = self.job_tasks.get(job_id)
        if task is not None and not task.done():
            self._resume_event(job_id).set()
        elif relaunch:
            self.logger.info(f"No live pipeline for job {job_id}; restarting retrieval.")
            self._launch(job, probe=False)
        return job

    async def remove(self, job_id: str):
        """
        Deletes a job record regardless of its status.

        A live pipeline for the job is cancelled first, which stops its
        extractor process. Uploaded artifacts are kept unless the manager was
        configured to remove them.

        Raises:
            NotFoundError: For an unknown job.
        """
        await asyncio.to_thread(self.job_store.get, job_id)
        task = self.job_tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        async with self._lock_for(job_id):
            await asyncio.to_thread(self.job_store.delete, job_id)
        self._forget(job_id)
        self.logger.info(f"Removed job {job_id}")
        if self.remove_artifacts_with_job:
            await self._discard_artifacts(job_id)
        await self._emit('remove_job', job_id)

    async def clear_completed(self) -> List[str]:
        """Deletes every completed job in one batch. Returns the removed ids."""
        removed = await asyncio.to_thread(self.job_store.delete_by_status, JobStatus.COMPLETED)
        for job_id in removed:
            self._forget(job_id)
            if self.remove_artifacts_with_job:
                await self._discard_artifacts(job_id)
        if removed:
            self.logger.info(f"Cleared {len(removed)} completed job(s) from the queue.")
            await self._emit('clear_completed', removed)
        return removed

    async def get_job(self, job_id: str) -> DownloadJob:
        return await asyncio.to_thread(self.job_store.get, job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[DownloadJob]:
        return await asyncio.to_thread(self.job_store.list_jobs, status)

    async def wait_for(self, job_id: str) -> DownloadJob:
        """Waits until the job's pipeline in this process ends, then returns the stored record."""
        task = self.job_tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.get_job(job_id)

    async def recover_interrupted(self) -> List[str]:
        """
        Fails jobs left pending or downloading by a process that is gone.

        Only call this when no other process is working on the same job store.
        """
        recovered = []
        for status in (JobStatus.PENDING, JobStatus.DOWNLOADING):
            for job in await self.list_jobs(status):
                if job.job_id in self.job_tasks:
                    continue
                try:
                    await self._write(job.job_id, self.job_store.fail, "Interrupted before completion. Remove and resubmit.")
                    recovered.append(job.job_id)
                except (NotFoundError, InvalidTransitionError):
                    pass
        if recovered:
            self.logger.warning(f"Marked {len(recovered)} interrupted job(s) as failed.")
        return recovered

    async def shutdown(self):
        """Cancels all live pipelines and terminates their extractor processes."""
        tasks = [task for task in self.job_tasks.values() if not task.done()]
        if not tasks:
            return
        self.logger.info(f"Stopping {len(tasks)} running job(s)...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- Pipeline ---

    def _launch(self, job: DownloadJob, probe: bool):
        task = asyncio.create_task(self._run_job(job, probe), name=f"job-{job.job_id}")
        self.job_tasks[job.job_id] = task
        task.add_done_callback(self._task_done_callback(job.job_id))

    def _task_done_callback(self, job_id: str) -> Callable:
        """Creates a callback to drop a finished task, its per-job state, and log exceptions."""
        def callback(task: asyncio.Task):
            if self.job_tasks.get(job_id) is task:
                del self.job_tasks[job_id]
            if job_id not in self.job_tasks:
                self._forget(job_id)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    async def _run_job(self, job: DownloadJob, probe: bool):
        """Runs the pipeline for one job. Failures end in the error status, never in the caller."""
        job_id = job.job_id
        job_dir = self.work_dir / job_id
        try:
            if probe:
                job = await self._probe(job)
            await self._hold_while_paused(job_id)
            files = await self._fetch(job, job_dir)
            await self._hold_while_paused(job_id)
            await self._store_results(job, files)
        except NotFoundError:
            self.logger.info(f"Job {job_id} was removed; abandoning its pipeline.")
        except TubeQueueError as e:
            await self._fail(job_id, failure_message(e))
        except asyncio.CancelledError:
            self.logger.info(f"Pipeline for job {job_id} cancelled.")
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error while processing job {job_id}")
            await self._fail(job_id, f"Unexpected error: {e}")
        finally:
            await self._remove_work_dir(job_dir)

    async def _probe(self, job: DownloadJob) -> DownloadJob:
        async with self._extractor_slots:
            metadata = await self.extractor.probe(job.url)
        self.logger.info(f"Probed job {job.job_id}: '{metadata.title}' ({metadata.duration})")
        return await self._write(
            job.job_id, self.job_store.transition, (JobStatus.PENDING,), JobStatus.DOWNLOADING,
            progress=0, title=metadata.title, thumbnail=metadata.thumbnail, duration=metadata.duration,
            file_size=metadata.file_size or None,
        )

    async def _fetch(self, job: DownloadJob, job_dir: Path) -> List[Path]:
        await self._remove_work_dir(job_dir)
        await asyncio.to_thread(job_dir.mkdir, parents=True, exist_ok=True)

        async def on_progress(percentage: float):
            await self._record_progress(job.job_id, percentage)

        async with self._extractor_slots:
            return await self.extractor.fetch(
                job.url, job.quality, job.format, job_dir, progress_callback=on_progress, tag=job.job_id
            )

    async def _store_results(self, job: DownloadJob, files: List[Path]):
        collected = collect_outputs(files, job.format)
        if collected.media is None:
            raise FetchError(f"yt-dlp finished without producing a {job.format.extension} file.")

        title, duration = job.title, job.duration
        if collected.info is not None:
            info = await asyncio.to_thread(read_info_file, collected.info)
            title, duration = refine_title_and_duration(info, title, duration)

        uploaded: List[StoredArtifact] = []
        try:
            for path in collected.all_files:
                uploaded.append(await self.artifact_store.upload(job.job_id, path))
        except StorageError:
            if uploaded:
                await self._discard_artifacts(job.job_id)
            raise

        subtitles = [
            Subtitle(language=subtitle_language(path.name), filename=path.name, path=artifact_key(job.job_id, path.name))
            for path in collected.subtitles
        ]
        await self._write(
            job.job_id, self.job_store.complete,
            file_path=artifact_key(job.job_id, collected.media.name),
            file_size=sum(artifact.size for artifact in uploaded),
            subtitles=subtitles, title=title or 'Downloaded Video', duration=duration,
        )
        self.logger.info(f"Job {job.job_id} completed: {len(uploaded)} file(s), {len(subtitles)} subtitle(s).")

    async def _hold_while_paused(self, job_id: str):
        """Blocks while the job is paused, re-reading the store so outside changes are seen."""
        event = self._resume_event(job_id)
        announced = False
        while True:
            job = await self.get_job(job_id)
            if job.status is not JobStatus.PAUSED:
                return
            if not announced:
                self.logger.info(f"Job {job_id} is paused; holding before the next step.")
                announced = True
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=self.pause_poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _record_progress(self, job_id: str, percentage: float):
        progress = min(int(percentage), MAX_RUNNING_PROGRESS)
        async with self._lock_for(job_id):
            job = await asyncio.to_thread(self.job_store.record_progress, job_id, progress)
        if job is not None:
            await self._emit('update_job', job)

    async def _fail(self, job_id: str, message: str):
        self.logger.error(f"Job {job_id} failed: {message}")
        try:
            await self._write(job_id, self.job_store.fail, message)
        except NotFoundError:
            self.logger.info(f"Job {job_id} was removed before its failure could be recorded.")
        except TubeQueueError as e:
            self.logger.error(f"Could not record failure of job {job_id}: {e}")

    async def _discard_artifacts(self, job_id: str):
        try:
            count = await self.artifact_store.delete_prefix(job_id)
            self.logger.info(f"Deleted {count} artifact(s) of job {job_id}.")
        except StorageError as e:
            self.logger.warning(f"Could not delete artifacts of job {job_id}: {e}")

    async def _remove_work_dir(self, job_dir: Path):
        """Best-effort removal of a job's scratch directory."""
        if not await asyncio.to_thread(job_dir.exists):
            return
        try:
            await asyncio.to_thread(shutil.rmtree, job_dir)
        except OSError as e:
            self.logger.warning(f"Could not remove temporary directory {job_dir}: {e}")

    async def cleanup_temporary_files(self):
        """Deletes scratch directories of jobs that are finished or no longer exist."""
        if not await asyncio.to_thread(self.work_dir.is_dir): return
        entries = await asyncio.to_thread(list, self.work_dir.iterdir())
        count = 0
        for entry in entries:
            if not entry.is_dir() or entry.name in self.job_tasks:
                continue
            try:
                job = await self.get_job(entry.name)
                if job.status in ACTIVE_STATUSES:
                    continue
            except NotFoundError:
                pass
            await self._remove_work_dir(entry)
            count += 1
        if count > 0: self.logger.info(f"Deleted {count} stale temporary director(ies).")

    # --- Helpers ---

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._job_locks.setdefault(job_id, asyncio.Lock())

    def _resume_event(self, job_id: str) -> asyncio.Event:
        return self._resume_events.setdefault(job_id, asyncio.Event())

    def _forget(self, job_id: str):
        self._job_locks.pop(job_id, None)
        self._resume_events.pop(job_id, None)

    async def _write(self, job_id: str, func: Callable[..., DownloadJob], *args, **kwargs) -> DownloadJob:
        """Applies one store write for a job under that job's lock and announces the result."""
        async with self._lock_for(job_id):
            job = await asyncio.to_thread(func, job_id, *args, **kwargs)
        await self._emit('update_job', job)
        return job

    async def _emit(self, event: str, value: Any):
        if self.event_callback is None:
            return
        try:
            await self.event_callback((event, value))
        except Exception:
            self.logger.exception(f"Event handler failed for '{event}'")
