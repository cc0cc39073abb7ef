"""
Defines the main AppController class, which wires the application's components
together and exposes the control surface used by the queue view.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as SettingsValidationError

from .artifact_store import ArtifactStore, LocalArtifactStore, HttpArtifactStore
from .config import ConfigManager, FileSettings, Settings, describe_validation_error, env_overrides
from .dependencies import DependencyManager
from .downloads import DownloadManager
from .exceptions import DependencyError, NotFoundError, ValidationError
from .extractor import MediaExtractor
from .job_store import JobStore, SQLiteJobStore
from .jobs import DownloadJob, JobStatus, MediaFormat, VideoMetadata

Listener = Callable[[Tuple[str, Any]], Awaitable[None]]


def build_artifact_store(config: Settings) -> ArtifactStore:
    """Creates the artifact store selected by `storage_backend`."""
    if config.storage_backend == 'http':
        return HttpArtifactStore(config.storage_url, config.storage_bucket, config.storage_key)
    return LocalArtifactStore(config.artifact_dir, config.public_base_url)


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 job_store: Optional[JobStore] = None, artifact_store: Optional[ArtifactStore] = None):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            job_store: Overrides the SQLite store built from settings.
            artifact_store: Overrides the artifact store built from settings.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.listeners: List[Listener] = []

        self.dep_manager = DependencyManager(config.yt_dlp_path, config.ffmpeg_path)
        self.job_store = job_store or SQLiteJobStore(config.database_path)
        self.artifact_store = artifact_store or build_artifact_store(config)
        self.extractor = self._build_extractor()
        self.download_manager = DownloadManager(
            self.job_store, self.artifact_store, self.extractor, config.work_dir,
            max_concurrent_downloads=config.max_concurrent_downloads,
            pause_poll_interval=config.pause_poll_interval,
            remove_artifacts_with_job=config.remove_artifacts_with_job,
            event_callback=self._on_manager_event,
        )

    def _build_extractor(self) -> MediaExtractor:
        return MediaExtractor(
            self.dep_manager.yt_dlp_path, self.dep_manager.ffmpeg_path,
            subtitle_languages=self.config.subtitle_languages,
            audio_format=self.config.audio_format, audio_bitrate=self.config.audio_bitrate,
            filename_template=self.config.filename_template,
            probe_timeout=self.config.probe_timeout, fetch_timeout=self.config.fetch_timeout,
        )

    async def start(self):
        """Locates dependencies and prepares the download manager."""
        await self.dep_manager.initialize()
        self.extractor.yt_dlp_path = self.dep_manager.yt_dlp_path
        self.extractor.ffmpeg_path = self.dep_manager.ffmpeg_path
        if not self.dep_manager.yt_dlp_path:
            self.logger.warning("yt-dlp was not found. Submissions will be rejected until it is installed.")
        await self.download_manager.initialize()

    async def stop(self):
        """Handles application shutdown logic."""
        self.logger.info("Application closing.")
        await self.download_manager.shutdown()

    def add_listener(self, listener: Listener):
        self.listeners.append(listener)

    async def _on_manager_event(self, event: Tuple[str, Any]):
        """Forwards manager events to every registered listener."""
        for listener in list(self.listeners):
            await listener(event)

    def _require_extractor(self):
        if not self.dep_manager.yt_dlp_path:
            raise DependencyError("yt-dlp is not available. Install it or set 'yt_dlp_path' in the config.")

    # --- Control surface ---

    async def submit(self, url: str, quality: Optional[str] = None, media_format: Optional[MediaFormat] = None) -> DownloadJob:
        """Validates conditions and queues a new download."""
        self._require_extractor()
        return await self.download_manager.submit(
            url, quality or self.config.default_quality, media_format or self.config.default_format
        )

    async def probe(self, url: str) -> VideoMetadata:
        """Fetches metadata for a URL without creating a job."""
        self._require_extractor()
        return await self.extractor.probe(url.strip())

    async def pause(self, job_id: str) -> DownloadJob:
        return await self.download_manager.pause(job_id)

    async def resume(self, job_id: str, relaunch: bool = True) -> DownloadJob:
        if relaunch:
            self._require_extractor()
        return await self.download_manager.resume(job_id, relaunch=relaunch)

    async def remove(self, job_id: str):
        await self.download_manager.remove(job_id)

    async def clear_completed(self) -> List[str]:
        return await self.download_manager.clear_completed()

    async def recover_interrupted(self) -> List[str]:
        return await self.download_manager.recover_interrupted()

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[DownloadJob]:
        return await self.download_manager.list_jobs(status)

    async def get_job(self, job_id: str) -> DownloadJob:
        return await self.download_manager.get_job(job_id)

    async def resolve_job_id(self, id_or_prefix: str) -> str:
        """Accepts a full job id or an unambiguous prefix of one."""
        try:
            return (await self.get_job(id_or_prefix)).job_id
        except NotFoundError:
            pass
        matches = [job.job_id for job in await self.list_jobs() if job.job_id.startswith(id_or_prefix)]
        if len(matches) > 1:
            raise ValidationError(f"'{id_or_prefix}' matches {len(matches)} jobs; use more characters.")
        if not matches:
            raise NotFoundError(f"Job {id_or_prefix} not found.")
        return matches[0]

    async def wait_for(self, job_id: str) -> DownloadJob:
        return await self.download_manager.wait_for(job_id)

    async def counts(self) -> Dict[str, int]:
        return await asyncio.to_thread(self.job_store.counts)

    def artifact_url(self, key: str) -> str:
        return self.artifact_store.public_url(key)

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings. They take effect on the next start."""
        try:
            new_settings = FileSettings(**{**self.config.model_dump(), **new_settings_data})
        except SettingsValidationError as e:
            return False, describe_validation_error(e)
        # Values supplied through the environment are not written to disk.
        self.config_manager.save(new_settings, exclude=set(env_overrides()))
        self.config = new_settings
        return True, "Settings have been saved."

    async def get_dependency_versions(self) -> Dict[str, str]:
        """Asynchronously fetches dependency versions."""
        yt_dlp_version, ffmpeg_version = await asyncio.gather(
            self.dep_manager.get_version(self.dep_manager.yt_dlp_path),
            self.dep_manager.get_version(self.dep_manager.ffmpeg_path),
        )
        return {'yt-dlp': yt_dlp_version, 'ffmpeg': ffmpeg_version}
