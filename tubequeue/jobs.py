"""
Defines the data classes for download jobs and extracted metadata.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


class JobStatus(str, Enum):
    """
    Lifecycle status of a download job.

    pending -> downloading -> completed | error, with downloading <-> paused
    as a user-requested side transition.
    """
    PENDING = 'pending'
    DOWNLOADING = 'downloading'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    ERROR = 'error'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class MediaFormat(str, Enum):
    """The kind of media a job retrieves."""
    VIDEO = 'video'
    AUDIO = 'audio'

    @property
    def extension(self) -> str:
        """The container extension of the primary media file."""
        return '.mp4' if self is MediaFormat.VIDEO else '.mp3'


@dataclass
class Subtitle:
    """A subtitle artifact attached to a completed job."""
    language: str
    filename: str
    path: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Subtitle':
        return cls(language=data['language'], filename=data['filename'], path=data['path'])


@dataclass
class VideoMetadata:
    """
    Metadata reported by a probe of a URL.

    Attributes:
        title: The video title.
        thumbnail: URL of the thumbnail image, or an empty string.
        duration: Human-readable duration (e.g. "5:23").
        file_size: Approximate size in bytes, 0 when unknown.
        available_qualities: Resolution tags such as "1080p", highest first.
        subtitle_languages: Languages with manually authored subtitles.
        auto_subtitle_languages: Languages with automatic captions.
    """
    title: str
    thumbnail: str = ''
    duration: str = ''
    file_size: int = 0
    available_qualities: List[str] = field(default_factory=list)
    subtitle_languages: List[str] = field(default_factory=list)
    auto_subtitle_languages: List[str] = field(default_factory=list)

    @property
    def has_subtitles(self) -> bool:
        return bool(self.subtitle_languages or self.auto_subtitle_languages)


@dataclass
class DownloadJob:
    """
    Represents a single submitted download request and its lifecycle record.

    Attributes:
        job_id: A unique identifier for the job.
        url: The URL provided by the user.
        quality: The requested resolution tag (e.g. "720p").
        format: Whether the job retrieves video or audio.
        status: The current lifecycle status.
        progress: Integer percent, 0-100.
        title: The video title, once known.
        thumbnail: The thumbnail URL, once known.
        duration: The human-readable duration, once known.
        file_size: Total bytes uploaded, set on completion.
        file_path: Artifact store key of the primary media file, set on completion.
        subtitles: Subtitle artifacts, set on completion.
        error: Failure detail, present only when status is error.
        created_at: Submission time (UTC).
    """
    job_id: str
    url: str
    quality: str
    format: MediaFormat
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[str] = None
    file_size: Optional[int] = None
    file_path: Optional[str] = None
    subtitles: List[Subtitle] = field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def display_title(self) -> str:
        return self.title or self.url

    def to_dict(self) -> Dict[str, Any]:
        """Convert the job to a JSON-friendly dictionary."""
        return {
            'id': self.job_id,
            'url': self.url,
            'title': self.title,
            'thumbnail': self.thumbnail,
            'duration': self.duration,
            'quality': self.quality,
            'format': self.format.value,
            'status': self.status.value,
            'progress': self.progress,
            'file_size': self.file_size,
            'file_path': self.file_path,
            'error_message': self.error,
            'subtitles': [s.to_dict() for s in self.subtitles],
            'created_at': self.created_at.isoformat(),
        }
