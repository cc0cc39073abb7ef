"""
Durable storage for job records.

`JobStore` is the contract the orchestrator and the queue view share; the
SQLite implementation is safe to call from several worker threads at once
because every call opens its own connection and status changes are
compare-and-set updates inside an immediate transaction.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .exceptions import NotFoundError, StorageError, InvalidTransitionError
from .jobs import DownloadJob, JobStatus, MediaFormat, Subtitle

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.DOWNLOADING, JobStatus.PAUSED)

# DownloadJob attribute -> column
COLUMN_MAP = {
    'url': 'url',
    'title': 'title',
    'thumbnail': 'thumbnail',
    'duration': 'duration',
    'quality': 'quality',
    'format': 'format',
    'status': 'status',
    'progress': 'progress',
    'file_size': 'file_size',
    'file_path': 'file_path',
    'error': 'error_message',
    'subtitles': 'subtitles',
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY NOT NULL,
    url TEXT NOT NULL,
    title TEXT,
    thumbnail TEXT,
    duration TEXT,
    quality TEXT NOT NULL,
    format TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    file_size INTEGER,
    file_path TEXT,
    error_message TEXT,
    subtitles TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
"""

SELECT_COLUMNS = (
    "id, url, title, thumbnail, duration, quality, format, status, progress, "
    "file_size, file_path, error_message, subtitles, created_at"
)


class JobStore(ABC):
    """The operations every job store provides."""

    @abstractmethod
    def create(self, job: DownloadJob) -> DownloadJob: ...

    @abstractmethod
    def get(self, job_id: str) -> DownloadJob:
        """Raises NotFoundError for an unknown id."""

    @abstractmethod
    def list_jobs(self, status: Optional[JobStatus] = None) -> List[DownloadJob]:
        """Newest first."""

    @abstractmethod
    def update(self, job_id: str, **fields: Any) -> DownloadJob: ...

    @abstractmethod
    def transition(self, job_id: str, allowed: Iterable[JobStatus], new_status: JobStatus, **fields: Any) -> DownloadJob:
        """Atomically moves a job to `new_status` if its current status is in `allowed`."""

    @abstractmethod
    def record_progress(self, job_id: str, progress: int) -> Optional[DownloadJob]:
        """Raises progress if the job is downloading or paused; returns None if nothing changed."""

    @abstractmethod
    def delete(self, job_id: str) -> None: ...

    @abstractmethod
    def delete_by_status(self, status: JobStatus) -> List[str]: ...

    @abstractmethod
    def counts(self) -> Dict[str, int]: ...

    def complete(self, job_id: str, *, file_path: str, file_size: int, subtitles: List[Subtitle],
                 title: Optional[str] = None, duration: Optional[str] = None) -> DownloadJob:
        """Records every result field together with the move to completed."""
        if not file_path:
            raise StorageError("A completed job needs a file path.")
        fields: Dict[str, Any] = {
            'progress': 100, 'file_path': file_path, 'file_size': file_size,
            'subtitles': subtitles, 'error': None,
        }
        if title is not None: fields['title'] = title
        if duration is not None: fields['duration'] = duration
        return self.transition(job_id, (JobStatus.DOWNLOADING, JobStatus.PAUSED), JobStatus.COMPLETED, **fields)

    def fail(self, job_id: str, message: str) -> DownloadJob:
        """Moves an active job to error, clearing results and progress."""
        return self.transition(
            job_id, ACTIVE_STATUSES, JobStatus.ERROR,
            error=message or "Unknown error", progress=0, file_path=None, subtitles=[],
        )


class SQLiteJobStore(JobStore):
    """A SQLite-backed job store."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yields a fresh autocommit connection and closes it afterwards."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open job database: {e}")
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
        except sqlite3.Error as e:
            self.logger.error(f"Job database error: {e}")
            raise StorageError(f"Job database error: {e}")
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def _initialize_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @staticmethod
    def _to_column_value(attr: str, value: Any) -> Any:
        if attr == 'subtitles':
            return json.dumps([s.to_dict() if isinstance(s, Subtitle) else s for s in (value or [])])
        if attr in ('status', 'format') and value is not None:
            return getattr(value, 'value', value)
        return value

    @staticmethod
    def _row_to_job(row: tuple) -> DownloadJob:
        (job_id, url, title, thumbnail, duration, quality, fmt, status, progress,
         file_size, file_path, error_message, subtitles_json, created_at) = row
        try:
            subtitles = [Subtitle.from_dict(s) for s in json.loads(subtitles_json or '[]')]
        except (ValueError, KeyError, TypeError):
            subtitles = []
        return DownloadJob(
            job_id=job_id, url=url, quality=quality, format=MediaFormat(fmt), status=JobStatus(status),
            progress=int(progress or 0), title=title, thumbnail=thumbnail, duration=duration,
            file_size=file_size, file_path=file_path, subtitles=subtitles, error=error_message,
            created_at=datetime.fromisoformat(created_at),
        )

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> DownloadJob:
        row = conn.execute(f"SELECT {SELECT_COLUMNS} FROM jobs WHERE id=?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job {job_id} not found.")
        return self._row_to_job(row)

    def _assignments(self, fields: Dict[str, Any]):
        unknown = set(fields) - set(COLUMN_MAP)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        columns = [f"{COLUMN_MAP[attr]}=?" for attr in fields]
        values = [self._to_column_value(attr, value) for attr, value in fields.items()]
        return columns, values

    def create(self, job: DownloadJob) -> DownloadJob:
        with self._connect() as conn:
            try:
                conn.execute(
                    f"INSERT INTO jobs({SELECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.job_id, job.url, job.title, job.thumbnail, job.duration, job.quality,
                        job.format.value, job.status.value, job.progress, job.file_size, job.file_path,
                        job.error, self._to_column_value('subtitles', job.subtitles), job.created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                raise StorageError(f"Job {job.job_id} already exists.")
        return job

    def get(self, job_id: str) -> DownloadJob:
        with self._connect() as conn:
            return self._fetch(conn, job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[DownloadJob]:
        query = f"SELECT {SELECT_COLUMNS} FROM jobs"
        params: tuple = ()
        if status is not None:
            query += " WHERE status=?"
            params = (status.value,)
        query += " ORDER BY created_at DESC, rowid DESC"
        with self._connect() as conn:
            return [self._row_to_job(row) for row in conn.execute(query, params).fetchall()]

    def update(self, job_id: str, **fields: Any) -> DownloadJob:
        columns, values = self._assignments(fields)
        with self._transaction() as conn:
            self._fetch(conn, job_id)
            if columns:
                conn.execute(
                    f"UPDATE jobs SET {', '.join(columns)}, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                    (*values, job_id),
                )
            return self._fetch(conn, job_id)

    def transition(self, job_id: str, allowed: Iterable[JobStatus], new_status: JobStatus, **fields: Any) -> DownloadJob:
        allowed = tuple(allowed)
        columns, values = self._assignments(fields)
        with self._transaction() as conn:
            current = self._fetch(conn, job_id)
            if current.status not in allowed:
                raise InvalidTransitionError(
                    f"Job {job_id} is {current.status.value}; cannot move to {new_status.value}."
                )
            conn.execute(
                f"UPDATE jobs SET {', '.join(['status=?', *columns])}, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (new_status.value, *values, job_id),
            )
            job = self._fetch(conn, job_id)
        self.logger.info(f"Job {job_id}: {current.status.value} -> {new_status.value}")
        return job

    def record_progress(self, job_id: str, progress: int) -> Optional[DownloadJob]:
        progress = max(0, min(100, int(progress)))
        with self._transaction() as conn:
            current = self._fetch(conn, job_id)
            if current.status not in (JobStatus.DOWNLOADING, JobStatus.PAUSED) or progress <= current.progress:
                return None
            conn.execute(
                "UPDATE jobs SET progress=?, updated_at=CURRENT_TIMESTAMP WHERE id=?",
                (progress, job_id),
            )
            return self._fetch(conn, job_id)

    def delete(self, job_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Job {job_id} not found.")

    def delete_by_status(self, status: JobStatus) -> List[str]:
        with self._transaction() as conn:
            ids = [row[0] for row in conn.execute("SELECT id FROM jobs WHERE status=?", (status.value,)).fetchall()]
            conn.execute("DELETE FROM jobs WHERE status=?", (status.value,))
        return ids

    def counts(self) -> Dict[str, int]:
        result = {status.value: 0 for status in JobStatus}
        with self._connect() as conn:
            for status, count in conn.execute("SELECT status, COUNT(1) FROM jobs GROUP BY status").fetchall():
                result[status] = int(count)
        return result
