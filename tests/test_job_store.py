from datetime import datetime, timedelta, timezone
from concurrent.futures import ThreadPoolExecutor

import pytest

from tubequeue.exceptions import InvalidTransitionError, NotFoundError, StorageError
from tubequeue.job_store import SQLiteJobStore
from tubequeue.jobs import DownloadJob, JobStatus, MediaFormat, Subtitle


def make_job(job_id="job-1", minutes_ago=0, **kwargs):
    created = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
    return DownloadJob(job_id=job_id, url=f"https://example.com/{job_id}", quality="720p",
                       format=MediaFormat.VIDEO, created_at=created, **kwargs)


def test_create_and_get_roundtrip(job_store):
    job = job_store.create(make_job())
    stored = job_store.get(job.job_id)
    assert stored.url == job.url
    assert stored.status is JobStatus.PENDING
    assert stored.format is MediaFormat.VIDEO
    assert stored.created_at == job.created_at
    assert stored.subtitles == []


def test_duplicate_create_is_rejected(job_store):
    job_store.create(make_job())
    with pytest.raises(StorageError):
        job_store.create(make_job())


def test_get_unknown_raises(job_store):
    with pytest.raises(NotFoundError):
        job_store.get("nope")


def test_list_is_newest_first_and_filters(job_store):
    job_store.create(make_job("old", minutes_ago=10))
    job_store.create(make_job("new", minutes_ago=1))
    job_store.create(make_job("mid", minutes_ago=5, status=JobStatus.ERROR, error="boom"))
    assert [job.job_id for job in job_store.list_jobs()] == ["new", "mid", "old"]
    assert [job.job_id for job in job_store.list_jobs(JobStatus.ERROR)] == ["mid"]


def test_transition_is_compare_and_set(job_store):
    job_store.create(make_job())
    job = job_store.transition("job-1", (JobStatus.PENDING,), JobStatus.DOWNLOADING, title="Demo")
    assert job.status is JobStatus.DOWNLOADING
    assert job.title == "Demo"
    with pytest.raises(InvalidTransitionError):
        job_store.transition("job-1", (JobStatus.PENDING,), JobStatus.DOWNLOADING)
    with pytest.raises(NotFoundError):
        job_store.transition("missing", (JobStatus.PENDING,), JobStatus.DOWNLOADING)


def test_only_one_concurrent_transition_wins(tmp_path):
    store = SQLiteJobStore(tmp_path / "race.sqlite")
    store.create(make_job())

    def attempt(_):
        try:
            store.transition("job-1", (JobStatus.PENDING,), JobStatus.DOWNLOADING)
            return True
        except InvalidTransitionError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))
    assert results.count(True) == 1


def test_record_progress_only_rises(job_store):
    job_store.create(make_job())
    assert job_store.record_progress("job-1", 40) is None  # still pending
    job_store.transition("job-1", (JobStatus.PENDING,), JobStatus.DOWNLOADING)
    assert job_store.record_progress("job-1", 40).progress == 40
    assert job_store.record_progress("job-1", 20) is None
    assert job_store.get("job-1").progress == 40


def test_complete_and_fail(job_store):
    job_store.create(make_job("a"))
    job_store.create(make_job("b"))
    for job_id in ("a", "b"):
        job_store.transition(job_id, (JobStatus.PENDING,), JobStatus.DOWNLOADING)

    subtitles = [Subtitle(language="en", filename="Demo.en.vtt", path="a/Demo.en.vtt")]
    done = job_store.complete("a", file_path="a/Demo.mp4", file_size=42, subtitles=subtitles, title="Demo")
    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100
    assert done.subtitles == subtitles
    assert job_store.get("a").file_size == 42

    failed = job_store.fail("b", "Video unavailable")
    assert failed.status is JobStatus.ERROR
    assert failed.error == "Video unavailable"
    assert failed.progress == 0
    assert failed.file_path is None

    with pytest.raises(InvalidTransitionError):
        job_store.fail("a", "too late")


def test_complete_requires_file_path(job_store):
    job_store.create(make_job())
    job_store.transition("job-1", (JobStatus.PENDING,), JobStatus.DOWNLOADING)
    with pytest.raises(StorageError):
        job_store.complete("job-1", file_path="", file_size=0, subtitles=[])


def test_update_rejects_unknown_fields(job_store):
    job_store.create(make_job())
    with pytest.raises(ValueError):
        job_store.update("job-1", colour="blue")
    assert job_store.update("job-1", thumbnail="t.jpg").thumbnail == "t.jpg"


def test_delete_and_delete_by_status(job_store):
    job_store.create(make_job("a", status=JobStatus.COMPLETED, progress=100, file_path="a/x.mp4"))
    job_store.create(make_job("b", status=JobStatus.COMPLETED, progress=100, file_path="b/x.mp4"))
    job_store.create(make_job("c"))
    assert sorted(job_store.delete_by_status(JobStatus.COMPLETED)) == ["a", "b"]
    assert job_store.delete_by_status(JobStatus.COMPLETED) == []
    job_store.delete("c")
    with pytest.raises(NotFoundError):
        job_store.delete("c")
    assert job_store.counts() == {status.value: 0 for status in JobStatus}
