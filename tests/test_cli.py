"""Tests for the CLI module."""

import json

import pytest
from typer.testing import CliRunner

from tubequeue.cli import app, format_size
from tubequeue.job_store import SQLiteJobStore
from tubequeue.jobs import JobStatus

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path, fake_yt_dlp):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "yt_dlp_path": str(fake_yt_dlp),
        "database_path": str(tmp_path / "jobs.sqlite"),
        "log_dir": str(tmp_path / "logs"),
        "work_dir": str(tmp_path / "work"),
        "artifact_dir": str(tmp_path / "artifacts"),
        "pause_poll_interval": 0.05,
    }), encoding="utf-8")
    return path


def invoke(config_path, *args, **kwargs):
    return runner.invoke(app, ["--config", str(config_path), *args], **kwargs)


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "tubequeue" in result.output


def test_format_size():
    assert format_size(None) == "-"
    assert format_size(512) == "512 B"
    assert format_size(1536) == "1.5 KB"
    assert format_size(5 * 1024 ** 3) == "5.0 GB"


def test_download_then_list_show_and_clear(config_path, tmp_path):
    result = invoke(config_path, "download", "https://example.com/watch?v=demo")
    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "Demo" in result.output

    store = SQLiteJobStore(tmp_path / "jobs.sqlite")
    [job] = store.list_jobs()
    assert job.status is JobStatus.COMPLETED
    assert job.file_path == f"{job.job_id}/Demo.mp4"
    assert [s.language for s in job.subtitles] == ["en"]
    assert (tmp_path / "artifacts" / job.job_id / "Demo.mp4").read_text() == "media"

    result = invoke(config_path, "list")
    assert result.exit_code == 0
    assert job.job_id[:8] in result.output
    assert "completed: 1" in result.output

    result = invoke(config_path, "show", job.job_id[:8])
    assert result.exit_code == 0
    assert job.job_id in result.output

    result = invoke(config_path, "pause", job.job_id)
    assert result.exit_code == 1
    assert "is completed" in result.output

    result = invoke(config_path, "clear")
    assert result.exit_code == 0
    assert "Cleared 1" in result.output
    assert store.list_jobs() == []


def test_download_audio(config_path, tmp_path):
    result = invoke(config_path, "download", "https://example.com/a", "--format", "audio")
    assert result.exit_code == 0, result.output
    [job] = SQLiteJobStore(tmp_path / "jobs.sqlite").list_jobs()
    assert job.file_path.endswith("Demo.mp3")


def test_failed_download_exits_nonzero(config_path, tmp_path):
    result = invoke(config_path, "download", "https://example.com/fail")
    assert result.exit_code == 1
    assert "Unsupported URL" in result.output
    [job] = SQLiteJobStore(tmp_path / "jobs.sqlite").list_jobs(JobStatus.ERROR)
    assert job.progress == 0


def test_invalid_submission_is_rejected(config_path, tmp_path):
    result = invoke(config_path, "download", "not-a-url")
    assert result.exit_code == 1
    assert "Not a valid http(s) URL" in result.output
    assert SQLiteJobStore(tmp_path / "jobs.sqlite").list_jobs() == []


def test_info(config_path):
    result = invoke(config_path, "info", "https://example.com/v")
    assert result.exit_code == 0, result.output
    assert "Demo" in result.output
    assert "720p, 360p" in result.output


def test_unknown_job(config_path):
    result = invoke(config_path, "show", "does-not-exist")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_remove_with_prefix(config_path, tmp_path):
    invoke(config_path, "download", "https://example.com/v")
    store = SQLiteJobStore(tmp_path / "jobs.sqlite")
    [job] = store.list_jobs()

    result = invoke(config_path, "remove", job.job_id[:8], input="n\n")
    assert result.exit_code == 1
    assert store.list_jobs() != []

    result = invoke(config_path, "remove", job.job_id[:8], "--yes")
    assert result.exit_code == 0
    assert store.list_jobs() == []


def test_list_filter_and_empty_queue(config_path):
    result = invoke(config_path, "list", "--status", "error")
    assert result.exit_code == 0
    assert "No jobs in the queue." in result.output


def test_recover(config_path):
    result = invoke(config_path, "recover", "--yes")
    assert result.exit_code == 0
    assert "Marked 0" in result.output


def test_config_set(config_path):
    result = invoke(config_path, "config", "--set", "default_quality=480p")
    assert result.exit_code == 0, result.output
    assert json.loads(config_path.read_text(encoding="utf-8"))["default_quality"] == "480p"

    result = invoke(config_path, "config", "--set", "default_quality=huge")
    assert result.exit_code == 1
    assert "default_quality" in result.output

    result = invoke(config_path, "config", "--set", "colour")
    assert result.exit_code == 1
