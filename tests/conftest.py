import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure tests can import the project package regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from tubequeue.artifact_store import LocalArtifactStore
from tubequeue.downloads import DownloadManager
from tubequeue.exceptions import FetchError, ProbeError
from tubequeue.job_store import SQLiteJobStore
from tubequeue.jobs import MediaFormat, VideoMetadata


class FakeExtractor:
    """Stands in for MediaExtractor, writing yt-dlp-like output files."""

    def __init__(self, title: str = "Demo", probe_error: Optional[str] = None, fetch_error: Optional[str] = None,
                 produce_media: bool = True, progress_steps=(10.0, 50.0, 30.0, 100.0), info_text: Optional[str] = None):
        self.title = title
        self.probe_error = probe_error
        self.fetch_error = fetch_error
        self.produce_media = produce_media
        self.progress_steps = progress_steps
        self.info_text = info_text
        self.release: Optional[asyncio.Event] = None
        self.fetch_started: Optional[asyncio.Event] = None
        self.probe_calls: List[str] = []
        self.fetch_calls: List[str] = []

    async def probe(self, url: str) -> VideoMetadata:
        self.probe_calls.append(url)
        await asyncio.sleep(0)
        if self.probe_error:
            raise ProbeError(self.probe_error)
        return VideoMetadata(title=self.title, thumbnail="https://img.example/t.jpg", duration="0:10",
                             file_size=1234, available_qualities=["720p", "360p"], subtitle_languages=["en"])

    async def fetch(self, url, quality, media_format, work_dir: Path, progress_callback=None, tag=''):
        self.fetch_calls.append(url)
        if self.fetch_started is not None:
            self.fetch_started.set()
        if self.release is not None:
            await self.release.wait()
        for step in self.progress_steps:
            if progress_callback:
                await progress_callback(step)
        if self.fetch_error:
            raise FetchError(self.fetch_error, stderr=f"ERROR: {self.fetch_error}")
        extension = MediaFormat(media_format).extension
        files = []
        if self.produce_media:
            files.append(work_dir / f"{self.title}{extension}")
            files[-1].write_bytes(b"x" * 100)
        files.append(work_dir / f"{self.title}.en.vtt")
        files[-1].write_text("WEBVTT\n", encoding="utf-8")
        files.append(work_dir / f"{self.title}.info.json")
        info_text = self.info_text if self.info_text is not None else json.dumps({"title": self.title, "duration_string": "0:10"})
        files[-1].write_text(info_text, encoding="utf-8")
        return sorted(files)


@pytest.fixture
def job_store(tmp_path):
    return SQLiteJobStore(tmp_path / "jobs.sqlite")


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def make_manager(tmp_path, job_store, artifact_store):
    """Builds a DownloadManager around a FakeExtractor; call inside a running loop."""
    def factory(extractor=None, events=None, **kwargs):
        extractor = extractor or FakeExtractor()

        async def record(event):
            if events is not None:
                events.append(event)

        return DownloadManager(
            job_store, artifact_store, extractor, tmp_path / "work",
            pause_poll_interval=0.05, event_callback=record, **kwargs,
        )
    return factory


# A stand-in yt-dlp: prints JSON for probes, writes output files for fetches,
# and fails for any URL containing "fail".
FAKE_YT_DLP = '''
import json, os, sys

args = sys.argv[1:]
url = args[-1]
if "fail" in url:
    sys.stderr.write("WARNING: something odd\\nERROR: [generic] Unsupported URL: " + url + "\\n")
    sys.exit(1)
if "--dump-single-json" in args:
    if "garbage" in url:
        print("not json")
    else:
        print(json.dumps({"title": "Demo", "duration": 10, "formats": [{"height": 360}, {"height": 720}]}))
    sys.exit(0)
work_dir = args[args.index("--paths") + 1]
ext = "mp3" if "-x" in args else "mp4"
print("[download] Destination: " + os.path.join(work_dir, "Demo.en.vtt"))
print("PROGRESS:: 100.0%")
print("[download] Destination: " + os.path.join(work_dir, "Demo." + ext))
for pct in ("12.5%", " 50.0%", "100.0%"):
    print("PROGRESS::" + pct)
for name, body in (("Demo." + ext, "media"), ("Demo.en.vtt", "WEBVTT"), ("Demo.info.json", "{}"), ("Demo.mp4.part", "")):
    with open(os.path.join(work_dir, name), "w") as f:
        f.write(body)
'''


@pytest.fixture
def fake_yt_dlp(tmp_path):
    script = tmp_path / "yt-dlp"
    script.write_text(f"#!{sys.executable}\n{FAKE_YT_DLP}", encoding="utf-8")
    script.chmod(0o755)
    return script
