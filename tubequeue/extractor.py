"""
Provides the probe and fetch operations against the yt-dlp executable.
"""

import asyncio
import json
import os
import re
import sys
import signal
import subprocess
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .constants import (
    SUBPROCESS_CREATION_FLAGS, SUBTITLE_EXTENSIONS, PARTIAL_FILE_SUFFIXES, FALLBACK_QUALITIES,
    DEFAULT_SUBTITLE_LANGUAGES, DEFAULT_AUDIO_FORMAT, DEFAULT_AUDIO_BITRATE,
)
from .exceptions import ProbeError, ParseError, FetchError
from .jobs import MediaFormat, VideoMetadata

ProgressCallback = Callable[[float], Awaitable[None]]

PROGRESS_PREFIX = 'PROGRESS::'
DESTINATION_PATTERN = re.compile(r'\[download\] Destination: (.*)')
PERCENT_PATTERN = re.compile(r'(\d+\.?\d*)%')


def format_selector(quality: str) -> str:
    """Builds the yt-dlp `-f` expression for a stream at or below the requested height."""
    tag = quality.strip().lower()
    if tag == 'best':
        return 'best[ext=mp4]/best'
    height = tag.rstrip('p')
    return f'best[height<={height}][ext=mp4]/best[height<={height}]'


def parse_progress_line(line: str) -> Optional[float]:
    """Extracts a download percentage from a yt-dlp output line, if it carries one."""
    if line.startswith(PROGRESS_PREFIX):
        try:
            return float(line.split('::', 1)[1].strip().rstrip('%'))
        except (IndexError, ValueError):
            return None
    if '[download]' in line and (match := PERCENT_PATTERN.search(line)):
        try:
            return float(match.group(1))
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        raise ParseError(f"Expected a number in extractor output, got {value!r}")


def parse_metadata(info: Dict[str, Any]) -> VideoMetadata:
    """
    Converts yt-dlp's JSON info dictionary into VideoMetadata.

    Raises:
        ParseError: If a field has an unusable type.
    """
    duration = info.get('duration_string') or ''
    if not duration and info.get('duration') is not None:
        duration = str(info['duration'])

    heights = set()
    for fmt in info.get('formats') or []:
        height = fmt.get('height') if isinstance(fmt, dict) else None
        if isinstance(height, int) and height > 0:
            heights.add(height)
    qualities = [f"{h}p" for h in sorted(heights, reverse=True)] or list(FALLBACK_QUALITIES)

    subtitles = info.get('subtitles') or {}
    automatic = info.get('automatic_captions') or {}
    if not isinstance(subtitles, dict) or not isinstance(automatic, dict):
        raise ParseError("Subtitle listings in extractor output are malformed.")

    return VideoMetadata(
        title=info.get('title') or 'Unknown Title',
        thumbnail=info.get('thumbnail') or '',
        duration=str(duration),
        file_size=_as_int(info.get('filesize_approx')),
        available_qualities=qualities,
        subtitle_languages=list(subtitles.keys()),
        auto_subtitle_languages=list(automatic.keys()),
    )


def list_produced_files(work_dir: Path) -> List[Path]:
    """Returns the finished regular files in a working directory, sorted by name."""
    return sorted(
        p for p in work_dir.iterdir()
        if p.is_file() and p.suffix not in PARTIAL_FILE_SUFFIXES
    )


class MediaExtractor:
    """
    Runs yt-dlp in two modes: a metadata-only probe and a full fetch into an
    isolated working directory.
    """
    def __init__(self, yt_dlp_path: Optional[Path], ffmpeg_path: Optional[Path] = None,
                 subtitle_languages: Sequence[str] = DEFAULT_SUBTITLE_LANGUAGES,
                 audio_format: str = DEFAULT_AUDIO_FORMAT, audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
                 filename_template: str = '%(title)s.%(ext)s',
                 probe_timeout: int = 60, fetch_timeout: int = 3600):
        """
        Initializes the MediaExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            ffmpeg_path: The path to ffmpeg, needed for audio extraction.
            subtitle_languages: Languages requested for manual and automatic subtitles.
            audio_format: Target container for audio jobs.
            audio_bitrate: Fixed bitrate for audio transcoding.
            filename_template: yt-dlp output template, relative to the working directory.
            probe_timeout: Seconds before a probe is abandoned.
            fetch_timeout: Seconds before a fetch is abandoned.
        """
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.subtitle_languages = list(subtitle_languages)
        self.audio_format = audio_format
        self.audio_bitrate = audio_bitrate
        self.filename_template = filename_template
        self.probe_timeout = probe_timeout
        self.fetch_timeout = fetch_timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr or not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    def _process_kwargs(self) -> Dict[str, Any]:
        """Each yt-dlp run gets its own process group so it can be stopped with its children."""
        if sys.platform == 'win32':
            return {'creationflags': SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP}
        return {'start_new_session': True}

    def _require_binary(self, error_cls) -> str:
        if not self.yt_dlp_path:
            raise error_cls("yt-dlp executable not found.")
        return str(self.yt_dlp_path)

    async def _run_command(self, command: List[str], timeout: int) -> Tuple[str, str]:
        """
        A robust wrapper for running a short yt-dlp command.

        Args:
            command: The command and its arguments as a list of strings.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            ProbeError: On any failure (e.g., timeout, non-zero exit code).
        """
        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._process_kwargs()
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise ProbeError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise ProbeError("Metadata extraction timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise ProbeError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process and process.returncode is None: process.kill()
            raise

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            raise ProbeError(error_msg)

        return stdout, stderr

    async def probe(self, url: str) -> VideoMetadata:
        """
        Extracts metadata for a single video without downloading it.

        Args:
            url: The URL to inspect.

        Returns:
            The parsed VideoMetadata.

        Raises:
            ProbeError: If yt-dlp fails or exits non-zero.
            ParseError: If its output is not a JSON object.
        """
        command = [self._require_binary(ProbeError), '--no-playlist', '--dump-single-json', '--no-download', '--no-warnings', url]
        self.logger.debug(f"Probing: {' '.join(command)}")
        stdout, _ = await self._run_command(command, timeout=self.probe_timeout)
        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ParseError(f"Could not parse yt-dlp metadata output: {e}")
        if not isinstance(info, dict):
            raise ParseError("yt-dlp metadata output is not a JSON object.")
        return parse_metadata(info)

    def build_fetch_command(self, url: str, quality: str, media_format: MediaFormat, work_dir: Path) -> List[str]:
        """Builds the full yt-dlp download command for one job."""
        command = [
            self._require_binary(FetchError), '--no-playlist', '--newline', '--no-mtime',
            '--progress-template', f'{PROGRESS_PREFIX}%(progress._percent_str)s',
            '--write-info-json', '--write-subs', '--write-auto-subs',
            '--sub-langs', ','.join(self.subtitle_languages),
            '--paths', str(work_dir), '-o', self.filename_template,
        ]
        if self.ffmpeg_path: command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])

        if media_format is MediaFormat.AUDIO:
            command.extend(['-x', '--audio-format', self.audio_format, '--audio-quality', self.audio_bitrate])
        else:
            command.extend(['-f', format_selector(quality)])
        command.append(url)
        return command

    async def fetch(self, url: str, quality: str, media_format: MediaFormat, work_dir: Path,
                    progress_callback: Optional[ProgressCallback] = None, tag: str = '') -> List[Path]:
        """
        Downloads the media, subtitles and info file into `work_dir`.

        Args:
            url: The URL to retrieve.
            quality: The requested resolution tag (ignored for audio).
            media_format: Video or audio.
            work_dir: A directory exclusive to this fetch.
            progress_callback: Awaited with each media-stream percentage.
            tag: A label (the job id) used in log lines.

        Returns:
            The regular files written into `work_dir`.

        Raises:
            FetchError: If yt-dlp cannot be started, times out, or exits non-zero.
        """
        command = self.build_fetch_command(url, quality, media_format, work_dir)
        self.logger.debug(f"[{tag}] Fetching: {' '.join(command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._process_kwargs()
            )
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise FetchError("yt-dlp executable not found.")
        except OSError as e:
            raise FetchError(f"OS error: {e}")

        try:
            return_code, stderr = await asyncio.wait_for(
                self._consume_output(process, progress_callback, tag), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            await self._terminate_process(process, tag)
            raise FetchError("Download timed out.")
        except asyncio.CancelledError:
            await self._terminate_process(process, tag)
            raise

        if return_code != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"[{tag}] yt-dlp exited with {return_code}. Stderr: {stderr.strip()}")
            raise FetchError(error_msg, stderr=stderr)

        return await asyncio.to_thread(list_produced_files, work_dir)

    async def _consume_output(self, process: asyncio.subprocess.Process,
                              progress_callback: Optional[ProgressCallback], tag: str) -> Tuple[int, str]:
        """Reads yt-dlp's stdout line by line, reporting media-stream progress."""
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        tracking = False
        try:
            while True:
                line_bytes = await process.stdout.readline()
                if not line_bytes: break
                clean_line = line_bytes.decode('utf-8', 'replace').strip()
                self.logger.debug(f"[{tag}] {clean_line}")

                if dest_match := DESTINATION_PATTERN.search(clean_line):
                    # Subtitle downloads report their own 0-100% runs.
                    tracking = Path(dest_match.group(1).strip()).suffix.lower() not in SUBTITLE_EXTENSIONS
                    continue

                if tracking and progress_callback and (percentage := parse_progress_line(clean_line)) is not None:
                    await progress_callback(percentage)

            stderr_bytes = await stderr_task
            return_code = await process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        return return_code, stderr_bytes.decode('utf-8', 'replace')

    async def _terminate_process(self, process: asyncio.subprocess.Process, tag: str):
        """Stops a running yt-dlp process group, gracefully first."""
        if process.returncode is not None:
            return
        self.logger.info(f"Terminating yt-dlp for {tag} (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=10)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown for {tag} failed: {e}. Forcing termination...")
            try: process.kill()
            except (ProcessLookupError, OSError): pass # Already gone
