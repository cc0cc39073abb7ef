"""
Defines application-wide constants and paths.

This module centralizes default locations, extractor defaults and subprocess
behavior, adapting to whether the application is running from source or as a
frozen executable.
"""

import re
import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'tubequeue').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.tubequeue'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DATABASE_FILE: Path = USER_DATA_DIR / 'jobs.sqlite'
ARTIFACT_DIR: Path = USER_DATA_DIR / 'artifacts'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'temp_downloads'

# Avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Extractor Defaults ---
DEFAULT_SUBTITLE_LANGUAGES = ['en', 'es', 'fr', 'de', 'it', 'pt', 'ru', 'ja', 'ko', 'zh']
DEFAULT_AUDIO_FORMAT = 'mp3'
DEFAULT_AUDIO_BITRATE = '320K'
DEFAULT_QUALITY = '720p'
QUALITY_PATTERN = re.compile(r'^(best|\d{3,4}p)$')
FALLBACK_QUALITIES = ['720p']

# --- Produced File Classification ---
SUBTITLE_EXTENSIONS = ('.vtt', '.srt')
INFO_FILE_SUFFIX = '.info.json'
PARTIAL_FILE_SUFFIXES = {'.part', '.ytdl'}

CONTENT_TYPES = {
    '.mp4': 'video/mp4',
    '.mp3': 'audio/mpeg',
    '.vtt': 'text/vtt',
    '.srt': 'text/srt',
}
DEFAULT_CONTENT_TYPE = 'application/octet-stream'
