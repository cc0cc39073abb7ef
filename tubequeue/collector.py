"""
Classifies the files a fetch produced into the primary media file, the info
file and subtitle files.

The subtitle language of a file is, by contract, the second-to-last
dot-separated segment of its name: `Title.en.vtt` -> `en`. Consumers listing
subtitles rely on exactly this rule, so it must not be made "smarter".
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .constants import SUBTITLE_EXTENSIONS, INFO_FILE_SUFFIX
from .exceptions import ParseError
from .jobs import MediaFormat


@dataclass
class CollectedFiles:
    """The produced files of one fetch, grouped by role."""
    media: Optional[Path] = None
    info: Optional[Path] = None
    subtitles: List[Path] = field(default_factory=list)
    all_files: List[Path] = field(default_factory=list)


def subtitle_language(filename: str) -> str:
    """Returns the language tag of a subtitle filename."""
    parts = filename.split('.')
    return parts[-2] if len(parts) >= 2 else ''


def collect_outputs(files: Iterable[Path], media_format: MediaFormat) -> CollectedFiles:
    """
    Groups produced files by role.

    The primary media file is the first file whose extension matches the
    requested container; the info file is the first `*.info.json`.
    """
    collected = CollectedFiles(all_files=list(files))
    for path in collected.all_files:
        name = path.name.lower()
        if name.endswith(INFO_FILE_SUFFIX):
            if collected.info is None:
                collected.info = path
        elif path.suffix.lower() in SUBTITLE_EXTENSIONS:
            collected.subtitles.append(path)
        elif path.suffix.lower() == media_format.extension and collected.media is None:
            collected.media = path
    return collected


def read_info_file(path: Path) -> Dict[str, Any]:
    """
    Loads a yt-dlp `.info.json` file.

    Raises:
        ParseError: If the file cannot be read or is not a JSON object.
    """
    try:
        info = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Could not read info file {path.name}: {e}")
    if not isinstance(info, dict):
        raise ParseError(f"Info file {path.name} is not a JSON object.")
    return info


def refine_title_and_duration(info: Dict[str, Any], title: Optional[str], duration: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Prefers the info file's title and duration string over probed values."""
    refined_title = info.get('title') or title
    refined_duration = info.get('duration_string') or duration
    if not refined_duration and info.get('duration') is not None:
        refined_duration = str(info['duration'])
    return refined_title, refined_duration
