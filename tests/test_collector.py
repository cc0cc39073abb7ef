from pathlib import Path

import pytest

from tubequeue.collector import collect_outputs, read_info_file, refine_title_and_duration, subtitle_language
from tubequeue.exceptions import ParseError
from tubequeue.jobs import MediaFormat


@pytest.mark.parametrize("filename, language", [
    ("Demo.en.vtt", "en"),
    ("Demo.pt-BR.srt", "pt-BR"),
    ("My.Video.Title.ja.vtt", "ja"),
    ("Demo.vtt", "Demo"),
    ("subtitles", ""),
])
def test_subtitle_language_is_second_to_last_segment(filename, language):
    assert subtitle_language(filename) == language


def test_collect_outputs_groups_by_role():
    files = [Path("w/Demo.en.vtt"), Path("w/Demo.info.json"), Path("w/Demo.mp4"),
             Path("w/Demo.fr.srt"), Path("w/Other.mp4"), Path("w/cover.jpg")]
    collected = collect_outputs(files, MediaFormat.VIDEO)
    assert collected.media == Path("w/Demo.mp4")
    assert collected.info == Path("w/Demo.info.json")
    assert collected.subtitles == [Path("w/Demo.en.vtt"), Path("w/Demo.fr.srt")]
    assert collected.all_files == files


def test_collect_outputs_audio_ignores_video_container():
    collected = collect_outputs([Path("Demo.mp4"), Path("Demo.mp3")], MediaFormat.AUDIO)
    assert collected.media == Path("Demo.mp3")
    assert collect_outputs([Path("Demo.webm")], MediaFormat.VIDEO).media is None


def test_read_info_file(tmp_path):
    good = tmp_path / "a.info.json"
    good.write_text('{"title": "Demo", "duration": 12}', encoding="utf-8")
    assert read_info_file(good)["title"] == "Demo"

    bad = tmp_path / "b.info.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ParseError):
        read_info_file(bad)

    listing = tmp_path / "c.info.json"
    listing.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ParseError):
        read_info_file(listing)


def test_refine_title_and_duration():
    assert refine_title_and_duration({"title": "Real", "duration_string": "1:05"}, "Probed", "1:04") == ("Real", "1:05")
    assert refine_title_and_duration({"duration": 65}, "Probed", None) == ("Probed", "65")
    assert refine_title_and_duration({}, None, None) == (None, None)
