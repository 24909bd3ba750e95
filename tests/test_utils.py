"""
Tests for utility functions in subtap/utils.py.

Covers video ID extraction from page locations and download filenames.
"""

import pytest

from subtap.utils import build_filename, extract_video_id, sanitize_for_log


class TestExtractVideoId:
    """Tests for extract_video_id function."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10",
            "https://www.youtube.com/watch?list=xyz&v=dQw4w9WgXcQ",
            "https://youtu.be/dQw4w9WgXcQ",
            "https://www.youtube.com/embed/dQw4w9WgXcQ",
            "https://www.youtube.com/shorts/dQw4w9WgXcQ",
            "dQw4w9WgXcQ",
        ],
    )
    def test_supported_forms(self, url):
        assert extract_video_id(url) == "dQw4w9WgXcQ"

    def test_other_host_with_v_parameter(self):
        assert extract_video_id("https://m.example.com/watch?v=abc") == "abc"

    @pytest.mark.parametrize(
        "url",
        ["", "about:blank", "https://www.youtube.com/", "https://www.youtube.com/feed/subscriptions", "short"],
    )
    def test_pages_without_video(self, url):
        assert extract_video_id(url) is None


class TestBuildFilename:
    """Tests for build_filename function."""

    def test_default_language_has_no_suffix(self):
        assert build_filename("My Video", "srt", "en") == "My_Video_subtitles.srt"

    def test_other_language_suffix(self):
        assert build_filename("Clip", "txt", "de") == "Clip_subtitles_de.txt"

    def test_custom_default_language(self):
        assert build_filename("Clip", "srt", "zh-Hans", default_language="zh-Hans") == "Clip_subtitles.srt"

    def test_unsafe_characters_are_stripped(self):
        assert build_filename('My: "Video"  Title', "srt") == "My_Video_Title_subtitles.srt"
        assert build_filename("a/b\\c|d?e*f<g>h", "srt") == "abcdefgh_subtitles.srt"

    def test_underscore_runs_collapse(self):
        assert build_filename("_a  __  b_", "srt") == "a_b_subtitles.srt"

    def test_truncation(self):
        filename = build_filename("x" * 300, "srt", max_length=100)
        assert filename == "x" * 100 + "_subtitles.srt"

    def test_empty_title_falls_back(self):
        assert build_filename("???", "srt") == "video_subtitles.srt"
        assert build_filename("", "txt") == "video_subtitles.txt"


class TestSanitizeForLog:
    def test_escapes_control_characters(self):
        assert sanitize_for_log("a\nb\rc\td") == "a\\nb\\rc\\td"
