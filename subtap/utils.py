"""
Shared utility functions for subtap.

This module provides common functions used across multiple modules.
"""

import re
from urllib.parse import parse_qs, urlparse


# Pre-compiled regex patterns for performance
YOUTUBE_PATTERN_COMPILED = re.compile(
    r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})"
)
YOUTUBE_ID_PATTERN_COMPILED = re.compile(r"^([a-zA-Z0-9_-]{11})$")

# Characters that are not allowed in filenames on at least one common filesystem
UNSAFE_FILENAME_PATTERN = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
WHITESPACE_PATTERN = re.compile(r"\s+")
JOINER_RUN_PATTERN = re.compile(r"_+")


def extract_video_id(url: str) -> str | None:
    """
    Extract the video ID from a watch URL, or return the input if it's a raw ID.

    This function handles various YouTube URL formats:
    - https://www.youtube.com/watch?v=VIDEO_ID
    - https://www.youtube.com/watch?list=xyz&v=VIDEO_ID
    - https://youtu.be/VIDEO_ID
    - https://www.youtube.com/embed/VIDEO_ID
    - https://www.youtube.com/shorts/VIDEO_ID
    - Raw 11-character video ID

    Args:
        url: YouTube URL or video ID

    Returns:
        11-character YouTube video ID, or None if not found

    Examples:
        >>> extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10")
        'dQw4w9WgXcQ'
        >>> extract_video_id("https://www.youtube.com/feed/subscriptions") is None
        True
    """
    if not url:
        return None

    match = YOUTUBE_PATTERN_COMPILED.search(url)
    if match:
        return match.group(1)

    match = YOUTUBE_ID_PATTERN_COMPILED.match(url)
    if match:
        return match.group(1)

    # Any other page carrying a v= query parameter
    try:
        values = parse_qs(urlparse(url).query).get("v")
    except ValueError:
        return None
    return values[0] if values else None


def build_filename(
    title: str,
    output_format: str,
    language: str | None = None,
    default_language: str = "en",
    max_length: int = 100,
) -> str:
    """
    Build a filesystem-safe download filename.

    Unsafe characters are stripped, whitespace runs collapse into a single
    underscore and the base is truncated before the suffixes are appended.
    The language suffix is omitted for the default language.

    Examples:
        >>> build_filename('My: "Video"  Title', "srt", "en")
        'My_Video_Title_subtitles.srt'
        >>> build_filename("Clip", "txt", "de")
        'Clip_subtitles_de.txt'
    """
    base = UNSAFE_FILENAME_PATTERN.sub("", title or "")
    base = WHITESPACE_PATTERN.sub("_", base.strip())
    base = JOINER_RUN_PATTERN.sub("_", base).strip("_.")
    base = base[:max_length].rstrip("_") or "video"

    language_suffix = f"_{UNSAFE_FILENAME_PATTERN.sub('', language)}" if language and language != default_language else ""
    return f"{base}_subtitles{language_suffix}.{output_format}"


def sanitize_for_log(input_str: str) -> str:
    """
    Sanitize untrusted input for logging to prevent log injection attacks.

    Replaces newlines, carriage returns, and tabs with their escaped
    representations.
    """
    return input_str.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")
