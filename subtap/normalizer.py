"""
Subtitle format normalization.

Both upstream encodings (the legacy ``<text start dur>`` markup served by
/api/timedtext and the json3 event list) converge to one ordered list of
SubtitleEntry objects, and both output formats (SRT and plain text) are
derived from that list.
"""

import html
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

import nh3

logger = logging.getLogger(__name__)


@dataclass
class SubtitleEntry:
    """
    A single subtitle entry with timing and text.

    Attributes:
        start: Start time in seconds
        end: End time in seconds, always greater than start
        text: Cleaned subtitle text
    """

    start: float
    end: float
    text: str


# <text start="1.2" dur="3.4">...</text>; attribute order is not fixed and the
# body may carry escaped or literal markup
TEXT_TAG_PATTERN = re.compile(r"<text\b([^>]*)>(.*?)</text\s*>", re.DOTALL)
ATTRIBUTE_PATTERN = re.compile(r"([\w:-]+)\s*=\s*([\"'])(.*?)\2", re.DOTALL)
WHITESPACE_PATTERN = re.compile(r"\s+")

EVENT_FORMATS = frozenset({"json3"})
LEGACY_FORMATS = frozenset({"srv1", "srv2", "srv3", "xml", "ttml"})


def clean_text(text: str) -> str:
    """
    Decode entities, strip embedded markup and collapse whitespace.

    Timedtext bodies are frequently double-encoded (``&amp;#39;``), so
    entities are decoded twice before nh3 removes the markup. nh3 returns
    serialized HTML, hence the final unescape.
    """
    if not text:
        return ""
    decoded = html.unescape(html.unescape(text))
    stripped = nh3.clean(decoded, tags=set())
    plain = html.unescape(stripped).replace("\xa0", " ")
    return WHITESPACE_PATTERN.sub(" ", plain).strip()


def _to_number(value: Any) -> float | None:
    # bool is an int subclass; a JSON true is not a timestamp
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _sorted(entries: list[SubtitleEntry]) -> list[SubtitleEntry]:
    return sorted(entries, key=lambda entry: entry.start)


def parse_legacy_markup(xml_text: str) -> list[SubtitleEntry]:
    """
    Parse legacy timedtext XML into subtitle entries.

    Args:
        xml_text: Raw XML, e.g. ``<transcript><text start="0" dur="1.5">Hi</text></transcript>``

    Returns:
        Entries sorted by start time. Entries without usable timing or with
        empty text after cleaning are dropped.
    """
    if not xml_text:
        return []

    entries = []
    for match in TEXT_TAG_PATTERN.finditer(xml_text):
        attributes = {name: value for name, _, value in ATTRIBUTE_PATTERN.findall(match.group(1))}
        start = _to_number(attributes.get("start"))
        duration = _to_number(attributes.get("dur"))
        if start is None or duration is None or start < 0 or duration <= 0:
            continue

        text = clean_text(match.group(2))
        if not text:
            continue
        entries.append(SubtitleEntry(start=start, end=start + duration, text=text))

    return _sorted(entries)


def parse_event_format(json_text: str) -> list[SubtitleEntry]:
    """
    Parse the json3 event list into subtitle entries.

    Each event's ``segs`` are concatenated into one entry. Malformed JSON
    yields an empty list rather than raising.
    """
    try:
        data = json.loads(json_text)
    except (TypeError, ValueError) as e:
        logger.warning(f"Event-format payload is not valid JSON: {e}")
        return []

    if not isinstance(data, dict) or not isinstance(data.get("events"), list):
        return []

    entries = []
    for event in data["events"]:
        if not isinstance(event, dict) or not isinstance(event.get("segs"), list):
            continue

        text = "".join(
            seg["utf8"] for seg in event["segs"]
            if isinstance(seg, dict) and isinstance(seg.get("utf8"), str)
        )
        if not text.strip():
            continue

        start_ms = _to_number(event.get("tStartMs"))
        duration_ms = _to_number(event.get("dDurationMs"))
        if start_ms is None or duration_ms is None or start_ms < 0 or duration_ms <= 0:
            continue

        cleaned = clean_text(text)
        if cleaned:
            entries.append(SubtitleEntry(
                start=start_ms / 1000,
                end=(start_ms + duration_ms) / 1000,
                text=cleaned,
            ))

    return _sorted(entries)


def parse_payload(raw_content: str, encoding_format: str = "unknown") -> list[SubtitleEntry]:
    """
    Parse an intercepted payload, picking the parser by format then by content.

    Unrecognized content is a ParseFailure absorbed here: it is logged and an
    empty list is returned.
    """
    fmt = (encoding_format or "").lower()
    if fmt in EVENT_FORMATS:
        return parse_event_format(raw_content)
    if fmt in LEGACY_FORMATS:
        return parse_legacy_markup(raw_content)

    head = raw_content.lstrip()[:4096] if raw_content else ""
    if '"events"' in head or head.startswith("{"):
        return parse_event_format(raw_content)
    if "<text" in raw_content or "<transcript" in head:
        return parse_legacy_markup(raw_content)

    logger.warning(f"Unrecognized subtitle payload (format={encoding_format!r}, {len(raw_content or '')} chars)")
    return []


# ============================================================================
# Output formats
# ============================================================================


def format_timestamp(seconds: float) -> str:
    """
    Format seconds as an SRT timestamp (HH:MM:SS,mmm).

    Rounds to whole milliseconds first so 59.9996 becomes 00:01:00,000
    instead of 00:00:59,1000.
    """
    total_ms = max(0, round(seconds * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, milliseconds = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{milliseconds:03d}"


def to_indexed_timed_format(entries: list[SubtitleEntry]) -> str:
    """
    Convert subtitle entries to SRT.

    1
    00:00:01,000 --> 00:00:04,000
    Subtitle text here

    2
    ...
    """
    if not entries:
        return ""

    blocks = []
    for idx, entry in enumerate(entries, start=1):
        blocks.append(
            f"{idx}\n{format_timestamp(entry.start)} --> {format_timestamp(entry.end)}\n{entry.text}\n"
        )
    return "\n".join(blocks)


def to_line_delimited_text(entries: list[SubtitleEntry], separator: str = "\n") -> str:
    """Join entry texts without timing information."""
    if not entries:
        return ""
    return separator.join(entry.text.strip() for entry in entries)


def render(entries: list[SubtitleEntry], output_format: str) -> str:
    if output_format == "srt":
        return to_indexed_timed_format(entries)
    if output_format == "txt":
        return to_line_delimited_text(entries)
    raise ValueError(f"Unsupported output format: {output_format}")


def merge_adjacent(entries: list[SubtitleEntry], max_gap_seconds: float = 0.1) -> list[SubtitleEntry]:
    """
    Fold touching or overlapping entries into one.

    The fold runs left to right, so a chain of N mergeable entries collapses
    into a single entry spanning all of them.
    """
    if len(entries) <= 1:
        return list(entries)

    ordered = _sorted(entries)
    merged = []
    current = ordered[0]

    for following in ordered[1:]:
        if following.start - current.end <= max_gap_seconds:
            current = SubtitleEntry(
                start=current.start,
                end=max(current.end, following.end),
                text=f"{current.text} {following.text}",
            )
        else:
            merged.append(current)
            current = following

    merged.append(current)
    return merged
