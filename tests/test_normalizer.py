"""Tests for subtitle parsing and output formats in subtap/normalizer.py."""

import json

import pytest

from subtap.normalizer import (
    SubtitleEntry,
    clean_text,
    format_timestamp,
    merge_adjacent,
    parse_event_format,
    parse_legacy_markup,
    parse_payload,
    render,
    to_indexed_timed_format,
    to_line_delimited_text,
)

from tests.support import JSON3_BODY, LEGACY_BODY


class TestCleanText:
    def test_double_encoded_entities(self):
        assert clean_text("It&amp;#39;s fine") == "It's fine"

    def test_strips_escaped_markup(self):
        assert clean_text("&lt;font color=&quot;#fff&quot;&gt;Hi&lt;/font&gt; there") == "Hi there"

    def test_collapses_whitespace(self):
        assert clean_text("  line one\n\n line\ttwo  ") == "line one line two"

    def test_ampersand_survives(self):
        assert clean_text("Tom &amp;amp; Jerry") == "Tom & Jerry"

    def test_empty(self):
        assert clean_text("") == ""


class TestParseLegacyMarkup:
    def test_basic(self):
        entries = parse_legacy_markup(LEGACY_BODY)

        assert entries == [
            SubtitleEntry(start=0.0, end=1.5, text="Hello"),
            SubtitleEntry(start=1.5, end=3.5, text="world"),
        ]

    def test_sorted_by_start(self):
        xml = '<transcript><text start="5" dur="1">second</text><text start="1" dur="1">first</text></transcript>'
        assert [e.text for e in parse_legacy_markup(xml)] == ["first", "second"]

    def test_attribute_order_and_quotes(self):
        xml = "<transcript><text dur='2' start='1'>x</text></transcript>"
        assert parse_legacy_markup(xml) == [SubtitleEntry(start=1.0, end=3.0, text="x")]

    def test_drops_empty_text(self):
        xml = '<transcript><text start="0" dur="1">   </text><text start="1" dur="1">kept</text></transcript>'
        assert [e.text for e in parse_legacy_markup(xml)] == ["kept"]

    def test_drops_missing_or_zero_duration(self):
        xml = (
            '<transcript><text start="0">no dur</text>'
            '<text start="1" dur="0">zero</text>'
            '<text start="2" dur="1">ok</text></transcript>'
        )
        assert [e.text for e in parse_legacy_markup(xml)] == ["ok"]

    def test_multiline_text(self):
        xml = '<transcript><text start="0" dur="1">two\nlines</text></transcript>'
        assert parse_legacy_markup(xml)[0].text == "two lines"

    def test_empty_input(self):
        assert parse_legacy_markup("") == []


class TestParseEventFormat:
    def test_basic(self):
        entries = parse_event_format(JSON3_BODY)

        assert entries == [
            SubtitleEntry(start=0.0, end=1.5, text="Hello"),
            SubtitleEntry(start=1.5, end=3.5, text="world"),
        ]

    def test_segments_are_joined(self):
        body = json.dumps({"events": [
            {"tStartMs": 1000, "dDurationMs": 2000, "segs": [{"utf8": "Hello "}, {"utf8": "world"}]},
        ]})
        assert parse_event_format(body) == [SubtitleEntry(start=1.0, end=3.0, text="Hello world")]

    def test_skips_events_without_text_or_timing(self):
        body = json.dumps({"events": [
            {"tStartMs": 0, "dDurationMs": 500},
            {"tStartMs": 0, "dDurationMs": 500, "segs": [{"utf8": "\n"}]},
            {"tStartMs": 100, "segs": [{"utf8": "no duration"}]},
            {"tStartMs": 200, "dDurationMs": 0, "segs": [{"utf8": "zero"}]},
            {"tStartMs": 300, "dDurationMs": 100, "segs": [{"utf8": "kept"}]},
        ]})
        assert [e.text for e in parse_event_format(body)] == ["kept"]

    def test_malformed_json(self):
        assert parse_event_format("{not json") == []

    def test_missing_events(self):
        assert parse_event_format(json.dumps({"wireMagic": "pb3"})) == []
        assert parse_event_format(json.dumps([1, 2, 3])) == []

    def test_entries_are_ordered_and_well_formed(self):
        body = json.dumps({"events": [
            {"tStartMs": 4000, "dDurationMs": 1000, "segs": [{"utf8": "c"}]},
            {"tStartMs": 0, "dDurationMs": 1000, "segs": [{"utf8": "a"}]},
            {"tStartMs": 2000, "dDurationMs": 1000, "segs": [{"utf8": "b"}]},
        ]})
        entries = parse_event_format(body)

        assert [e.text for e in entries] == ["a", "b", "c"]
        assert all(e.end >= e.start for e in entries)
        assert all(a.start <= b.start for a, b in zip(entries, entries[1:]))


class TestParsePayload:
    def test_picks_parser_by_format(self):
        assert len(parse_payload(JSON3_BODY, "json3")) == 2
        assert len(parse_payload(LEGACY_BODY, "srv3")) == 2

    def test_sniffs_unknown_format(self):
        assert len(parse_payload(JSON3_BODY, "unknown")) == 2
        assert len(parse_payload(LEGACY_BODY, "unknown")) == 2

    def test_unrecognized_content(self):
        assert parse_payload("plain words", "unknown") == []
        assert parse_payload("", "unknown") == []


class TestOutputFormats:
    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (0, "00:00:00,000"),
            (1.5, "00:00:01,500"),
            (3661.25, "01:01:01,250"),
            (59.9996, "00:01:00,000"),
        ],
    )
    def test_format_timestamp(self, seconds, expected):
        assert format_timestamp(seconds) == expected

    def test_indexed_timed_format(self):
        entries = parse_event_format(JSON3_BODY)

        assert to_indexed_timed_format(entries) == (
            "1\n00:00:00,000 --> 00:00:01,500\nHello\n"
            "\n"
            "2\n00:00:01,500 --> 00:00:03,500\nworld\n"
        )

    def test_indexed_timed_format_empty(self):
        assert to_indexed_timed_format([]) == ""

    def test_line_delimited_text(self):
        entries = parse_event_format(JSON3_BODY)
        assert to_line_delimited_text(entries) == "Hello\nworld"
        assert to_line_delimited_text(entries, separator=" ") == "Hello world"

    def test_render_dispatch(self):
        entries = [SubtitleEntry(start=0, end=1, text="Hi")]
        assert render(entries, "txt") == "Hi"
        assert render(entries, "srt").startswith("1\n00:00:00,000 --> 00:00:01,000\nHi")

    def test_render_unknown_format(self):
        with pytest.raises(ValueError):
            render([], "vtt")


class TestMergeAdjacent:
    def test_chain_collapses_to_one(self):
        entries = [
            SubtitleEntry(start=0, end=1, text="A"),
            SubtitleEntry(start=1, end=2, text="B"),
            SubtitleEntry(start=2, end=3, text="C"),
        ]
        assert merge_adjacent(entries, 0) == [SubtitleEntry(start=0, end=3, text="A B C")]

    def test_gap_above_threshold_is_kept(self):
        entries = [SubtitleEntry(start=0, end=2, text="X"), SubtitleEntry(start=3, end=5, text="Y")]
        assert merge_adjacent(entries, 0.1) == entries

    def test_full_overlap(self):
        entries = [SubtitleEntry(start=0, end=5, text="A"), SubtitleEntry(start=1, end=2, text="B")]
        assert merge_adjacent(entries) == [SubtitleEntry(start=0, end=5, text="A B")]

    def test_unsorted_input(self):
        entries = [SubtitleEntry(start=10, end=11, text="late"), SubtitleEntry(start=0, end=1, text="early")]
        assert [e.text for e in merge_adjacent(entries)] == ["early", "late"]

    def test_trivial_inputs(self):
        assert merge_adjacent([]) == []
        single = [SubtitleEntry(start=0, end=1, text="A")]
        assert merge_adjacent(single) == single
