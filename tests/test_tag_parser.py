"""Tests for the tag parser."""

import re

from voice_director.models import KIND_DIALOGUE, KIND_NARRATOR, NARRATOR
from voice_director.nodes.tag_parser import (
    extract_speakers,
    has_character_tags,
    parse_tagged_prose,
    strip_tags,
)


def _shape(segments):
    return [(s.kind, s.speaker, s.text) for s in segments]


def test_narration_dialogue_narration():
    """Dialogue inside narration splits into three segments."""
    segments = parse_tagged_prose("The knight said, [CHAR:Roland]Hello there![/CHAR] and smiled.")
    assert _shape(segments) == [
        (KIND_NARRATOR, NARRATOR, "The knight said,"),
        (KIND_DIALOGUE, "Roland", "Hello there!"),
        (KIND_NARRATOR, NARRATOR, "and smiled."),
    ]
    assert [s.index for s in segments] == [0, 1, 2]


def test_empty_and_non_string_input():
    assert parse_tagged_prose("") == []
    assert parse_tagged_prose(None) == []
    assert parse_tagged_prose(42) == []


def test_plain_narration():
    segments = parse_tagged_prose("  It was a dark and stormy night.  ")
    assert _shape(segments) == [(KIND_NARRATOR, NARRATOR, "It was a dark and stormy night.")]


def test_speaker_name_is_trimmed():
    segments = parse_tagged_prose("[CHAR:  Lady Mira ]Run![/CHAR]")
    assert _shape(segments) == [(KIND_DIALOGUE, "Lady Mira", "Run!")]


def test_empty_dialogue_skipped_without_consuming_index():
    segments = parse_tagged_prose("Before. [CHAR:Roland]   [/CHAR] After. [CHAR:Mira]Yes.[/CHAR]")
    assert _shape(segments) == [
        (KIND_NARRATOR, NARRATOR, "Before."),
        (KIND_NARRATOR, NARRATOR, "After."),
        (KIND_DIALOGUE, "Mira", "Yes."),
    ]
    assert [s.index for s in segments] == [0, 1, 2]


def test_adjacent_dialogue_has_no_empty_narration():
    segments = parse_tagged_prose("[CHAR:A]One.[/CHAR] [CHAR:B]Two.[/CHAR]")
    assert _shape(segments) == [(KIND_DIALOGUE, "A", "One."), (KIND_DIALOGUE, "B", "Two.")]


def test_unmatched_close_stays_in_narration():
    segments = parse_tagged_prose("He paused.[/CHAR] Then he left.")
    assert len(segments) == 1
    assert segments[0].kind == KIND_NARRATOR
    assert "[/CHAR]" in segments[0].text


def test_unclosed_open_tag_absorbed_into_narration():
    segments = parse_tagged_prose("Start. [CHAR:Roland]Never closed")
    assert _shape(segments) == [(KIND_NARRATOR, NARRATOR, "Start. [CHAR:Roland]Never closed")]


def test_nested_open_recovers_to_inner_tag():
    """A second open tag abandons the first one into narration."""
    segments = parse_tagged_prose("[CHAR:A]Hi [CHAR:B]there[/CHAR] end")
    assert _shape(segments) == [
        (KIND_NARRATOR, NARRATOR, "[CHAR:A]Hi"),
        (KIND_DIALOGUE, "B", "there"),
        (KIND_NARRATOR, NARRATOR, "end"),
    ]


def test_empty_speaker_tag_is_literal_text():
    segments = parse_tagged_prose("[CHAR: ]Who?[/CHAR]")
    assert all(s.kind == KIND_NARRATOR for s in segments)


def test_dialogue_segments_always_have_speaker():
    prose = "[CHAR:A]x[/CHAR][CHAR:]y[/CHAR][/CHAR][CHAR:B]z"
    for s in parse_tagged_prose(prose):
        if s.kind == KIND_DIALOGUE:
            assert s.speaker.strip()
        else:
            assert s.speaker == NARRATOR


def test_round_trip_reconstructs_speaker_sequence():
    lines = [(NARRATOR, "It began."), ("Mira", "Look out!"), (NARRATOR, "She ducked."),
             ("Roland", "Too late."), ("Mira", "Never.")]
    prose = " ".join(text if who == NARRATOR else f"[CHAR:{who}]{text}[/CHAR]" for who, text in lines)
    assert [(s.speaker, s.text) for s in parse_tagged_prose(prose)] == lines


def test_strip_tags_matches_segment_text():
    prose = "The knight said, [CHAR:Roland]Hello   there![/CHAR]\n\nand smiled."
    joined = " ".join(s.text for s in parse_tagged_prose(prose))
    assert re.sub(r"\s+", " ", joined) == strip_tags(prose)


def test_extract_speakers_ordered_unique():
    prose = "[CHAR:Mira]a[/CHAR] [CHAR:Roland]b[/CHAR] [CHAR: Mira ]c[/CHAR] [CHAR:]d[/CHAR]"
    assert extract_speakers(prose) == ["Mira", "Roland"]
    assert extract_speakers(None) == []


def test_has_character_tags():
    assert has_character_tags("x [CHAR:A]y[/CHAR]")
    assert not has_character_tags("no tags here")
    assert not has_character_tags(None)
