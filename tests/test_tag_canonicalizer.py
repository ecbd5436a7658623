"""Tests for the tag canonicalizer."""

import pytest

from voice_director.models import CANONICAL_EMOTIONS
from voice_director.nodes.tag_canonicalizer import (
    CanonicalContext,
    canonicalize,
    context_default,
    extract_pauses,
    is_canonical,
    normalize_pause,
)


def test_combination_keyword_wins():
    """'ominously' hits the combination table, not a single-tag default."""
    result = canonicalize("ominously, with dread")
    assert result.tags == ("whisper", "angry")
    assert result.source == "combination"


def test_combination_short_circuits_bracketed_tags():
    assert canonicalize("[calm][mysterious]").tags == ("whisper", "fearful")


def test_combination_keeps_pauses():
    assert canonicalize("mysterious [pause:2s]").tags == ("whisper", "fearful", "pause:2s")


@pytest.mark.parametrize("direction", [None, "", "   ", "[pause:1s]", "xyzzy", "[unknown-token]", 17])
def test_total(direction):
    result = canonicalize(direction)
    assert any(t in CANONICAL_EMOTIONS for t in result.tags)
    assert all(is_canonical(t) for t in result.tags)


def test_canonical_bracket_tokens_kept_in_order():
    assert canonicalize("[sad][whisper]").tags == ("sad", "whisper")


def test_bracket_tokens_mapped():
    result = canonicalize("[furious][gently]")
    assert result.tags == ("angry", "calm")
    assert result.source == "tags"


def test_unknown_bracket_tokens_fall_through_to_keywords():
    assert canonicalize("[cautiously][with dread]").tags == ("fearful",)


def test_raw_keywords_ordered_by_position():
    assert canonicalize("speaking softly but furious").tags == ("whisper", "angry")


def test_canonical_keywords_before_mapping_keywords():
    assert canonicalize("terrified, then excited").tags == ("excited", "fearful")


def test_pause_only_gets_default_emotion():
    result = canonicalize("[pause:1s]", CanonicalContext(speaker_is_narrator=True))
    assert result.tags == ("calm", "pause:1s")


def test_pause_snapped_to_vocabulary():
    assert canonicalize("[angry][pause:0.7s]").tags == ("angry", "pause:0.5s")
    assert normalize_pause(3.0) == "pause:2s"
    assert normalize_pause(1.25) == "pause:1s"
    assert extract_pauses("pause:1.5s and pause:1.5s") == ["pause:1.5s"]


def test_truncated_to_three():
    result = canonicalize("[excited][sad][angry][calm][pause:1s]")
    assert result.tags == ("excited", "sad", "angry")


@pytest.mark.parametrize("context, expected", [
    (CanonicalContext(character_default="sad", speaker_is_narrator=True), "sad"),
    (CanonicalContext(character_default="grumpy", speaker_is_narrator=True), "calm"),
    (CanonicalContext(speaker_is_narrator=True, scene_mood="tense"), "calm"),
    (CanonicalContext(age_group="child", scene_mood="peaceful"), "excited"),
    (CanonicalContext(age_group="teen", scene_mood="tense"), "excited"),
    (CanonicalContext(age_group="adult", scene_mood="tense"), "fearful"),
    (CanonicalContext(scene_mood="deeply melancholy evening"), "sad"),
    (CanonicalContext(genre="action"), "excited"),
    (CanonicalContext(genre="romance"), "calm"),
    (CanonicalContext(genre="no-such-genre"), "calm"),
    (CanonicalContext(), "calm"),
])
def test_context_default(context, expected):
    assert context_default(context) == expected
    assert canonicalize(None, context).tags == (expected,)


def test_young_speaker_default_is_never_calm():
    for age in ("child", "teen", "kid", "teenager"):
        assert context_default(CanonicalContext(age_group=age, genre="romance")) != "calm"


def test_speed_from_pacing_cues():
    assert canonicalize("[calm] slowly").speed_modifier == pytest.approx(0.9)
    assert canonicalize("[excited] quickly").speed_modifier == pytest.approx(1.1)
    assert canonicalize("[calm]").speed_modifier == pytest.approx(1.0)


def test_speed_clamped():
    assert canonicalize("[excited] rushed", base_speed=1.15).speed_modifier == pytest.approx(1.2)
    assert canonicalize("[calm] slowly", base_speed=0.85).speed_modifier == pytest.approx(0.8)


def test_stability_delta_follows_primary_tag():
    assert canonicalize("[angry]").stability_delta == pytest.approx(-0.1)
    assert canonicalize("[calm]").stability_delta == pytest.approx(0.05)
