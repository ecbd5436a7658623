"""Tests for the annotation applier."""

import asyncio
import time
from dataclasses import replace

import pytest

from conftest import FakeClient, SlowClient, answer_all, directions_json, fail_all
from voice_director.models import (
    KIND_DIALOGUE,
    SOURCE_HEURISTIC,
    SOURCE_PRIMARY,
    CharacterProfile,
    Direction,
    SceneContext,
    Segment,
)
from voice_director.nodes.annotation_applier import (
    STABILITY_FLOOR,
    apply_annotations,
    build_user_prompt,
    merge_protected,
    request_directions,
    resolve_voice_settings,
    speaker_context,
)
from voice_director.nodes.batch_dispatcher import Batch


def _apply(segments, annotations, scene, characters=None, **kwargs):
    return asyncio.run(apply_annotations(segments, annotations, scene, characters or {}, **kwargs))


def test_primary_annotation_canonicalized(sample_segments, scene):
    annotations = {1: Direction(index=1, audio_tags="[furious][pause:1s]", stability=0.9, style=0.1)}
    result = _apply(sample_segments, annotations, scene)
    roland = result[1]
    assert roland.canonical_tags == ("angry", "pause:1s")
    assert roland.audio_tags == "[angry][pause:1s]"
    assert roland.raw_direction == "[furious][pause:1s]"
    assert roland.annotation_source == SOURCE_PRIMARY


def test_missing_annotation_uses_context_default(sample_segments, scene):
    result = _apply(sample_segments, {}, scene)
    assert [s.annotation_source for s in result] == [SOURCE_HEURISTIC] * 3
    assert result[0].canonical_tags == ("calm",)
    # adult character in a tense scene
    assert result[1].canonical_tags == ("fearful",)


def test_order_and_identity_preserved(sample_segments, scene):
    result = _apply(sample_segments, {}, scene)
    assert [(s.index, s.kind, s.speaker, s.text) for s in result] == [
        (s.index, s.kind, s.speaker, s.text) for s in sample_segments
    ]


def test_opportunistic_reannotation_marks_fallback(sample_segments, scene):
    client = FakeClient(answer_all("[sad]"))
    annotations = {0: Direction(index=0, audio_tags="[calm]")}
    result = _apply(sample_segments, annotations, scene, client=client)
    assert len(client.requests) == 2  # one call per missing segment
    assert result[0].annotation_note == ""
    for s in result[1:]:
        assert s.annotation_source == SOURCE_PRIMARY
        assert s.annotation_note == "fallback_primary"
        assert s.canonical_tags == ("sad",)


def test_reannotation_failure_swallowed(sample_segments, scene):
    client = FakeClient(fail_all())
    result = _apply(sample_segments, {}, scene, client=client)
    assert [s.annotation_source for s in result] == [SOURCE_HEURISTIC] * 3


def test_reannotation_disabled(sample_segments, scene):
    client = FakeClient(answer_all())
    _apply(sample_segments, {}, scene, client=client, reannotate=False)
    assert client.requests == []


def test_reannotation_skipped_after_deadline(sample_segments, scene):
    client = FakeClient(answer_all())
    result = _apply(sample_segments, {}, scene, client=client, deadline=time.monotonic() - 1)
    assert client.requests == []
    assert [s.annotation_source for s in result] == [SOURCE_HEURISTIC] * 3


def test_reannotation_cancelled_at_deadline(sample_segments, scene):
    client = SlowClient(answer_all(), delay=1.0)
    started = time.monotonic()
    result = _apply(sample_segments, {}, scene, client=client, deadline=time.monotonic() + 0.05)
    assert time.monotonic() - started < 0.5
    assert [s.annotation_source for s in result] == [SOURCE_HEURISTIC] * 3


def test_protected_emotion_survives_primary(sample_segments, scene):
    segments = [replace(sample_segments[1], upstream_emotion="Whispered")]
    annotations = {1: Direction(index=1, audio_tags="[shouting][angry][excited]")}
    result = _apply(segments, annotations, scene)
    assert result[0].canonical_tags == ("whisper", "shouting", "angry", "excited")
    assert result[0].annotation_note == "protected:whispered"


def test_protected_emotion_survives_default(sample_segments, scene):
    segments = [replace(sample_segments[1], upstream_emotion="yelled")]
    result = _apply(segments, {}, scene)
    assert result[0].canonical_tags[0] == "shouting"


def test_merge_protected():
    assert merge_protected(("calm",), None) == ("calm",)
    assert merge_protected(("whisper", "sad"), "whisper") == ("whisper", "sad")
    assert merge_protected(("a", "b", "c", "d"), "whisper") == ("whisper", "a", "b", "c")


def test_profile_base_beats_genre_and_annotation(sample_segments):
    scene = SceneContext(genre="horror")
    roland = CharacterProfile(name="Roland", base_stability=0.7, base_style=0.2)
    ctx = speaker_context(sample_segments[1], scene, {"Roland": roland})
    assert resolve_voice_settings(ctx, raw_stability=0.1, raw_style=0.9) == (0.75, 0.2)


def test_annotation_beats_genre_defaults(sample_segments):
    ctx = speaker_context(sample_segments[0], SceneContext(genre="horror"), {})
    assert resolve_voice_settings(ctx, raw_stability=0.9, raw_style=0.1) == (0.9, 0.1)
    assert resolve_voice_settings(ctx, raw_stability=0.9) == (0.9, 0.8)
    assert resolve_voice_settings(ctx) == (0.35, 0.8)


def test_model_settings_survive_known_genre(sample_segments, scene):
    annotations = {0: Direction(index=0, audio_tags="[sad]", stability=0.95, style=0.05)}
    narrator = _apply(sample_segments[:1], annotations, scene)[0]
    assert (narrator.stability, narrator.style) == (0.95, 0.05)


def test_annotation_used_without_genre(sample_segments):
    ctx = speaker_context(sample_segments[0], SceneContext(), {})
    assert resolve_voice_settings(ctx, raw_stability=0.9, raw_style=0.1) == (0.9, 0.1)
    assert resolve_voice_settings(ctx) == (0.65, 0.25)


def test_speech_pattern_modifiers_floored(sample_segments):
    roland = CharacterProfile(
        name="Roland", base_stability=0.2, age_group="young_adult",
        emphasizes_key_words=True, uses_dramatic_pauses=True,
    )
    ctx = speaker_context(sample_segments[1], SceneContext(), {"Roland": roland})
    stability, _ = resolve_voice_settings(ctx)
    assert stability == pytest.approx(STABILITY_FLOOR)


def test_speech_pattern_step():
    profile = CharacterProfile(name="X", base_stability=0.6, age_group="young_adult",
                               emphasizes_key_words=True)
    seg = Segment(index=0, kind=KIND_DIALOGUE, speaker="X", text="hi")
    ctx = speaker_context(seg, SceneContext(), {"X": profile})
    assert resolve_voice_settings(ctx)[0] == pytest.approx(0.55)


def test_narrator_speed_follows_genre_tempo(sample_segments):
    result = _apply(sample_segments, {0: Direction(index=0, audio_tags="[calm]")}, SceneContext(genre="horror"))
    assert result[0].speed_modifier == pytest.approx(0.85)


def test_request_directions_keeps_local_indices(sample_segments, scene):
    client = FakeClient(lambda r: directions_json([(0, "[calm]"), (2, "[sad]"), (7, "[angry]")]))
    batch = Batch(tuple(sample_segments), start_index=40)
    found = asyncio.run(request_directions(client, batch, scene, {}))
    assert sorted(found) == [0, 2]
    assert found[2].audio_tags == "[sad]"
    assert '"index": 0' in client.requests[0].user_prompt
    assert client.requests[0].expect_json


def test_user_prompt_lists_cast_and_upstream_emotion(sample_segments, scene):
    segments = [replace(sample_segments[1], upstream_emotion="whispered")]
    prompt = build_user_prompt(
        segments, scene, {"Roland": CharacterProfile(name="Roland", role="mentor")},
    )
    assert '"role": "mentor"' in prompt
    assert '"upstream_emotion": "whispered"' in prompt
    assert "GENRE: fantasy" in prompt
