"""Emotion Extractor.

Derives one coarse emotion label per segment for downstream preset lookup.
The label vocabulary is wider than the eight canonical tags; it never feeds
back into synthesis parameters.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from ..models import PROTECTED_EMOTIONS, Segment
from ..timing import record_counts, timed_node

log = logging.getLogger(__name__)

DEFAULT_LABEL = "neutral"

# Substring -> label, first match wins, so order matters.
EMOTION_KEYWORDS: tuple[tuple[str, str], ...] = (
    # anger
    ("angry", "angry"), ("furious", "furious"), ("rage", "angry"), ("seething", "angry"),
    # sadness
    ("sad", "sad"), ("grief", "grieving"), ("sorrow", "sad"), ("melancholy", "melancholy"),
    # joy
    ("happy", "warm"), ("joyful", "joyful"), ("excited", "excited"), ("elated", "excited"),
    # fear
    ("fearful", "fearful"), ("terrified", "terrified"), ("nervous", "nervous"), ("anxious", "nervous"),
    # volume / delivery
    ("whisper", "whispered"), ("murmur", "murmured"), ("softly", "tender"),
    ("shout", "shouted"), ("yell", "shouted"), ("scream", "terrified"),
    # mystery / menace
    ("mysterious", "mysterious"), ("ominous", "mysterious"), ("sinister", "sinister"),
    ("menac", "menacing"), ("threat", "threatening"), ("dark", "sinister"),
    # tenderness
    ("tender", "tender"), ("loving", "loving"), ("gentle", "tender"),
    # complex
    ("sarcastic", "sarcastic"), ("dry", "sarcastic"), ("ironic", "sarcastic"),
    ("dramatic", "dramatic"), ("theatrical", "dramatic"),
    ("calm", "calm_bedtime"), ("peaceful", "calm_bedtime"), ("soothing", "calm_bedtime"),
    ("surprised", "surprised"), ("shocked", "surprised"),
    # intensity
    ("brutal", "brutal"), ("savage", "brutal"), ("deadly", "brutal"),
    ("agony", "agonized"), ("pain", "agonized"),
    ("torment", "tormented"), ("gritted", "tormented"),
    ("unhinged", "unhinged"), ("crazed", "unhinged"),
    ("chill", "chilling"), ("icy", "chilling"),
    # intimate
    ("passionate", "passionate"), ("yearn", "yearning"), ("longing", "yearning"),
    ("intimate", "intimate"),
)

_PROTECTED_LABELS = {"whisper": "whispered", "shouting": "shouted"}


def extract_emotion(tags_or_direction: Optional[str]) -> str:
    """First keyword found in *tags_or_direction*, else ``neutral``."""
    if not tags_or_direction or not isinstance(tags_or_direction, str):
        return DEFAULT_LABEL
    text = tags_or_direction.lower()
    for keyword, label in EMOTION_KEYWORDS:
        if keyword in text:
            return label
    return DEFAULT_LABEL


def label_segment(segment: Segment) -> str:
    """Label for one segment; a protected upstream emotion always wins."""
    if segment.upstream_emotion:
        tag = PROTECTED_EMOTIONS.get(segment.upstream_emotion.strip().lower())
        if tag:
            return _PROTECTED_LABELS[tag]
    source = " ".join(filter(None, (segment.audio_tags, segment.raw_direction)))
    return extract_emotion(source)


@timed_node("emotion_extractor", "programmatic")
def label_segments(segments: list[Segment]) -> list[Segment]:
    result = [replace(s, emotion_label=label_segment(s)) for s in segments]
    non_neutral = sum(1 for s in result if s.emotion_label != DEFAULT_LABEL)
    log.info("Emotion extractor: %d segments, %d non-neutral", len(result), non_neutral)
    record_counts("emotion_extractor", processed=len(result), affected=non_neutral)
    return result
