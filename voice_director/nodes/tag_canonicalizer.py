"""Tag Canonicalizer.

Maps a free-form delivery direction ("[cautiously][with dread]", "ominously")
onto the synthesizer's fixed vocabulary of eight emotion tags plus pause
tags.  Resolution order:

1. combination table (one keyword -> 1-2 tags), which short-circuits 2-3;
2. bracketed tokens, either already canonical or via the single-tag table;
3. keywords in the raw text, canonical words first, then the single-tag table;
4. ``pause:<n>s`` tokens, appended independently of 1-3;
5. a context-aware default when no emotion tag was found;
6. truncation to three tags.

``canonicalize`` is pure and total: the result always carries at least one
emotion tag.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..models import CANONICAL_EMOTIONS, PAUSE_VALUES
from .. import profiles

log = logging.getLogger(__name__)

MAX_TAGS = 3
SPEED_MIN, SPEED_MAX = 0.8, 1.2
RAW_SPEED_MIN, RAW_SPEED_MAX = 0.5, 2.0

# Keyword -> ordered canonical tags for nuances no single tag expresses.
# Checked in order; the first keyword present wins.
COMBINATION_TABLE: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("mysterious", ("whisper", "fearful")),
    ("ominous", ("whisper", "angry")),
    ("menacing", ("whisper", "angry")),
    ("sinister", ("whisper", "angry")),
    ("threatening", ("angry", "whisper")),
    ("through gritted teeth", ("angry", "whisper")),
    ("barely contained", ("angry", "whisper")),
    ("cold fury", ("angry", "calm")),
    ("conspiratorial", ("whisper", "excited")),
    ("nervous excitement", ("excited", "fearful")),
    ("breathless", ("excited", "fearful")),
    ("hysterical", ("fearful", "shouting")),
    ("desperate", ("fearful", "shouting")),
    ("pleading", ("sad", "fearful")),
    ("voice breaking", ("sad", "whisper")),
    ("choked up", ("sad", "whisper")),
    ("tearful", ("sad", "whisper")),
    ("trembling", ("fearful", "whisper")),
    ("bittersweet", ("sad", "calm")),
    ("resigned", ("sad", "calm")),
    ("in awe", ("surprised", "whisper")),
    ("awestruck", ("surprised", "whisper")),
    ("incredulous", ("surprised", "angry")),
    ("triumphant", ("excited", "shouting")),
    ("war cry", ("shouting", "angry")),
    ("sarcastic", ("calm", "angry")),
    ("teasing", ("excited", "calm")),
    ("loving", ("calm", "whisper")),
)

# Descriptive word -> one canonical emotion.
TAG_MAPPING: dict[str, str] = {
    # excited
    "happy": "excited", "joyful": "excited", "elated": "excited", "thrilled": "excited",
    "enthusiastic": "excited", "eager": "excited", "delighted": "excited",
    "cheerful": "excited", "playful": "excited", "excitedly": "excited",
    "energetic": "excited", "laughing": "excited", "laughs": "excited",
    "urgent": "excited", "urgently": "excited", "hurried": "excited",
    # sad
    "melancholy": "sad", "sorrowful": "sad", "grief": "sad", "grieving": "sad",
    "mournful": "sad", "dejected": "sad", "heartbroken": "sad", "wistful": "sad",
    "sadly": "sad", "sobbing": "sad", "sobs": "sad", "weeping": "sad",
    "despair": "sad", "forlorn": "sad", "regretful": "sad",
    # angry
    "furious": "angry", "enraged": "angry", "irritated": "angry", "frustrated": "angry",
    "seething": "angry", "bitter": "angry", "hostile": "angry", "angrily": "angry",
    "snarls": "angry", "growls": "angry", "hisses": "angry", "coldly": "angry",
    "sternly": "angry", "sharply": "angry", "indignant": "angry", "rage": "angry",
    # calm
    "peaceful": "calm", "serene": "calm", "relaxed": "calm", "gentle": "calm",
    "gently": "calm", "soothing": "calm", "tender": "calm", "tenderly": "calm",
    "warm": "calm", "warmly": "calm", "measured": "calm", "steady": "calm",
    "reassuring": "calm", "kindly": "calm", "thoughtful": "calm", "neutral": "calm",
    # fearful
    "terrified": "fearful", "scared": "fearful", "anxious": "fearful", "nervous": "fearful",
    "nervously": "fearful", "frightened": "fearful", "panicked": "fearful",
    "worried": "fearful", "uneasy": "fearful", "dread": "fearful", "afraid": "fearful",
    "fearfully": "fearful", "hesitant": "fearful", "timid": "fearful",
    # surprised
    "shocked": "surprised", "astonished": "surprised", "amazed": "surprised",
    "startled": "surprised", "stunned": "surprised", "gasps": "surprised",
    "disbelief": "surprised", "bewildered": "surprised",
    # whisper
    "softly": "whisper", "quietly": "whisper", "murmur": "whisper", "hushed": "whisper",
    "secretive": "whisper", "intimate": "whisper", "under her breath": "whisper",
    "under his breath": "whisper", "barely audible": "whisper",
    # shouting
    "yell": "shouting", "scream": "shouting", "bellow": "shouting", "roar": "shouting",
    "shout": "shouting", "exclaims": "shouting", "loudly": "shouting",
}

_SLOW_CUES = re.compile(
    r"\b(slow(ly)?|deliberate(ly)?|measured|drawn out|lingering|languid|unhurried)\b"
)
_FAST_CUES = re.compile(
    r"\b(quick(ly)?|rushed|hurried(ly)?|rapid(-fire)?|breathless(ly)?|frantic(ally)?|urgent(ly)?)\b"
)
_BRACKET_TOKEN = re.compile(r"\[([^\]]+)\]")
_PAUSE_TOKEN = re.compile(r"\bpause:\s*(\d+(?:\.\d+)?)\s*s\b")

# Stability nudges keyed on the primary tag; intense delivery wants more variation.
_STABILITY_DELTA = {
    "shouting": -0.15,
    "fearful": -0.1,
    "angry": -0.1,
    "excited": -0.05,
    "surprised": -0.05,
    "whisper": 0.0,
    "sad": 0.0,
    "calm": 0.05,
}


@dataclass(frozen=True)
class CanonicalContext:
    age_group: Optional[str] = None
    scene_mood: Optional[str] = None
    genre: Optional[str] = None
    character_default: Optional[str] = None
    speaker_is_narrator: bool = False


@dataclass(frozen=True)
class CanonicalDirection:
    tags: tuple[str, ...]
    speed_modifier: float = 1.0
    stability_delta: float = 0.0
    source: str = "default"  # "combination" | "tags" | "keywords" | "default"

    @property
    def emotions(self) -> tuple[str, ...]:
        return tuple(t for t in self.tags if t in CANONICAL_EMOTIONS)


def _keyword_pattern(keyword: str) -> re.Pattern:
    # Word-prefix match: "ominous" also matches "ominously".
    return re.compile(r"\b" + r"\s+".join(re.escape(w) for w in keyword.split()))


_COMBINATION_PATTERNS = tuple((_keyword_pattern(k), tags) for k, tags in COMBINATION_TABLE)
_CANONICAL_PATTERNS = tuple((_keyword_pattern(e), e) for e in CANONICAL_EMOTIONS)
_MAPPING_PATTERNS = tuple(
    (_keyword_pattern(k), v) for k, v in sorted(TAG_MAPPING.items(), key=lambda kv: -len(kv[0]))
)


def is_canonical(tag: str) -> bool:
    return tag in CANONICAL_EMOTIONS or is_pause(tag)


def is_pause(tag: str) -> bool:
    return bool(re.fullmatch(r"pause:(0\.5|1|1\.5|2)s", tag))


def normalize_pause(seconds: float) -> str:
    """Snap a pause length onto the supported values."""
    nearest = min(PAUSE_VALUES, key=lambda v: (abs(v - seconds), v))
    return f"pause:{nearest:g}s"


def canonicalize(
    direction: Optional[str],
    context: Optional[CanonicalContext] = None,
    base_speed: float = 1.0,
) -> CanonicalDirection:
    """Resolve *direction* to canonical tags plus speed/stability adjustments."""
    context = context or CanonicalContext()
    text = direction.lower() if isinstance(direction, str) else ""

    emotions, source = _resolve_emotions(text)
    pauses = extract_pauses(text)

    if not emotions:
        emotions = [context_default(context)]
        source = "default"

    tags = _dedupe(emotions + pauses)[:MAX_TAGS]
    speed = _speed_modifier(text, base_speed)
    delta = _STABILITY_DELTA.get(tags[0], 0.0)

    log.debug("Canonicalized %r -> %s (%s)", direction, tags, source)
    return CanonicalDirection(tuple(tags), speed, delta, source)


def _resolve_emotions(text: str) -> tuple[list[str], str]:
    if not text:
        return [], "default"

    for pattern, combo in _COMBINATION_PATTERNS:
        if pattern.search(text):
            return list(combo), "combination"

    from_tags: list[str] = []
    for token in _BRACKET_TOKEN.findall(text):
        token = token.strip()
        if token in CANONICAL_EMOTIONS:
            from_tags.append(token)
        elif token in TAG_MAPPING:
            from_tags.append(TAG_MAPPING[token])
    if from_tags:
        return _dedupe(from_tags), "tags"

    found = _scan(text, _CANONICAL_PATTERNS) + _scan(text, _MAPPING_PATTERNS)
    return _dedupe(found), "keywords"


def _scan(text: str, patterns) -> list[str]:
    """Emotions whose keyword occurs in *text*, ordered by first position."""
    hits: list[tuple[int, str]] = []
    for pattern, emotion in patterns:
        m = pattern.search(text)
        if m:
            hits.append((m.start(), emotion))
    hits.sort(key=lambda h: h[0])
    return [emotion for _, emotion in hits]


def extract_pauses(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return _dedupe(normalize_pause(float(m.group(1))) for m in _PAUSE_TOKEN.finditer(text.lower()))


def context_default(context: CanonicalContext) -> str:
    """Default emotion when a direction yields none.

    Character default, then narrator calm, then an age default for young
    speakers (never calm), then scene mood, then genre, then calm.
    """
    character_default = (context.character_default or "").strip().lower()
    if character_default in CANONICAL_EMOTIONS:
        return character_default
    if context.speaker_is_narrator:
        return "calm"

    age_group = profiles.normalize_age_group(context.age_group)
    if age_group in profiles.YOUNG_AGE_GROUPS:
        return profiles.AGE_PROFILES[age_group].default_emotion

    return (
        profiles.mood_emotion(context.scene_mood)
        or profiles.genre_emotion(context.genre)
        or "calm"
    )


def _speed_modifier(text: str, base_speed: float) -> float:
    speed = base_speed if base_speed else 1.0
    speed = min(RAW_SPEED_MAX, max(RAW_SPEED_MIN, speed))
    if _SLOW_CUES.search(text):
        speed *= 0.9
    elif _FAST_CUES.search(text):
        speed *= 1.1
    return round(min(SPEED_MAX, max(SPEED_MIN, speed)), 3)


def _dedupe(items) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
