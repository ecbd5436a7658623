"""Static voice-profile tables: genre, age group and scene mood.

Both the canonicalizer's context defaults and the narrator heuristic read
from these tables, so a genre or mood resolves to the same emotion
everywhere.  All maps are read-only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional


@dataclass(frozen=True)
class VoiceDefaults:
    stability: float
    style: float
    emotion_bias: tuple[str, ...]
    tempo: float = 1.0


@dataclass(frozen=True)
class GenreProfile:
    narrator: VoiceDefaults
    characters: Mapping[str, VoiceDefaults]


@dataclass(frozen=True)
class AgeProfile:
    default_emotion: str
    stability_modifier: float
    avoid: tuple[str, ...] = ()


def _chars(**roles: VoiceDefaults) -> Mapping[str, VoiceDefaults]:
    return MappingProxyType(dict(roles))


GENRE_PROFILES: Mapping[str, GenreProfile] = MappingProxyType({
    "horror": GenreProfile(
        narrator=VoiceDefaults(0.35, 0.8, ("fearful", "whisper", "calm"), 0.85),
        characters=_chars(
            villain=VoiceDefaults(0.3, 0.9, ("angry", "whisper", "calm")),
            victim=VoiceDefaults(0.2, 0.85, ("fearful", "sad", "surprised")),
            protagonist=VoiceDefaults(0.4, 0.7, ("fearful", "calm", "angry")),
        ),
    ),
    "thriller": GenreProfile(
        narrator=VoiceDefaults(0.4, 0.75, ("excited", "calm", "fearful"), 1.05),
        characters=_chars(
            protagonist=VoiceDefaults(0.45, 0.7, ("calm", "excited", "angry")),
            villain=VoiceDefaults(0.35, 0.85, ("calm", "angry", "excited")),
        ),
    ),
    "mystery": GenreProfile(
        narrator=VoiceDefaults(0.5, 0.65, ("calm", "surprised", "excited"), 0.95),
        characters=_chars(
            protagonist=VoiceDefaults(0.5, 0.6, ("calm", "surprised", "excited")),
            villain=VoiceDefaults(0.4, 0.7, ("fearful", "angry", "calm")),
        ),
    ),
    "romance": GenreProfile(
        narrator=VoiceDefaults(0.5, 0.7, ("calm", "excited", "sad"), 0.95),
        characters=_chars(
            protagonist=VoiceDefaults(0.45, 0.65, ("excited", "sad", "calm")),
            love_interest=VoiceDefaults(0.5, 0.6, ("calm", "excited", "sad")),
        ),
    ),
    "drama": GenreProfile(
        narrator=VoiceDefaults(0.45, 0.75, ("calm", "sad", "angry"), 0.9),
        characters=_chars(
            protagonist=VoiceDefaults(0.4, 0.7, ("sad", "angry", "calm")),
            villain=VoiceDefaults(0.4, 0.7, ("angry", "calm", "sad")),
        ),
    ),
    "fantasy": GenreProfile(
        narrator=VoiceDefaults(0.5, 0.6, ("excited", "calm", "surprised"), 1.0),
        characters=_chars(
            protagonist=VoiceDefaults(0.45, 0.65, ("excited", "calm", "angry")),
            mentor=VoiceDefaults(0.6, 0.5, ("calm", "excited", "surprised")),
            villain=VoiceDefaults(0.35, 0.8, ("angry", "calm", "excited")),
        ),
    ),
    "scifi": GenreProfile(
        narrator=VoiceDefaults(0.55, 0.55, ("calm", "excited", "surprised"), 1.05),
        characters=_chars(
            protagonist=VoiceDefaults(0.5, 0.55, ("calm", "excited", "surprised")),
            ai=VoiceDefaults(0.8, 0.2, ("calm",)),
        ),
    ),
    "adventure": GenreProfile(
        narrator=VoiceDefaults(0.5, 0.65, ("excited", "calm", "surprised"), 1.1),
        characters=_chars(
            protagonist=VoiceDefaults(0.45, 0.7, ("excited", "calm", "angry")),
            sidekick=VoiceDefaults(0.4, 0.7, ("excited", "fearful", "surprised")),
        ),
    ),
    "action": GenreProfile(
        narrator=VoiceDefaults(0.45, 0.7, ("excited", "angry", "calm"), 1.15),
        characters=_chars(
            protagonist=VoiceDefaults(0.4, 0.7, ("angry", "calm", "excited")),
            villain=VoiceDefaults(0.35, 0.8, ("angry", "calm", "excited")),
        ),
    ),
    "comedy": GenreProfile(
        narrator=VoiceDefaults(0.45, 0.7, ("excited", "surprised", "calm"), 1.05),
        characters=_chars(
            protagonist=VoiceDefaults(0.4, 0.75, ("excited", "surprised", "sad")),
        ),
    ),
    "literary": GenreProfile(
        narrator=VoiceDefaults(0.55, 0.6, ("calm", "sad", "excited"), 0.9),
        characters=_chars(
            protagonist=VoiceDefaults(0.55, 0.55, ("calm", "sad", "excited")),
        ),
    ),
    "children": GenreProfile(
        narrator=VoiceDefaults(0.5, 0.7, ("excited", "surprised", "calm"), 0.95),
        characters=_chars(
            protagonist=VoiceDefaults(0.4, 0.75, ("excited", "surprised", "sad")),
        ),
    ),
})

_GENRE_ALIASES = MappingProxyType({
    "sciencefiction": "scifi",
    "kids": "children",
    "childrens": "children",
    "suspense": "thriller",
    "crime": "mystery",
    "literaryfiction": "literary",
})

_ROLE_ALIASES = MappingProxyType({
    "main character": "protagonist",
    "lead": "protagonist",
    "hero": "protagonist",
    "heroine": "protagonist",
    "antagonist": "villain",
    "bad guy": "villain",
    "love interest": "love_interest",
    "partner": "love_interest",
    "guide": "mentor",
    "teacher": "mentor",
})

AGE_PROFILES: Mapping[str, AgeProfile] = MappingProxyType({
    "child": AgeProfile("excited", -0.15, avoid=("whisper", "calm")),
    "teen": AgeProfile("excited", -0.10),
    "young_adult": AgeProfile("calm", 0.0),
    "adult": AgeProfile("calm", 0.05),
    "middle_aged": AgeProfile("calm", 0.08, avoid=("excited",)),
    "elderly": AgeProfile("calm", 0.12, avoid=("shouting", "excited")),
})

_AGE_ALIASES = MappingProxyType({
    "kid": "child",
    "children": "child",
    "teenager": "teen",
    "adolescent": "teen",
    "youngadult": "young_adult",
    "senior": "elderly",
    "old": "elderly",
})

YOUNG_AGE_GROUPS = frozenset({"child", "teen"})

# Scene mood -> default canonical emotion.
MOOD_EMOTIONS: Mapping[str, str] = MappingProxyType({
    "tense": "fearful",
    "suspenseful": "fearful",
    "scary": "fearful",
    "dread": "fearful",
    "horror": "fearful",
    "eerie": "whisper",
    "mysterious": "whisper",
    "intimate": "whisper",
    "action": "excited",
    "exciting": "excited",
    "adventurous": "excited",
    "playful": "excited",
    "joyful": "excited",
    "happy": "excited",
    "funny": "excited",
    "triumphant": "excited",
    "sad": "sad",
    "melancholy": "sad",
    "somber": "sad",
    "tragic": "sad",
    "angry": "angry",
    "hostile": "angry",
    "confrontational": "angry",
    "shocking": "surprised",
    "surprising": "surprised",
    "peaceful": "calm",
    "romantic": "calm",
    "tender": "calm",
    "cozy": "calm",
    "calm": "calm",
    "neutral": "calm",
})

DEFAULT_NARRATOR = VoiceDefaults(0.65, 0.25, ("calm",))
DEFAULT_CHARACTER = VoiceDefaults(0.5, 0.35, ("calm",))


def normalize_genre(genre: Optional[str]) -> Optional[str]:
    if not genre:
        return None
    key = re.sub(r"[^a-z]", "", genre.lower())
    key = _GENRE_ALIASES.get(key, key)
    return key if key in GENRE_PROFILES else None


def get_genre_profile(genre: Optional[str]) -> Optional[GenreProfile]:
    key = normalize_genre(genre)
    return GENRE_PROFILES[key] if key else None


def get_voice_defaults(genre: Optional[str], role: Optional[str]) -> Optional[VoiceDefaults]:
    """Genre defaults for a narrator (``role="narrator"``) or character role.

    Unknown roles fall back to the genre's protagonist profile.  Returns None
    when the genre is unknown.
    """
    profile = get_genre_profile(genre)
    if profile is None:
        return None
    if role == "narrator":
        return profile.narrator
    key = (role or "").strip().lower()
    key = _ROLE_ALIASES.get(key, key.replace(" ", "_"))
    return profile.characters.get(key) or profile.characters.get("protagonist")


def genre_emotion(genre: Optional[str]) -> Optional[str]:
    """Leading emotion of the genre's narrator bias."""
    profile = get_genre_profile(genre)
    return profile.narrator.emotion_bias[0] if profile else None


def normalize_age_group(age_group: Optional[str]) -> str:
    key = re.sub(r"[^a-z_]", "", (age_group or "adult").lower())
    key = _AGE_ALIASES.get(key, key)
    return key if key in AGE_PROFILES else "adult"


def get_age_profile(age_group: Optional[str]) -> AgeProfile:
    return AGE_PROFILES[normalize_age_group(age_group)]


def mood_emotion(mood: Optional[str]) -> Optional[str]:
    """Map a free-text scene mood to a canonical emotion.

    Tries the whole mood first, then each word in order.
    """
    if not mood:
        return None
    text = mood.strip().lower()
    if text in MOOD_EMOTIONS:
        return MOOD_EMOTIONS[text]
    for word in re.findall(r"[a-z]+", text):
        if word in MOOD_EMOTIONS:
            return MOOD_EMOTIONS[word]
    return None
