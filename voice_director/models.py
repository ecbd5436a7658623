"""Data models for the tag-segmentation and voice-direction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


NARRATOR = "narrator"

KIND_NARRATOR = "narrator"
KIND_DIALOGUE = "dialogue"

CANONICAL_EMOTIONS = (
    "excited", "sad", "angry", "calm",
    "fearful", "surprised", "whisper", "shouting",
)
PAUSE_VALUES = (0.5, 1.0, 1.5, 2.0)

# Provenance values for Segment.annotation_source.
SOURCE_PRIMARY = "primary"
SOURCE_DIALOGUE_REFINED = "dialogue_refined"
SOURCE_NARRATOR_REFINED = "narrator_refined"
SOURCE_HEURISTIC = "heuristic"
SOURCE_UNANNOTATED = "unannotated"

ANNOTATION_SOURCES = (
    SOURCE_PRIMARY,
    SOURCE_DIALOGUE_REFINED,
    SOURCE_NARRATOR_REFINED,
    SOURCE_HEURISTIC,
    SOURCE_UNANNOTATED,
)

# Upstream delivery emotions that later stages must never erase.
PROTECTED_EMOTIONS = {
    "whispered": "whisper",
    "hushed": "whisper",
    "murmured": "whisper",
    "shouted": "shouting",
    "yelled": "shouting",
    "bellowed": "shouting",
}


def render_tags(tags) -> str:
    """Render canonical tags in wire format: ``[calm][pause:1s]``."""
    return "".join(f"[{t}]" for t in tags)


@dataclass(frozen=True)
class Segment:
    """One contiguous span of narration or dialogue.

    ``index``, ``kind``, ``speaker`` and ``text`` are fixed by the parser.
    Later stages fill the remaining fields by building new instances with
    ``dataclasses.replace``.
    """

    index: int
    kind: str  # "narrator" | "dialogue"
    speaker: str
    text: str
    attribution: Optional[str] = None
    upstream_emotion: Optional[str] = None
    canonical_tags: tuple[str, ...] = ()
    raw_direction: Optional[str] = None
    stability: float = 0.5
    style: float = 0.3
    speed_modifier: float = 1.0
    emotion_label: str = "neutral"
    annotation_source: str = SOURCE_UNANNOTATED
    annotation_note: str = ""
    reasoning: str = ""

    @property
    def is_narrator(self) -> bool:
        return self.kind == KIND_NARRATOR

    @property
    def audio_tags(self) -> str:
        return render_tags(self.canonical_tags)

    @property
    def protected_tag(self) -> Optional[str]:
        """Canonical tag carried by a protected upstream emotion, if any."""
        if not self.upstream_emotion:
            return None
        return PROTECTED_EMOTIONS.get(self.upstream_emotion.strip().lower())

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "kind": self.kind,
            "speaker": self.speaker,
            "text": self.text,
            "attribution": self.attribution,
            "upstream_emotion": self.upstream_emotion,
            "audio_tags": self.audio_tags,
            "canonical_tags": list(self.canonical_tags),
            "raw_direction": self.raw_direction,
            "stability": round(self.stability, 2),
            "style": round(self.style, 2),
            "speed_modifier": round(self.speed_modifier, 2),
            "emotion": self.emotion_label,
            "annotation_source": self.annotation_source,
            "annotation_note": self.annotation_note,
        }


@dataclass
class Direction:
    """One voice direction returned by the completion service."""

    index: int
    audio_tags: str = ""
    stability: Optional[float] = None
    style: Optional[float] = None
    reasoning: str = ""


@dataclass(frozen=True)
class CharacterProfile:
    """Voice profile for a speaking character, supplied by the caller."""

    name: str
    role: str = "supporting"
    age_group: str = "adult"
    default_emotion: Optional[str] = None
    base_stability: Optional[float] = None
    base_style: Optional[float] = None
    speed_modifier: Optional[float] = None
    emphasizes_key_words: bool = False
    uses_dramatic_pauses: bool = False


@dataclass(frozen=True)
class SceneContext:
    """Story-level context shared by every segment in a run."""

    title: str = "Untitled"
    genre: Optional[str] = None
    mood: Optional[str] = None
    audience: str = "general"
    scene_description: str = ""
    narrator_baseline: tuple[str, ...] = ()


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class NodeMetrics:
    """Timing and stats for one pipeline node."""

    node_name: str
    node_type: str  # "programmatic" | "ai"
    duration_ms: int = 0
    segments_processed: int = 0
    segments_affected: int = 0  # how many segments this node changed


@dataclass
class PipelineResult:
    """Complete output of the pipeline."""

    title: str
    segments: list[Segment] = field(default_factory=list)
    validation: ValidationResult = field(default_factory=lambda: ValidationResult(True))
    report: dict = field(default_factory=dict)
