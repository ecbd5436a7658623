"""Annotation Applier.

Combines the merged direction map from the batch dispatcher with character
and genre defaults to produce final synthesis parameters for every segment.

Each segment is resolved by the first strategy that returns a result:

1. ``_from_primary``: a direction from the batched primary pass;
2. ``_from_fallback``: a direction from an opportunistic single-segment call;
3. ``_from_context_default``: the canonicalizer's context default, no network.

Segments that arrived with a protected upstream emotion (whispered, shouted
and friends) keep that tag first whatever the strategy produced.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Mapping, Optional

from .. import profiles
from ..errors import CompletionError
from ..models import (
    SOURCE_HEURISTIC,
    SOURCE_PRIMARY,
    CharacterProfile,
    Direction,
    SceneContext,
    Segment,
)
from ..timing import record_counts, timed_node
from .batch_dispatcher import PARALLELISM, Batch, make_windows
from .completion_client import (
    CompletionClient,
    CompletionRequest,
    complete_by,
    deadline_passed,
    parse_directions,
)
from .tag_canonicalizer import CanonicalContext, CanonicalDirection, canonicalize

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_SYSTEM_PROMPT = (_PROMPTS_DIR / "direction_system.txt").read_text().strip()
_USER_TEMPLATE = (_PROMPTS_DIR / "direction_user.txt").read_text().strip()

MAX_PROTECTED_TAGS = 4
SPEECH_PATTERN_STEP = 0.05
STABILITY_FLOOR = 0.15

_MAX_TEXT_CHARS = 400


@dataclass(frozen=True)
class SpeakerContext:
    """Everything the strategies need to know about one segment's speaker."""

    profile: Optional[CharacterProfile]
    canonical: CanonicalContext
    genre_defaults: Optional[profiles.VoiceDefaults]
    base_speed: float


@dataclass(frozen=True)
class Resolution:
    direction: CanonicalDirection
    raw_direction: Optional[str] = None
    stability: Optional[float] = None  # raw annotation values, below the profile base
    style: Optional[float] = None
    reasoning: str = ""
    note: str = ""


Strategy = Callable[[Segment, SpeakerContext, dict], Optional[tuple[Resolution, str]]]


def speaker_context(
    segment: Segment,
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
) -> SpeakerContext:
    if segment.is_narrator:
        defaults = profiles.get_voice_defaults(scene.genre, "narrator")
        return SpeakerContext(
            profile=None,
            canonical=CanonicalContext(
                scene_mood=scene.mood, genre=scene.genre, speaker_is_narrator=True,
            ),
            genre_defaults=defaults,
            base_speed=defaults.tempo if defaults else 1.0,
        )

    profile = characters.get(segment.speaker)
    return SpeakerContext(
        profile=profile,
        canonical=CanonicalContext(
            age_group=profile.age_group if profile else None,
            scene_mood=scene.mood,
            genre=scene.genre,
            character_default=profile.default_emotion if profile else None,
        ),
        genre_defaults=profiles.get_voice_defaults(
            scene.genre, profile.role if profile else "supporting",
        ),
        base_speed=(profile.speed_modifier if profile and profile.speed_modifier else 1.0),
    )


def _from_primary(segment, ctx, lookups) -> Optional[tuple[Resolution, str]]:
    direction = lookups["primary"].get(segment.index)
    if direction is None:
        return None
    return _resolve_direction(direction, ctx), SOURCE_PRIMARY


def _from_fallback(segment, ctx, lookups) -> Optional[tuple[Resolution, str]]:
    direction = lookups["fallback"].get(segment.index)
    if direction is None:
        return None
    return replace(_resolve_direction(direction, ctx), note="fallback_primary"), SOURCE_PRIMARY


def _from_context_default(segment, ctx, lookups) -> Optional[tuple[Resolution, str]]:
    return Resolution(direction=canonicalize(None, ctx.canonical, ctx.base_speed)), SOURCE_HEURISTIC


STRATEGIES: tuple[Strategy, ...] = (_from_primary, _from_fallback, _from_context_default)


def _resolve_direction(direction: Direction, ctx: SpeakerContext) -> Resolution:
    return Resolution(
        direction=canonicalize(direction.audio_tags, ctx.canonical, ctx.base_speed),
        raw_direction=direction.audio_tags or None,
        stability=direction.stability,
        style=direction.style,
        reasoning=direction.reasoning,
    )


def resolve_voice_settings(
    ctx: SpeakerContext,
    raw_stability: Optional[float] = None,
    raw_style: Optional[float] = None,
    stability_delta: float = 0.0,
) -> tuple[float, float]:
    """Stability and style for a segment.

    Priority per value: character profile base, then the raw annotation,
    then genre defaults, then the narrator/character fallback.  Speech-pattern
    flags each lower stability by a small step, never below the floor.
    """
    fallback = profiles.DEFAULT_NARRATOR if ctx.canonical.speaker_is_narrator else profiles.DEFAULT_CHARACTER
    profile, defaults = ctx.profile, ctx.genre_defaults

    stability = _first_available(
        profile.base_stability if profile else None,
        raw_stability,
        defaults.stability if defaults else None,
        fallback.stability,
    )
    style = _first_available(
        profile.base_style if profile else None,
        raw_style,
        defaults.style if defaults else None,
        fallback.style,
    )

    stability = _clamp(stability + stability_delta)
    if profile is not None:
        stability = _clamp(stability + profiles.get_age_profile(profile.age_group).stability_modifier)
        steps = int(profile.emphasizes_key_words) + int(profile.uses_dramatic_pauses)
        if steps:
            stability = max(STABILITY_FLOOR, stability - SPEECH_PATTERN_STEP * steps)
    return round(stability, 3), round(_clamp(style), 3)


def merge_protected(tags: tuple[str, ...], protected: Optional[str]) -> tuple[str, ...]:
    """Put the protected tag first, keep everything else, cap the list."""
    if not protected:
        return tags
    merged = [protected]
    for tag in tags:
        if tag not in merged:
            merged.append(tag)
    return tuple(merged[:MAX_PROTECTED_TAGS])


def build_segment(segment: Segment, resolution: Resolution, source: str, ctx: SpeakerContext) -> Segment:
    """Apply one resolution to *segment*, honouring a protected emotion."""
    canonical = resolution.direction
    stability, style = resolve_voice_settings(
        ctx, resolution.stability, resolution.style, canonical.stability_delta,
    )
    tags, note = canonical.tags, resolution.note
    if segment.protected_tag:
        tags = merge_protected(tags, segment.protected_tag)
        protected_note = f"protected:{segment.upstream_emotion.strip().lower()}"
        note = f"{note},{protected_note}" if note else protected_note
    return replace(
        segment,
        canonical_tags=tags,
        raw_direction=resolution.raw_direction,
        stability=stability,
        style=style,
        speed_modifier=canonical.speed_modifier,
        annotation_source=source,
        annotation_note=note,
        reasoning=resolution.reasoning,
    )


@timed_node("annotation_applier", "programmatic")
async def apply_annotations(
    segments: list[Segment],
    annotations: Mapping[int, Direction],
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    client: Optional[CompletionClient] = None,
    reannotate: bool = True,
    parallelism: int = PARALLELISM,
    deadline: Optional[float] = None,
) -> list[Segment]:
    """Return a new segment list with every segment annotated.

    Segments missing from *annotations* get one best-effort single-segment
    call each (when *client* is given and *reannotate* is on); failures there
    are logged and otherwise ignored.  No calls start once *deadline*
    (``time.monotonic()`` seconds) has passed.
    """
    fallback: dict[int, Direction] = {}
    missing = [s for s in segments if s.index not in annotations]
    if missing and client is not None and reannotate:
        if deadline_passed(deadline):
            log.warning("Annotation applier: deadline passed, not re-annotating %d segment(s)",
                        len(missing))
        else:
            fallback = await _reannotate_missing(
                client, missing, scene, characters, parallelism, deadline,
            )

    lookups = {"primary": annotations, "fallback": fallback}
    result: list[Segment] = []
    for segment in segments:
        ctx = speaker_context(segment, scene, characters)
        for strategy in STRATEGIES:
            outcome = strategy(segment, ctx, lookups)
            if outcome is not None:
                resolution, source = outcome
                break
        result.append(build_segment(segment, resolution, source, ctx))
        log.debug(
            "Segment[%d] %s: %r -> %s (%s)",
            segment.index, segment.speaker, resolution.raw_direction,
            result[-1].audio_tags, source,
        )

    primary = sum(1 for s in result if s.annotation_source == SOURCE_PRIMARY)
    log.info(
        "Annotation applier: %d segments | %d primary (%d via fallback call) | %d heuristic",
        len(result), primary, len(fallback), len(result) - primary,
    )
    record_counts("annotation_applier", processed=len(result), affected=primary)
    return result


async def _reannotate_missing(
    client: CompletionClient,
    missing: list[Segment],
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    parallelism: int,
    deadline: Optional[float] = None,
) -> dict[int, Direction]:
    log.info("Annotation applier: re-annotating %d segment(s) one at a time", len(missing))
    batches = [Batch((s,), s.index) for s in missing]
    found: dict[int, Direction] = {}
    for window in make_windows(batches, parallelism):
        results = await asyncio.gather(
            *(request_directions(client, b, scene, characters, deadline) for b in window),
            return_exceptions=True,
        )
        for batch, outcome in zip(window, results):
            if isinstance(outcome, BaseException):
                log.warning("Re-annotation of segment %d failed: %s", batch.start_index, outcome)
                continue
            if 0 in outcome:
                found[batch.start_index] = outcome[0]
    return found


async def request_directions(
    client: CompletionClient,
    batch: Batch,
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    deadline: Optional[float] = None,
) -> dict[int, Direction]:
    """Ask the completion service for directions on one batch.

    Segments are numbered by their position in the batch; the returned map
    is keyed the same way.  Raises ``CompletionError`` on failure or when
    *deadline* runs out.
    """
    content = await complete_by(client, CompletionRequest(
        system_prompt=_SYSTEM_PROMPT,
        user_prompt=build_user_prompt(batch.segments, scene, characters),
        max_output_tokens=3000,
        temperature=0.7,
    ), deadline)
    directions = parse_directions(content)
    if not directions:
        raise CompletionError("no valid directions in response")
    return {d.index: d for d in directions if 0 <= d.index < len(batch)}


def build_user_prompt(
    segments,
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    numbering: str = "local",
) -> str:
    """Render the direction prompt.

    *numbering* is ``"local"`` (0..n-1 within the list) or ``"global"``
    (each segment's own index).
    """
    items = []
    for pos, s in enumerate(segments):
        item = {
            "index": pos if numbering == "local" else s.index,
            "speaker": s.speaker,
            "type": s.kind,
            "text": s.text[:_MAX_TEXT_CHARS],
        }
        if s.attribution:
            item["attribution"] = s.attribution
        if s.upstream_emotion:
            item["upstream_emotion"] = s.upstream_emotion
        items.append(item)

    speakers = {s.speaker for s in segments if not s.is_narrator}
    cast = [
        {"name": p.name, "role": p.role, "age_group": p.age_group}
        for name, p in characters.items() if name in speakers
    ]
    return _USER_TEMPLATE.format(
        title=scene.title,
        genre=scene.genre or "general fiction",
        mood=scene.mood or "neutral",
        audience=scene.audience,
        scene_description=scene.scene_description or "(none)",
        characters=json.dumps(cast, indent=2),
        segments=json.dumps(items, indent=2),
    )


def _first_available(*values: Optional[float]) -> float:
    for value in values:
        if value is not None:
            return float(value)
    return 0.5


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
