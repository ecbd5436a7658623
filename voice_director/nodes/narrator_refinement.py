"""Narrator Refinement Pass.

Gives flat narration a richer delivery.  A narrator segment is flagged when
its tags are empty, generically flat (only ``calm``/``measured``/``neutral``)
or its text carries emotional-intensity cues.

Small flagged sets go straight to a lexical heuristic.  Larger sets get one
completion call first and fall back to the heuristic on any failure.  This
pass never raises.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Mapping, Optional

from .. import profiles
from ..errors import CompletionError
from ..models import (
    SOURCE_HEURISTIC,
    SOURCE_NARRATOR_REFINED,
    CharacterProfile,
    SceneContext,
    Segment,
    render_tags,
)
from ..timing import record_counts, timed_node
from .annotation_applier import Resolution, build_segment, speaker_context
from .completion_client import (
    CompletionClient,
    CompletionRequest,
    complete_by,
    deadline_passed,
    parse_directions,
)
from .tag_canonicalizer import CanonicalDirection, canonicalize

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_SYSTEM_PROMPT = (_PROMPTS_DIR / "narrator_refine_system.txt").read_text().strip()
_USER_TEMPLATE = (_PROMPTS_DIR / "narrator_refine_user.txt").read_text().strip()

HEURISTIC_LIMIT = 5
BORING_TAGS = frozenset({"calm", "measured", "neutral"})

HIGH_INTENSITY = re.compile(
    r"\b(scream\w*|shriek\w*|blood\w*|explo\w+|gunshot\w*|kill\w*|dead|death|"
    r"corpse|terror|horror|agony|rage|furious|crash\w*)\b",
    re.IGNORECASE,
)
MEDIUM_INTENSITY = re.compile(
    r"\b(suddenly|trembl\w*|shadow\w*|dark\w*|heart\s+pound\w*|tears?|wept|"
    r"gasp\w*|froze|silence|whisper\w*|slowly|creep\w*)\b",
    re.IGNORECASE,
)

# Ordered: the first rule whose pattern matches the text wins.
HEURISTIC_RULES: tuple[tuple[re.Pattern, tuple[str, ...]], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), tags)
    for pattern, tags in (
        (r"\b(scream\w*|blood\w*|explo\w+|gunshot\w*|attack\w*|fight\w*|run(ning)?|fled|chase\w*|crash\w*)\b",
         ("fearful", "excited")),
        (r"\b(tears?|wept|weep\w*|sob\w*|grief|mourn\w*|funeral|lost|alone|dead|death)\b",
         ("sad", "calm")),
        (r"\b(shadow\w*|dark\w*|creep\w*|silence|silent|footsteps?|watch(ed|ing)|lurk\w*)\b",
         ("whisper", "fearful")),
        (r"\b(suddenly|without warning|gasp\w*|froze|shock\w*)\b",
         ("surprised", "excited")),
        (r"\b(rage|furious|fury|slammed|clench\w*|snarl\w*)\b",
         ("angry",)),
        (r"\b(laugh\w*|cheer\w*|celebrat\w*|danc\w*|grin\w*|delight\w*|triumph\w*)\b",
         ("excited", "calm")),
        (r"\b(gentl\w*|soft(ly)?|warm\w*|embrace\w*|kiss\w*|tender\w*)\b",
         ("calm", "whisper")),
    )
)


def needs_refinement(segment: Segment) -> bool:
    if not segment.is_narrator:
        return False
    emotions = {t for t in segment.canonical_tags if not t.startswith("pause:")}
    if not emotions or emotions <= BORING_TAGS:
        return True
    return intensity(segment.text) is not None


def intensity(text: str) -> Optional[str]:
    """``"high"``, ``"medium"`` or None, checked in that order."""
    if HIGH_INTENSITY.search(text):
        return "high"
    if MEDIUM_INTENSITY.search(text):
        return "medium"
    return None


def heuristic_tags(segment: Segment, scene: SceneContext) -> tuple[str, ...]:
    """Lexical rules, then genre narrator bias, then the scene baseline."""
    for pattern, tags in HEURISTIC_RULES:
        if pattern.search(segment.text):
            return tags
    defaults = profiles.get_voice_defaults(scene.genre, "narrator")
    if defaults is not None:
        return defaults.emotion_bias[:2]
    if scene.narrator_baseline:
        return tuple(scene.narrator_baseline)
    return ()


@timed_node("narrator_refinement", "ai")
async def refine_narration(
    segments: list[Segment],
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    client: Optional[CompletionClient] = None,
    heuristic_limit: int = HEURISTIC_LIMIT,
    deadline: Optional[float] = None,
) -> list[Segment]:
    """Return a new list with flagged narrator segments refined.

    Once *deadline* has passed every flagged segment goes to the heuristic.
    """
    flagged = [s for s in segments if needs_refinement(s)]
    if not flagged:
        log.info("Narrator refinement: nothing to refine")
        record_counts("narrator_refinement", processed=0, affected=0)
        return list(segments)

    refined: dict[int, Segment] = {}
    if len(flagged) > heuristic_limit and client is not None:
        if deadline_passed(deadline):
            log.warning("Narrator refinement: deadline passed, using heuristic")
        else:
            refined = await _refine_remote(flagged, scene, characters, client, deadline)

    remaining = [s for s in flagged if s.index not in refined]
    for segment in remaining:
        refined[segment.index] = _refine_heuristic(segment, scene, characters)

    log.info(
        "Narrator refinement: %d flagged | %d via model | %d via heuristic",
        len(flagged), len(flagged) - len(remaining), len(remaining),
    )
    record_counts("narrator_refinement", processed=len(flagged), affected=len(refined))
    return [refined.get(s.index, s) for s in segments]


async def _refine_remote(
    flagged: list[Segment],
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    client: CompletionClient,
    deadline: Optional[float] = None,
) -> dict[int, Segment]:
    items = [{"index": s.index, "text": s.text[:400]} for s in flagged]
    try:
        content = await complete_by(client, CompletionRequest(
            system_prompt=_SYSTEM_PROMPT,
            user_prompt=_USER_TEMPLATE.format(
                genre=scene.genre or "general fiction",
                mood=scene.mood or "neutral",
                audience=scene.audience,
                segments=json.dumps(items, indent=2),
            ),
            max_output_tokens=1500,
            temperature=0.2,
        ), deadline)
        fixes = {d.index: d for d in parse_directions(content)}
    except CompletionError as e:
        log.warning("Narrator refinement call failed, using heuristic: %s", e)
        return {}

    refined: dict[int, Segment] = {}
    for segment in flagged:
        fix = fixes.get(segment.index)
        if fix is None or not fix.audio_tags:
            continue
        ctx = speaker_context(segment, scene, characters)
        resolution = Resolution(
            direction=canonicalize(fix.audio_tags, ctx.canonical, ctx.base_speed),
            raw_direction=fix.audio_tags,
            stability=fix.stability,
            style=fix.style,
            reasoning=fix.reasoning,
        )
        refined[segment.index] = build_segment(segment, resolution, SOURCE_NARRATOR_REFINED, ctx)
    return refined


def _refine_heuristic(
    segment: Segment,
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
) -> Segment:
    ctx = speaker_context(segment, scene, characters)
    tags = heuristic_tags(segment, scene)
    direction: CanonicalDirection = canonicalize(
        render_tags(tags) or None, ctx.canonical, ctx.base_speed,
    )
    resolution = Resolution(direction=direction, raw_direction=render_tags(tags) or None)
    return build_segment(segment, resolution, SOURCE_HEURISTIC, ctx)
