"""Dialogue Refinement Pass.

Targets dialogue segments that still lack usable delivery tags after the
primary pass: no bracket-shaped tag at all, or only a context default that
no direction backed.  One completion call covers every flagged segment;
fixes are applied by global index.

A dialogue line must never ship without delivery information, so any
failure here raises ``DialogueRefinementError`` with the unresolved indices.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Mapping, Optional

from ..errors import CompletionError, DialogueRefinementError
from ..models import (
    SOURCE_DIALOGUE_REFINED,
    SOURCE_HEURISTIC,
    SOURCE_UNANNOTATED,
    CharacterProfile,
    SceneContext,
    Segment,
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
from .tag_canonicalizer import canonicalize

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_SYSTEM_PROMPT = (_PROMPTS_DIR / "dialogue_refine_system.txt").read_text().strip()
_USER_TEMPLATE = (_PROMPTS_DIR / "dialogue_refine_user.txt").read_text().strip()

_BRACKET_TAG = re.compile(r"\[[^\[\]]+\]")
_UNBACKED_SOURCES = frozenset({SOURCE_HEURISTIC, SOURCE_UNANNOTATED})
_CONTEXT_CHARS = 160


def needs_refinement(segment: Segment) -> bool:
    if segment.is_narrator:
        return False
    if not _BRACKET_TAG.search(segment.audio_tags):
        return True
    return segment.annotation_source in _UNBACKED_SOURCES


@timed_node("dialogue_refinement", "ai")
async def refine_dialogue(
    segments: list[Segment],
    scene: SceneContext,
    characters: Mapping[str, CharacterProfile],
    client: Optional[CompletionClient],
    deadline: Optional[float] = None,
) -> list[Segment]:
    """Fill delivery tags for flagged dialogue, or raise.

    Returns a new list; unflagged segments are passed through untouched.
    A *deadline* (``time.monotonic()`` seconds) that has passed, or runs out
    during the call, is a failure like any other.
    """
    flagged = [s for s in segments if needs_refinement(s)]
    if not flagged:
        log.info("Dialogue refinement: nothing to refine")
        record_counts("dialogue_refinement", processed=0, affected=0)
        return list(segments)

    indices = [s.index for s in flagged]
    log.info("Dialogue refinement: %d segment(s) flagged %s", len(flagged), indices)
    if client is None:
        raise DialogueRefinementError(indices, "no completion client configured")
    if deadline_passed(deadline):
        raise DialogueRefinementError(indices, "deadline exceeded")

    try:
        content = await complete_by(client, CompletionRequest(
            system_prompt=_SYSTEM_PROMPT,
            user_prompt=_build_user_prompt(flagged, segments, scene),
            max_output_tokens=1500,
            temperature=0.5,
        ), deadline)
        fixes = {d.index: d for d in parse_directions(content)}
    except CompletionError as e:
        log.error("Dialogue refinement call failed: %s", e)
        raise DialogueRefinementError(indices, str(e)) from e

    by_index = {s.index: s for s in flagged}
    refined: dict[int, Segment] = {}
    for index, fix in fixes.items():
        segment = by_index.get(index)
        if segment is None or not _BRACKET_TAG.search(fix.audio_tags):
            continue
        ctx = speaker_context(segment, scene, characters)
        resolution = Resolution(
            direction=canonicalize(fix.audio_tags, ctx.canonical, ctx.base_speed),
            raw_direction=fix.audio_tags,
            stability=fix.stability,
            style=fix.style,
            reasoning=fix.reasoning,
        )
        refined[index] = build_segment(segment, resolution, SOURCE_DIALOGUE_REFINED, ctx)

    unresolved = [i for i in indices if i not in refined]
    if unresolved:
        log.error("Dialogue refinement left %d segment(s) without tags: %s",
                  len(unresolved), unresolved)
        raise DialogueRefinementError(unresolved, "no usable fix returned")

    log.info("Dialogue refinement: refined %d/%d", len(refined), len(flagged))
    record_counts("dialogue_refinement", processed=len(flagged), affected=len(refined))
    return [refined.get(s.index, s) for s in segments]


def _build_user_prompt(flagged: list[Segment], segments: list[Segment], scene: SceneContext) -> str:
    by_index = {s.index: s for s in segments}
    items = []
    for s in flagged:
        before = by_index.get(s.index - 1)
        after = by_index.get(s.index + 1)
        item = {
            "index": s.index,
            "speaker": s.speaker,
            "text": s.text,
            "context_before": before.text[-_CONTEXT_CHARS:] if before else "",
            "context_after": after.text[:_CONTEXT_CHARS] if after else "",
        }
        if s.upstream_emotion:
            item["upstream_emotion"] = s.upstream_emotion
        items.append(item)
    return _USER_TEMPLATE.format(
        genre=scene.genre or "general fiction",
        mood=scene.mood or "neutral",
        segments=json.dumps(items, indent=2),
    )
