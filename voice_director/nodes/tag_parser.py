"""Tag Parser.

State-machine scanner that turns ``[CHAR:Name]...[/CHAR]`` tagged prose into
ordered narrator / dialogue segments.

States:
- ``outside_tag``: accumulating narration.
- ``in_dialogue``: an open tag was seen; waiting for its close tag.
- ``error_recovery``: malformed markup (nested open, unclosed open) was hit;
  the pending open tag and everything after it fall back into narration.

Stray close tags and open tags with an empty name never leave
``outside_tag``: their literal text stays part of the surrounding narration.
The parser never raises; use ``tag_validator`` to report problems.
"""

from __future__ import annotations

import logging
import re

from ..models import KIND_DIALOGUE, KIND_NARRATOR, NARRATOR, Segment
from ..timing import timed_node

log = logging.getLogger(__name__)

_TAG = re.compile(r"\[CHAR:(?P<name>[^\]]*)\]|(?P<close>\[/CHAR\])")
_OPEN_TAG = re.compile(r"\[CHAR:[^\]]*\]")
_CLOSE_TAG = re.compile(r"\[/CHAR\]")

OUTSIDE_TAG = "outside_tag"
IN_DIALOGUE = "in_dialogue"
ERROR_RECOVERY = "error_recovery"


@timed_node("tag_parser", "programmatic")
def parse_tagged_prose(prose) -> list[Segment]:
    """Split *prose* into segments in source order.

    Indices are assigned sequentially over emitted segments only; an empty
    dialogue span is dropped without consuming an index.
    """
    if not prose or not isinstance(prose, str):
        log.warning("Tag parser: empty or invalid prose input")
        return []

    segments: list[Segment] = []
    state = OUTSIDE_TAG
    narration_start = 0
    pending = None  # the open-tag match while in_dialogue
    recovered = 0

    for m in _TAG.finditer(prose):
        is_open = m.group("close") is None

        if state == IN_DIALOGUE:
            if is_open:
                state = ERROR_RECOVERY
            else:
                _emit(segments, KIND_NARRATOR, NARRATOR, prose[narration_start:pending.start()])
                speaker = pending.group("name").strip()
                if not _emit(segments, KIND_DIALOGUE, speaker, prose[pending.end():m.start()]):
                    log.warning("Tag parser: empty dialogue for %s, skipped", speaker)
                narration_start = m.end()
                pending = None
                state = OUTSIDE_TAG
                continue

        if state == ERROR_RECOVERY:
            # The abandoned open tag stays inside the narration buffer.
            log.debug("Tag parser: recovering from unclosed tag at %d", pending.start())
            recovered += 1
            pending = None
            state = OUTSIDE_TAG

        if is_open and m.group("name").strip():
            pending = m
            state = IN_DIALOGUE
        else:
            log.debug("Tag parser: stray tag %r at %d kept as narration", m.group(0), m.start())

    if state == IN_DIALOGUE:
        state = ERROR_RECOVERY
        log.debug("Tag parser: unclosed tag at %d absorbed into narration", pending.start())
        recovered += 1
    _emit(segments, KIND_NARRATOR, NARRATOR, prose[narration_start:])

    dialogue = sum(1 for s in segments if s.kind == KIND_DIALOGUE)
    log.info(
        "Tag parser produced %d segments (%d dialogue, %d narrator, %d recovered tags)",
        len(segments), dialogue, len(segments) - dialogue, recovered,
    )
    return segments


def _emit(segments: list[Segment], kind: str, speaker: str, raw: str) -> bool:
    text = raw.strip()
    if not text:
        return False
    segments.append(Segment(index=len(segments), kind=kind, speaker=speaker, text=text))
    return True


def extract_speakers(prose) -> list[str]:
    """Unique speaker names in order of first appearance."""
    if not prose or not isinstance(prose, str):
        return []
    speakers: list[str] = []
    for m in _TAG.finditer(prose):
        if m.group("close") is not None:
            continue
        name = m.group("name").strip()
        if name and name not in speakers:
            speakers.append(name)
    return speakers


def has_character_tags(prose) -> bool:
    if not prose or not isinstance(prose, str):
        return False
    return _OPEN_TAG.search(prose) is not None


def strip_tags(prose) -> str:
    """Remove all tags and collapse whitespace, for narrator-only rendering."""
    if not prose or not isinstance(prose, str):
        return ""
    text = _OPEN_TAG.sub("", prose)
    text = _CLOSE_TAG.sub("", text)
    return re.sub(r"\s+", " ", text).strip()
