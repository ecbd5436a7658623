"""Pipeline orchestrator.

Runs the tag-segmentation and voice-direction nodes in sequence, collecting
per-node timing metrics into a structured report.

validator -> parser -> batch dispatcher -> annotation applier
          -> dialogue refinement -> narrator refinement -> emotion extractor

The only exception that escapes is ``DialogueRefinementError``; every other
failure degrades to defaults and is visible in the report's coverage counts.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import replace
from typing import Iterable, Mapping, Optional

from .models import (
    ANNOTATION_SOURCES,
    CharacterProfile,
    NodeMetrics,
    PipelineResult,
    SceneContext,
    Segment,
)
from .nodes import (
    annotation_applier,
    batch_dispatcher,
    dialogue_refinement,
    emotion_extractor,
    narrator_refinement,
    tag_parser,
    tag_validator,
)
from .nodes.completion_client import CompletionClient
from .timing import collect_metrics, record_counts

log = logging.getLogger(__name__)


async def run_pipeline(
    prose: str,
    scene: SceneContext,
    characters: Iterable[CharacterProfile] = (),
    client: Optional[CompletionClient] = None,
    batch_size: int = batch_dispatcher.BATCH_SIZE,
    parallelism: int = batch_dispatcher.PARALLELISM,
    timeout_s: Optional[float] = None,
    reannotate: bool = True,
    upstream_emotions: Optional[Mapping[int, str]] = None,
) -> PipelineResult:
    """Run the full pipeline over tagged *prose*.

    *upstream_emotions* maps segment index to an emotion assigned by an
    earlier step (e.g. ``"whispered"``); protected ones survive every pass.
    *timeout_s* bounds every remote call of the run: calls in flight when it
    runs out are cancelled and later ones are not started.
    Raises ``DialogueRefinementError`` if any dialogue line ends up without
    delivery tags.
    """
    cast = {c.name: c for c in characters}
    deadline = time.monotonic() + timeout_s if timeout_s else None

    with collect_metrics() as metrics:
        validation = tag_validator.validate_tag_balance(prose)
        if not validation.valid:
            log.warning("Tag validation found %d issue(s); parsing tolerantly",
                        len(validation.errors))

        segments = tag_parser.parse_tagged_prose(prose)
        record_counts("tag_parser", processed=len(segments), affected=len(segments))
        if upstream_emotions:
            segments = [
                replace(s, upstream_emotion=upstream_emotions[s.index])
                if s.index in upstream_emotions else s
                for s in segments
            ]

        segments = await annotate_segments(
            segments, scene, cast, client,
            batch_size=batch_size,
            parallelism=parallelism,
            deadline=deadline,
            reannotate=reannotate,
        )
        segments = await dialogue_refinement.refine_dialogue(
            segments, scene, cast, client, deadline=deadline,
        )
        segments = await narrator_refinement.refine_narration(
            segments, scene, cast, client, deadline=deadline,
        )
        segments = emotion_extractor.label_segments(segments)

    report = _build_report(metrics, segments)
    log.info(
        "Pipeline complete: %d segments | coverage=%s | total=%dms (programmatic=%dms, ai=%dms)",
        len(segments), report["coverage"],
        report["total_duration_ms"],
        report["programmatic_duration_ms"],
        report["ai_duration_ms"],
    )
    return PipelineResult(
        title=scene.title,
        segments=segments,
        validation=validation,
        report=report,
    )


async def annotate_segments(
    segments: list[Segment],
    scene: SceneContext,
    cast: Mapping[str, CharacterProfile],
    client: Optional[CompletionClient],
    batch_size: int = batch_dispatcher.BATCH_SIZE,
    parallelism: int = batch_dispatcher.PARALLELISM,
    deadline: Optional[float] = None,
    reannotate: bool = True,
) -> list[Segment]:
    """Primary pass: batched directions merged by global index, then applied."""
    annotations: dict = {}
    if client is not None and segments:

        async def annotate_batch(batch):
            return await annotation_applier.request_directions(client, batch, scene, cast)

        annotations = await batch_dispatcher.dispatch(
            segments, annotate_batch,
            batch_size=batch_size, parallelism=parallelism, deadline=deadline,
        )
        record_counts("batch_dispatcher", processed=len(segments), affected=len(annotations))
    elif client is None:
        log.info("No completion client configured, skipping primary annotation")

    return await annotation_applier.apply_annotations(
        segments, annotations, scene, cast,
        client=client, reannotate=reannotate, parallelism=parallelism, deadline=deadline,
    )


def _build_report(metrics: list[NodeMetrics], segments: list[Segment]) -> dict:
    """Build the structured report dict from node metrics and provenance."""
    total_ms = sum(m.duration_ms for m in metrics)
    prog_ms = sum(m.duration_ms for m in metrics if m.node_type == "programmatic")
    ai_ms = sum(m.duration_ms for m in metrics if m.node_type == "ai")
    sources = Counter(s.annotation_source for s in segments)

    return {
        "total_duration_ms": total_ms,
        "programmatic_duration_ms": prog_ms,
        "ai_duration_ms": ai_ms,
        "coverage": {source: sources.get(source, 0) for source in ANNOTATION_SOURCES},
        "nodes": [
            {
                "node": m.node_name,
                "type": m.node_type,
                "duration_ms": m.duration_ms,
                "segments_processed": m.segments_processed,
                "segments_affected": m.segments_affected,
            }
            for m in metrics
        ],
    }
