"""Batch Dispatcher.

Splits a segment list into fixed-size batches, runs them in bounded
parallel windows and merges the per-batch results into one map keyed by
global segment index.

A failed, timed-out or cancelled-by-deadline batch contributes nothing and
never aborts its siblings or later windows.  Batches are not retried here;
retries belong to the completion client.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..models import Segment
from ..timing import timed_node

log = logging.getLogger(__name__)

BATCH_SIZE = 50
PARALLELISM = 3

# Receives one batch and returns {local_index: annotation}.
AnnotateBatch = Callable[["Batch"], Awaitable[dict[int, Any]]]


@dataclass(frozen=True)
class Batch:
    segments: tuple[Segment, ...]
    start_index: int

    def __len__(self) -> int:
        return len(self.segments)


def make_batches(segments: list[Segment], batch_size: int = BATCH_SIZE) -> list[Batch]:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    return [
        Batch(tuple(segments[start:start + batch_size]), start)
        for start in range(0, len(segments), batch_size)
    ]


def make_windows(batches: list[Batch], parallelism: int = PARALLELISM) -> list[list[Batch]]:
    if parallelism < 1:
        raise ValueError("parallelism must be >= 1")
    return [batches[i:i + parallelism] for i in range(0, len(batches), parallelism)]


@timed_node("batch_dispatcher", "ai")
async def dispatch(
    segments: list[Segment],
    annotate_batch: AnnotateBatch,
    batch_size: int = BATCH_SIZE,
    parallelism: int = PARALLELISM,
    deadline: Optional[float] = None,
) -> dict[int, Any]:
    """Run *annotate_batch* over every batch and merge by global index.

    *deadline* is an absolute ``time.monotonic()`` value; calls still in
    flight when it passes are cancelled and count as failed.
    """
    batches = make_batches(segments, batch_size)
    windows = make_windows(batches, parallelism)
    log.info(
        "Batch dispatcher: %d segments -> %d batch(es) in %d window(s)",
        len(segments), len(batches), len(windows),
    )

    merged: dict[int, Any] = {}
    failed = 0
    for window_no, window in enumerate(windows):
        results = await asyncio.gather(
            *(_run_batch(annotate_batch, batch, deadline) for batch in window)
        )
        for batch, local in zip(window, results):
            if local is None:
                failed += 1
                continue
            for i, annotation in local.items():
                if not isinstance(i, int) or not 0 <= i < len(batch):
                    log.debug(
                        "Batch at %d returned out-of-range index %r, ignored",
                        batch.start_index, i,
                    )
                    continue
                merged[batch.start_index + i] = annotation
        log.debug("Window %d merged, %d annotations so far", window_no, len(merged))

    log.info(
        "Batch dispatcher: %d/%d segments annotated, %d failed batch(es)",
        len(merged), len(segments), failed,
    )
    return merged


async def _run_batch(
    annotate_batch: AnnotateBatch,
    batch: Batch,
    deadline: Optional[float],
) -> Optional[dict[int, Any]]:
    try:
        if deadline is None:
            return await annotate_batch(batch)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            log.warning("Batch at %d skipped: deadline already passed", batch.start_index)
            return None
        return await asyncio.wait_for(annotate_batch(batch), timeout=remaining)
    except asyncio.TimeoutError:
        log.warning("Batch at %d (%d segments) timed out", batch.start_index, len(batch))
    except Exception:
        log.exception("Batch at %d (%d segments) failed", batch.start_index, len(batch))
    return None
