"""Per-stage metrics for the voice-direction pipeline.

``run_pipeline`` opens a ``collect_metrics()`` block; every stage decorated
with ``@timed_node`` inside it gets a ``NodeMetrics`` entry, in call order,
which ends up in the report's ``nodes`` list.  A stage reports how many
segments it looked at and changed with ``record_counts``, either from inside
its own body or, for undecorated steps like parsing, right after it::

    with collect_metrics() as metrics:
        segments = tag_parser.parse_tagged_prose(prose)
        record_counts("tag_parser", processed=len(segments), affected=len(segments))
        segments = await dialogue_refinement.refine_dialogue(...)
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import time
from typing import Iterator, Optional

from .models import NodeMetrics

log = logging.getLogger(__name__)

_active: contextvars.ContextVar[Optional[list[NodeMetrics]]] = contextvars.ContextVar(
    "voice_director_metrics", default=None,
)


@contextlib.contextmanager
def collect_metrics() -> Iterator[list[NodeMetrics]]:
    """Collect stage metrics for the current task into the yielded list."""
    metrics: list[NodeMetrics] = []
    token = _active.set(metrics)
    try:
        yield metrics
    finally:
        _active.reset(token)


def timed_node(name: str, node_type: str):
    """Record a stage's wall time as ``node_type`` (``"programmatic"`` or ``"ai"``).

    The entry is registered when the stage starts so ``record_counts`` calls
    made while it runs land on it.  A stage that raises is still timed.
    Outside ``collect_metrics`` nothing is recorded.
    """

    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def wrapper(*args, **kwargs):
                entry, t0 = _start(name, node_type)
                try:
                    return await fn(*args, **kwargs)
                finally:
                    _finish(entry, name, t0)

        else:

            @functools.wraps(fn)
            def wrapper(*args, **kwargs):
                entry, t0 = _start(name, node_type)
                try:
                    return fn(*args, **kwargs)
                finally:
                    _finish(entry, name, t0)

        return wrapper

    return decorator


def record_counts(name: str, processed: int, affected: int) -> None:
    """Set segment counts on the most recent entry for stage *name*, if any."""
    for entry in reversed(_active.get() or ()):
        if entry.node_name == name:
            entry.segments_processed = processed
            entry.segments_affected = affected
            return


def _start(name: str, node_type: str) -> tuple[Optional[NodeMetrics], int]:
    metrics = _active.get()
    entry = None
    if metrics is not None:
        entry = NodeMetrics(name, node_type)
        metrics.append(entry)
    return entry, time.monotonic_ns()


def _finish(entry: Optional[NodeMetrics], name: str, t0: int) -> None:
    duration_ms = (time.monotonic_ns() - t0) // 1_000_000
    log.debug("%s: %d ms", name, duration_ms)
    if entry is not None:
        entry.duration_ms = duration_ms
