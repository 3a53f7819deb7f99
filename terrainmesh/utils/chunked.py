"""Cooperative chunked execution.

Long stages are generators: each ``yield`` hands back the completed fraction
after one bounded chunk of work, and the stage result travels in
``StopIteration.value``. The helpers here drive such generators and forward
progress to a callback.
"""

import logging
from typing import Callable, Dict, Generator, Optional

logger = logging.getLogger(__name__)

ChunkedStage = Generator[float, None, object]


def iter_chunks(total: int, chunk_size: int):
    """Yield ``(start, end)`` slices covering ``range(total)``."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for start in range(0, total, chunk_size):
        yield start, min(start + chunk_size, total)


def iter_as_steps(stage: ChunkedStage, done: int, total: int):
    """Re-yield ``stage`` as steps ``done + 1, done + 2, ...`` out of ``total``.

    Lets one generator embed another with ``yield from`` while reporting a
    single overall fraction.
    """
    while True:
        try:
            next(stage)
        except StopIteration as stop:
            return stop.value
        done += 1
        yield done / total


def run_chunked(
    stage: ChunkedStage, on_progress: Optional[Callable[[float], None]] = None
):
    """Drive ``stage`` to completion and return its result."""
    while True:
        try:
            fraction = next(stage)
        except StopIteration as stop:
            return stop.value
        if on_progress:
            on_progress(fraction)


def run_interleaved(
    stages: Dict[str, ChunkedStage],
    on_progress: Optional[Callable[[str, float], None]] = None,
) -> Dict[str, object]:
    """Drive several stages round-robin, one chunk each per turn.

    The stages must not write shared mutable state.

    Args:
        stages: Generators keyed by stage name.
        on_progress: Called as ``on_progress(name, fraction)`` after every chunk.

    Returns:
        The result of every stage keyed by name.
    """
    pending = dict(stages)
    results: Dict[str, object] = {}
    while pending:
        for name in list(pending):
            try:
                fraction = next(pending[name])
            except StopIteration as stop:
                results[name] = stop.value
                del pending[name]
                logger.debug("Stage %s finished", name)
                continue
            if on_progress:
                on_progress(name, fraction)
    return results
