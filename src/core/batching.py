"""Windowed "is one of" lookups.

The store caps membership filters at IN_FILTER_LIMIT values, so any id list
of unknown length must be split into windows, queried once per window, and
the results merged.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterator, Sequence, TypeVar

from src.data.db import IN_FILTER_LIMIT

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int = IN_FILTER_LIMIT) -> Iterator[list[T]]:
    """Yield consecutive windows of at most ``size`` items."""
    if size < 1:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def query_in_chunks(
    ids: Sequence[T],
    fetch: Callable[[list[T]], list[R]],
    size: int = IN_FILTER_LIMIT,
) -> list[R]:
    """Run ``fetch`` once per window of ``ids`` and concatenate the results."""
    results: list[R] = []
    windows = 0
    for window in chunked(ids, size):
        results.extend(fetch(window))
        windows += 1
    if windows > 1:
        logger.debug("Resolved %d ids in %d windows", len(ids), windows)
    return results
