from __future__ import annotations

import random


def compute_backoff(
    attempt: int, base: float = 30.0, factor: float = 2.0, jitter: float = 0.1
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is the number of the attempt that just failed (1-based). The
    delay is ``base * factor ** (attempt - 1)`` plus up to ``jitter`` of that
    delay drawn uniformly at random.
    """
    delay = base * factor ** max(0, attempt - 1)
    return delay + random.uniform(0, delay * jitter)
