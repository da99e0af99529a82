from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 0.5,
    factor: float = 2.0,
    cap: float = 30.0,
    jitter: float = 0.25,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    Grows by ``factor`` per attempt from ``base``, never exceeds ``cap``, and
    adds up to ``jitter`` seconds so concurrent retries spread out.
    """
    delay = min(cap, base * factor ** max(attempt - 1, 0))
    return delay + random.uniform(0, jitter)
