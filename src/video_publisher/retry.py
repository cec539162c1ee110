"""Exponential backoff shared by the chunk retry loop and job redelivery."""

from typing import Optional


def backoff_delay(
    attempt: int,
    base_ms: int,
    max_ms: int,
    retry_after_s: Optional[float] = None,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    base, 2*base, 4*base, ... capped at max_ms. A server-provided Retry-After
    is honoured when it asks for a longer wait.
    """
    delay_ms = min(base_ms * (2 ** max(attempt - 1, 0)), max_ms)
    delay_s = delay_ms / 1000.0
    if retry_after_s is not None and retry_after_s > delay_s:
        return float(retry_after_s)
    return delay_s
