"""Exponential backoff for failed jobs."""

DEFAULT_MULTIPLIER = 2
MAX_DELAY_SECONDS = 60


def delay(attempts: int, multiplier: float = DEFAULT_MULTIPLIER, cap: float = MAX_DELAY_SECONDS) -> float:
    """Seconds to wait before a job with ``attempts`` failures is claimable again.

    ``min(multiplier ** attempts, cap)``: 1, 2, 4, 8, ... capped at 60 by default.
    """
    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    try:
        return min(multiplier ** attempts, cap)
    except OverflowError:
        return cap
