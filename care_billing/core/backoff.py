"""
Exponential backoff shared by failed-charge retries and outbox delivery.
"""
from datetime import datetime, timedelta


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    backoff = base_seconds * 2**retry_count, capped at max_backoff_seconds.

    retry_count is zero-based (the first retry waits base_seconds). Large
    counts short-circuit to the cap instead of computing huge powers.
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    retry_count = max(retry_count, 0)
    # smallest n with base * 2**n >= max
    ceiling_multiplier = -(-max_backoff_seconds // base_seconds)
    saturation = (ceiling_multiplier - 1).bit_length()
    if retry_count >= saturation:
        return max_backoff_seconds

    return min(base_seconds << retry_count, max_backoff_seconds)


def next_attempt_at(
    now: datetime,
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> datetime:
    return now + timedelta(
        seconds=calculate_backoff_seconds(
            retry_count,
            base_seconds=base_seconds,
            max_backoff_seconds=max_backoff_seconds,
        )
    )
