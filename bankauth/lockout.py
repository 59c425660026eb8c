"""Exponential backoff policy for failed login attempts."""
from __future__ import annotations

from datetime import timedelta


def lockout_duration(
    failure_count: int,
    *,
    threshold: int = 5,
    base: timedelta = timedelta(minutes=1),
    maximum: timedelta = timedelta(hours=1),
) -> timedelta:
    """Return how long an account stays locked after ``failure_count`` failures.

    Below ``threshold`` there is no lock. Reaching the threshold locks for
    ``base``; each further consecutive failure doubles the duration until it
    reaches ``maximum``.
    """

    if failure_count < threshold or threshold <= 0:
        return timedelta(0)
    exponent = failure_count - threshold
    # 2**32 minutes already exceeds any sane cap
    if exponent >= 32:
        return maximum
    return min(base * (2**exponent), maximum)
