"""Tests for the exponential lockout policy."""
from __future__ import annotations

from datetime import timedelta

import pytest

from bankauth.lockout import lockout_duration


@pytest.mark.parametrize("failures", [0, 1, 4])
def test_no_lock_below_threshold(failures: int) -> None:
    assert lockout_duration(failures) == timedelta(0)


def test_duration_doubles_per_failure_after_threshold() -> None:
    assert lockout_duration(5) == timedelta(minutes=1)
    assert lockout_duration(6) == timedelta(minutes=2)
    assert lockout_duration(7) == timedelta(minutes=4)
    assert lockout_duration(10) == timedelta(minutes=32)


def test_duration_is_capped() -> None:
    assert lockout_duration(11) == timedelta(hours=1)
    assert lockout_duration(500) == timedelta(hours=1)


def test_custom_policy() -> None:
    duration = lockout_duration(3, threshold=3, base=timedelta(seconds=30), maximum=timedelta(minutes=5))
    assert duration == timedelta(seconds=30)
    assert lockout_duration(20, threshold=3, base=timedelta(seconds=30), maximum=timedelta(minutes=5)) == timedelta(
        minutes=5
    )
