"""Tests for the retry backoff policy."""

import pytest

from jobctl.backoff import delay


def test_doubles_per_attempt():
    assert [delay(n) for n in range(5)] == [1, 2, 4, 8, 16]


def test_capped_at_sixty_seconds():
    assert delay(6) == 60
    assert delay(1000) == 60


def test_non_decreasing_and_bounded():
    delays = [delay(n) for n in range(200)]
    assert delays == sorted(delays)
    assert max(delays) <= 60


def test_custom_multiplier():
    assert delay(2, multiplier=3) == 9
    assert delay(2000, multiplier=2.5) == 60


def test_negative_attempts_rejected():
    with pytest.raises(ValueError):
        delay(-1)
