"""Tests for backoff math and cooperative cancellation."""

import random

import pytest

from mergegate.execution_engine.errors import MergeCancelled
from mergegate.execution_engine.timing import CancellationToken, jittered, next_interval, wait

from .conftest import FakeClock


def test_next_interval_grows_and_caps():
    intervals = [10.0]
    for _ in range(8):
        intervals.append(next_interval(intervals[-1]))
    assert intervals[:4] == [10.0, 15.0, 22.5, 33.75]
    assert intervals[-1] == 120.0
    assert all(i <= 120.0 for i in intervals)


def test_jitter_stays_within_bounds():
    rng = random.Random(7)
    samples = [jittered(10.0, 0.2, rng) for _ in range(200)]
    assert all(8.0 <= s <= 12.0 for s in samples)
    assert len(set(samples)) > 1


def test_zero_jitter_is_exact():
    assert jittered(10.0, 0.0) == 10.0


@pytest.mark.asyncio
async def test_wait_without_token_sleeps_on_clock():
    clock = FakeClock()
    await wait(clock, 30.0, None)
    assert clock.now == 30.0


@pytest.mark.asyncio
async def test_cancelled_token_raises_before_sleeping():
    clock = FakeClock()
    token = CancellationToken()
    token.cancel("operator abort")

    with pytest.raises(MergeCancelled) as exc:
        await wait(clock, 30.0, token)

    assert exc.value.reason == "merge cancelled: operator abort"
    assert clock.sleeps == []


def test_first_cancel_reason_wins():
    token = CancellationToken()
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "first"
