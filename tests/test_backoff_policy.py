from __future__ import annotations

import asyncio

import pytest

from poller.backoff import Backoff, BackoffConfig, wait_for_stop


def test_backoff_doubles_up_to_cap_without_jitter() -> None:
    backoff = Backoff(BackoffConfig(min_delay_s=1.0, max_delay_s=5.0, jitter=False))

    delays = [backoff.duration() for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert backoff.attempt == 5


def test_backoff_default_schedule() -> None:
    backoff = Backoff(BackoffConfig(jitter=False))

    delays = [backoff.duration() for _ in range(12)]

    assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
    assert delays[-1] == 300.0


def test_backoff_jitter_stays_between_min_and_ceiling() -> None:
    low = Backoff(BackoffConfig(min_delay_s=1.0, max_delay_s=300.0), rand_fn=lambda: 0.0)
    high = Backoff(BackoffConfig(min_delay_s=1.0, max_delay_s=300.0), rand_fn=lambda: 1.0)
    mid = Backoff(BackoffConfig(min_delay_s=1.0, max_delay_s=300.0), rand_fn=lambda: 0.5)

    for _ in range(3):
        low.duration()
        high.duration()
        mid.duration()

    assert low.duration() == pytest.approx(1.0)
    assert high.duration() == pytest.approx(8.0)
    assert mid.duration() == pytest.approx(4.5)


def test_backoff_reset_restarts_schedule() -> None:
    backoff = Backoff(BackoffConfig(jitter=False))
    for _ in range(4):
        backoff.duration()

    backoff.reset()

    assert backoff.attempt == 0
    assert backoff.duration() == 1.0


def test_backoff_survives_many_attempts() -> None:
    backoff = Backoff(BackoffConfig(jitter=False))
    for _ in range(5000):
        delay = backoff.duration()

    assert delay == 300.0


@pytest.mark.asyncio
async def test_wait_for_stop_times_out() -> None:
    stop = asyncio.Event()

    assert await wait_for_stop(stop, 0.01) is False


@pytest.mark.asyncio
async def test_wait_for_stop_returns_early_when_stopped() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.02, stop.set)
    started = loop.time()

    assert await wait_for_stop(stop, 300.0) is True
    assert loop.time() - started < 5.0
