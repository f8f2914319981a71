from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffConfig:
    min_delay_s: float = 1.0
    max_delay_s: float = 300.0
    factor: float = 2.0
    jitter: bool = True


class Backoff:
    """Exponential backoff: ``min * factor**attempt`` capped at ``max``.

    With jitter the delay is drawn uniformly between ``min`` and that value.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        rand_fn: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or BackoffConfig()
        self._rand = rand_fn
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def duration(self) -> float:
        """Delay before the next retry; each call advances the schedule."""
        cfg = self._config
        try:
            grown = cfg.min_delay_s * cfg.factor**self._attempt
        except OverflowError:
            grown = cfg.max_delay_s
        ceiling = min(cfg.max_delay_s, grown)
        self._attempt += 1
        if not cfg.jitter or ceiling <= cfg.min_delay_s:
            return float(ceiling)
        return float(cfg.min_delay_s + self._rand() * (ceiling - cfg.min_delay_s))

    def reset(self) -> None:
        self._attempt = 0


async def wait_for_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds; return True as soon as ``stop_event`` is set."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, timeout))
    except asyncio.TimeoutError:
        return False
    return True
