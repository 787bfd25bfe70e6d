from __future__ import annotations

import time
from typing import Callable


class MinIntervalThrottle:
    """Keeps consecutive calls at least `min_interval_seconds` apart.

    `wait()` runs before each call; the first call is never delayed.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_seconds = max(min_interval_seconds, 0.0)
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None

    def wait(self) -> float:
        delay = 0.0
        if self._last_call is not None:
            elapsed = self._clock() - self._last_call
            delay = self.min_interval_seconds - elapsed
            if delay > 0:
                self._sleep(delay)
            else:
                delay = 0.0
        self._last_call = self._clock()
        return delay
