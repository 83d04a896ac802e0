"""
Progress Estimator

The local segmentation call offers no progress callback, so progress is
synthesized on a timer: +3 per tick below 30%, +1 per tick after that,
capped at 90% while the call is pending. Resolution forces 100%, and a
decay timer drops it back to 0 shortly after.
"""

import asyncio
from typing import Callable, Optional

from src.core.config import settings
from src.core.logging import get_logger

logger = get_logger(__name__)

FAST_PHASE_LIMIT = 30
FAST_STEP = 3
SLOW_STEP = 1


def next_percent(percent: int, cap: int = 90) -> int:
    """Value emitted on the tick after ``percent``."""
    if percent >= cap:
        return percent
    step = FAST_STEP if percent < FAST_PHASE_LIMIT else SLOW_STEP
    return min(cap, percent + step)


class ProgressEstimator:
    """
    Cancellable periodic task that emits estimated progress.

    Usage:
        estimator = ProgressEstimator(on_progress)
        async with estimator:
            await long_running_call()
        estimator.schedule_reset()
    """

    def __init__(
        self,
        on_progress: Callable[[int], None],
        interval: Optional[float] = None,
        cap: Optional[int] = None,
        decay_seconds: Optional[float] = None
    ):
        self.on_progress = on_progress
        self.interval = interval if interval is not None else settings.PROGRESS_TICK_SECONDS
        self.cap = cap if cap is not None else settings.PROGRESS_CAP
        self.decay_seconds = (
            decay_seconds if decay_seconds is not None else settings.PROGRESS_DECAY_SECONDS
        )
        self.percent = 0
        self._ticker: Optional[asyncio.Task] = None
        self._decay: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> asyncio.Task:
        """Start ticking from 0. Returns the ticker task."""
        if self.running:
            return self._ticker
        self._cancel_decay()
        self.percent = 0
        self._ticker = asyncio.create_task(self._tick())
        return self._ticker

    async def _tick(self):
        while True:
            await asyncio.sleep(self.interval)
            value = next_percent(self.percent, self.cap)
            if value != self.percent:
                self.percent = value
                self.on_progress(value)

    def stop(self, final: Optional[int] = 100):
        """Cancel the ticker; emit ``final`` unless it is None."""
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if final is not None:
            self.percent = final
            self.on_progress(final)

    def schedule_reset(self) -> asyncio.Task:
        """Drop progress back to 0 after the decay delay."""
        self._cancel_decay()
        self._decay = asyncio.create_task(self._reset_later())
        return self._decay

    async def _reset_later(self):
        await asyncio.sleep(self.decay_seconds)
        self.percent = 0
        self.on_progress(0)

    def _cancel_decay(self):
        if self._decay is not None:
            self._decay.cancel()
            self._decay = None

    def cancel(self):
        """Stop every timer without emitting anything."""
        self.stop(final=None)
        self._cancel_decay()

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is asyncio.CancelledError:
            self.cancel()
        else:
            self.stop(final=100)
        return False
