"""Unbounded timer built on the event loop's bounded call_later primitive.

A single logical deferred action whose delay may exceed MAX_DELAY is armed
as a chain of bounded segments. The timer owns exactly one live handle at
any time and replaces it on every re-arm, so cancel() always hits the
segment that is currently waiting.
"""

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Largest delay the classic millisecond timer primitive can represent
# (2**31 - 1 ms, about 24.8 days)
MAX_DELAY = 0x7FFFFFFF / 1000


class TimerState(Enum):
    IDLE = "idle"
    ARMED_SINGLE = "armed_single"
    ARMED_CHAINED = "armed_chained"
    FIRED = "fired"
    CANCELLED = "cancelled"


class UnboundedTimer:
    """Fires an action once after an arbitrarily long delay.

    Example:
        timer = UnboundedTimer()
        timer.arm(60 * 60 * 24 * 90, run_job)  # 90 days, three segments
        ...
        timer.cancel()
    """

    def __init__(
        self,
        max_delay: float = MAX_DELAY,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        if max_delay <= 0:
            raise ValueError("max_delay must be positive")
        self._max_delay = max_delay
        self._loop = loop
        self._state = TimerState.IDLE
        self._remaining: float = 0.0
        self._handle: asyncio.TimerHandle | None = None
        self._action: Callable[[], Any] | None = None

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def remaining(self) -> float:
        """Delay still to be chained after the current segment."""
        return self._remaining

    @property
    def active(self) -> bool:
        return self._state in (TimerState.ARMED_SINGLE, TimerState.ARMED_CHAINED)

    def arm(self, delay: float, action: Callable[[], Any]) -> "UnboundedTimer":
        """Schedule action to run once after delay seconds."""
        if self._state is not TimerState.IDLE:
            raise RuntimeError(f"Timer already used (state={self._state.value})")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._action = action
        self._schedule(max(delay, 0.0))
        return self

    def cancel(self) -> None:
        """Stop any future firing. No-op once fired or cancelled."""
        if not self.active:
            return
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._state = TimerState.CANCELLED
        self._remaining = 0.0
        self._action = None

    def _schedule(self, delay: float) -> None:
        assert self._loop is not None
        if delay <= self._max_delay:
            self._state = TimerState.ARMED_SINGLE
            self._remaining = 0.0
            self._handle = self._loop.call_later(delay, self._fire)
        else:
            self._state = TimerState.ARMED_CHAINED
            self._remaining = delay - self._max_delay
            self._handle = self._loop.call_later(self._max_delay, self._rearm)

    def _rearm(self) -> None:
        if self._state is not TimerState.ARMED_CHAINED:
            return
        logger.debug(
            "timer_segment_elapsed", extra={"timer.remaining_s": self._remaining}
        )
        self._schedule(self._remaining)

    def _fire(self) -> None:
        if self._state is not TimerState.ARMED_SINGLE:
            return
        action = self._action
        self._state = TimerState.FIRED
        self._handle = None
        self._action = None
        if action is not None:
            action()
