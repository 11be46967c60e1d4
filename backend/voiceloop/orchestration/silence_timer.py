"""
Silence detection timer.

Debounces recognizer events into a single "user has stopped talking" signal.
Every start() supersedes the previous countdown; only the last one can fire.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SilenceTimer:
    """
    Commit timer for the user's utterance.

    Key Features:
    - Configurable quiet interval (300ms default)
    - Restart on every liveness event (cancel + reschedule in one step)
    - Runtime adjustment clamped to min/max bounds
    - Callback once the interval passes with no restart
    """

    def __init__(
        self,
        on_silence_complete: Callable[[], Awaitable[None]],
        debounce_ms: int = 300,
        min_debounce_ms: int = 50,
        max_debounce_ms: int = 3000,
    ):
        """
        Args:
            on_silence_complete: Awaited when a countdown runs out
            debounce_ms: Quiet interval before the callback fires
            min_debounce_ms: Lower bound for set_debounce_ms()
            max_debounce_ms: Upper bound for set_debounce_ms()
        """
        self.on_silence_complete = on_silence_complete
        self.min_debounce_ms = min_debounce_ms
        self.max_debounce_ms = max_debounce_ms
        self.current_debounce_ms = self._clamp(debounce_ms)

        self._task: Optional[asyncio.Task] = None
        self._is_running = False

    def start(self, override_ms: Optional[int] = None):
        """
        (Re)start the countdown.

        Args:
            override_ms: One-off duration for this countdown only
        """
        # Cancel and replace without yielding to the loop in between
        if self._task and not self._task.done():
            self._task.cancel()

        duration_ms = self.current_debounce_ms if override_ms is None else override_ms
        self._is_running = True
        self._task = asyncio.create_task(self._countdown(duration_ms))
        logger.debug(f"Silence timer armed: {duration_ms}ms")

    def cancel(self):
        """
        Stop the countdown.

        A callback that has already started is not interrupted.
        """
        if not self._is_running:
            return

        self._is_running = False
        if self._task and not self._task.done():
            self._task.cancel()
            logger.debug("Silence timer disarmed")
        self._task = None

    def is_running(self) -> bool:
        """True while a countdown is pending."""
        return self._is_running

    def get_current_debounce_ms(self) -> int:
        return self.current_debounce_ms

    def set_debounce_ms(self, debounce_ms: int):
        """
        Change the quiet interval for future countdowns.

        Args:
            debounce_ms: Requested interval, clamped to the configured bounds
        """
        previous = self.current_debounce_ms
        self.current_debounce_ms = self._clamp(debounce_ms)
        logger.info(f"Silence debounce updated: {previous}ms → {self.current_debounce_ms}ms")

    def _clamp(self, debounce_ms: int) -> int:
        return max(self.min_debounce_ms, min(debounce_ms, self.max_debounce_ms))

    async def _countdown(self, duration_ms: int):
        try:
            await asyncio.sleep(duration_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if not self._is_running:
            return

        # Detach so a start() issued from inside the callback schedules a
        # fresh countdown instead of cancelling the callback itself.
        self._is_running = False
        self._task = None

        logger.debug(f"No speech for {duration_ms}ms - committing")
        try:
            await self.on_silence_complete()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in silence callback: {e}", exc_info=True)

    def __repr__(self) -> str:
        return (
            f"SilenceTimer(debounce={self.current_debounce_ms}ms, "
            f"{'running' if self._is_running else 'idle'})"
        )
