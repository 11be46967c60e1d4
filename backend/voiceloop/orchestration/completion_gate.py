"""
Turn completion gate.

A turn ends only when both the generation stream and the synthesizer have
finished. The two finish independently; the synthesizer may also never
report completion, so a fallback timer armed at generation end forces it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class TurnFlags:
    """Progress flags for one turn."""
    generation_done: bool = False
    synthesis_done: bool = False
    first_audio_sent: bool = False


class TurnCompletionGate:
    """
    Joins generation-done and synthesis-done into one completion event.

    ``on_ready`` is invoked whenever the gate may have become ready; the
    caller re-validates and uses claim() to complete at most once.
    """

    def __init__(
        self,
        on_ready: Callable[[], Awaitable[None]],
        fallback_timeout_ms: int = 5000,
        flags: Optional[TurnFlags] = None,
    ):
        self.on_ready = on_ready
        self.fallback_timeout_ms = fallback_timeout_ms
        self.flags = flags or TurnFlags()

        self._claimed = False
        self._fallback_task: Optional[asyncio.Task] = None
        self.fallback_fired = False

    def mark_generation_done(self) -> None:
        """Record end of the generation stream and arm the fallback timer."""
        if self.flags.generation_done:
            return
        self.flags.generation_done = True
        logger.debug("Generation done")

        if not self.flags.synthesis_done and not self._claimed:
            self._arm_fallback()

    def mark_synthesis_done(self) -> None:
        """Record end of synthesis and disarm the fallback timer."""
        if self.flags.synthesis_done:
            return
        self.flags.synthesis_done = True
        logger.debug("Synthesis done")
        self._disarm_fallback()

    def is_ready(self) -> bool:
        return self.flags.generation_done and self.flags.synthesis_done

    def is_claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        """
        Take ownership of completion.

        Returns:
            True exactly once, the first time it is called while ready
        """
        if self._claimed or not self.is_ready():
            return False
        self._claimed = True
        self._disarm_fallback()
        return True

    def cancel(self) -> None:
        """Disarm everything; the gate can no longer complete."""
        self._claimed = True
        self._disarm_fallback()

    def _arm_fallback(self) -> None:
        self._disarm_fallback()
        self._fallback_task = asyncio.create_task(self._run_fallback())

    def _disarm_fallback(self) -> None:
        if self._fallback_task and not self._fallback_task.done():
            if self._fallback_task is not asyncio.current_task():
                self._fallback_task.cancel()
        self._fallback_task = None

    async def _run_fallback(self) -> None:
        try:
            await asyncio.sleep(self.fallback_timeout_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if self._claimed or self.flags.synthesis_done:
            return

        logger.warning(
            f"No synthesis completion {self.fallback_timeout_ms}ms after generation ended - "
            f"forcing completion"
        )
        self.fallback_fired = True
        self.flags.synthesis_done = True
        self._fallback_task = None
        await self.on_ready()

    def __repr__(self) -> str:
        return (
            f"TurnCompletionGate(generation_done={self.flags.generation_done}, "
            f"synthesis_done={self.flags.synthesis_done}, claimed={self._claimed})"
        )
