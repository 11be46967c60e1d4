"""
Token buffer between the text-generation stream and the synthesizer.

Generated tokens arrive a few characters at a time. Sending each one to the
synthesizer hurts prosody; waiting for whole responses hurts latency. The
buffer flushes on sentence punctuation or size, and otherwise after a short
quiet period since the last token.
"""

import asyncio
import logging
import re
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Sentence boundary at the end of the buffer: .!? optionally followed by whitespace
SENTENCE_END_PATTERN = re.compile(r'[.!?]\s*$')


class TokenBuffer:
    """
    Accumulates generated tokens and flushes them to the synthesizer.

    Every send is gated by ``can_send`` (agent still speaking, synthesis
    still open). Once the gate closes, pushes and flushes are discarded.
    """

    def __init__(
        self,
        send_text: Callable[[str], None],
        can_send: Callable[[], bool],
        flush_threshold_chars: int = 30,
        flush_delay_ms: int = 30,
    ):
        """
        Args:
            send_text: Synthesizer input; receives each flushed unit, then ""
                as the end-of-input sentinel
            can_send: Gate evaluated before every push and flush
            flush_threshold_chars: Flush once the buffer is longer than this
            flush_delay_ms: Debounced flush delay since the last token
        """
        self.send_text = send_text
        self.can_send = can_send
        self.flush_threshold_chars = flush_threshold_chars
        self.flush_delay_ms = flush_delay_ms

        self._buffer = ""
        self._flush_task: Optional[asyncio.Task] = None
        self._finished = False
        self.flushed_chunks = 0
        self.dropped_tokens = 0

    @property
    def text(self) -> str:
        """Current unflushed content."""
        return self._buffer

    def is_empty(self) -> bool:
        return not self._buffer

    def is_finished(self) -> bool:
        return self._finished

    def push(self, token: str) -> None:
        """
        Append a token and flush now or reschedule the debounced flush.

        Args:
            token: Next fragment from the generation stream
        """
        if not token:
            return

        if self._finished:
            logger.warning(f"Token after end of input - dropping: '{token[:30]}'")
            self.dropped_tokens += 1
            return

        if not self.can_send():
            logger.warning(f"Synthesis no longer active - dropping token: '{token[:30]}'")
            self.dropped_tokens += 1
            return

        self._buffer += token

        if self._should_flush_now():
            self._cancel_flush_timer()
            self.flush()
        else:
            self._schedule_flush()

    def flush(self) -> bool:
        """
        Send the entire buffer as one unit and clear it.

        Returns:
            True if text was sent, False if the buffer was empty or gated
        """
        if not self._buffer:
            return False

        if not self.can_send():
            logger.warning(
                f"Synthesis no longer active - discarding {len(self._buffer)} buffered chars"
            )
            self._buffer = ""
            return False

        text = self._buffer
        self._buffer = ""
        self.flushed_chunks += 1
        logger.debug(f"Flushing {len(text)} chars to synthesizer: '{text[:40]}'")
        self.send_text(text)
        return True

    def finish(self) -> bool:
        """
        Generation ended: flush whatever is left, then send the sentinel.

        Returns:
            True if the end-of-input sentinel was sent
        """
        if self._finished:
            return False

        self._cancel_flush_timer()
        self.flush()
        self._finished = True

        if not self.can_send():
            logger.warning("Synthesis no longer active - skipping end-of-input sentinel")
            return False

        self.send_text("")
        logger.debug(f"Token buffer finished after {self.flushed_chunks} chunks")
        return True

    def clear(self) -> None:
        """Drop buffered content and any pending flush."""
        self._cancel_flush_timer()
        if self._buffer:
            logger.debug(f"Clearing {len(self._buffer)} buffered chars")
        self._buffer = ""

    def _should_flush_now(self) -> bool:
        return (
            SENTENCE_END_PATTERN.search(self._buffer) is not None
            or len(self._buffer) > self.flush_threshold_chars
        )

    def _schedule_flush(self) -> None:
        self._cancel_flush_timer()
        self._flush_task = asyncio.create_task(self._delayed_flush())

    def _cancel_flush_timer(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None

    async def _delayed_flush(self) -> None:
        try:
            await asyncio.sleep(self.flush_delay_ms / 1000.0)
        except asyncio.CancelledError:
            return
        self._flush_task = None
        self.flush()

    def __repr__(self) -> str:
        return (
            f"TokenBuffer(buffered={len(self._buffer)}, flushed={self.flushed_chunks}, "
            f"finished={self._finished})"
        )
