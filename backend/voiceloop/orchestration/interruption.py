"""
Barge-in classification for transcripts that arrive while the agent speaks.

The recognizer keeps listening during agent speech, so echo, backchannels
and hesitations reach us as final transcripts too. Only "meaningful" text
may cut the agent off.
"""

import logging
from typing import FrozenSet, Iterable, Optional

logger = logging.getLogger(__name__)


DEFAULT_BACKCHANNEL_TOKENS: FrozenSet[str] = frozenset({
    "uh", "uhh", "um", "umm", "ah", "hmm", "mm", "mhm", "uh-huh",
    "like", "yeah", "yes", "okay", "ok", "right", "sure",
})


class InterruptionDetector:
    """
    Decides whether a final transcript is a genuine interruption.

    A transcript is meaningful iff, after trimming and lowercasing, it is
    longer than ``min_chars`` and is not itself a backchannel token.
    """

    def __init__(
        self,
        min_chars: int = 3,
        backchannel_tokens: Optional[Iterable[str]] = None,
    ):
        self.min_chars = min_chars
        tokens = DEFAULT_BACKCHANNEL_TOKENS if backchannel_tokens is None else backchannel_tokens
        self.backchannel_tokens: FrozenSet[str] = frozenset(t.strip().lower() for t in tokens)

    @staticmethod
    def normalize(text: str) -> str:
        return (text or "").strip().lower()

    def is_meaningful(self, text: str) -> bool:
        """
        Classify a transcript.

        Args:
            text: Raw final transcript

        Returns:
            True if the transcript should interrupt the agent
        """
        normalized = self.normalize(text)

        if len(normalized) <= self.min_chars:
            logger.debug(f"Transcript too short to interrupt: '{normalized}'")
            return False

        if normalized in self.backchannel_tokens:
            logger.debug(f"Backchannel transcript ignored: '{normalized}'")
            return False

        return True

    def __repr__(self) -> str:
        return f"InterruptionDetector(min_chars={self.min_chars}, tokens={len(self.backchannel_tokens)})"
