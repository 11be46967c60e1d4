"""
Collaborator contracts consumed by the turn orchestrator.

Concrete implementations live in stt/, llm/ and tts/; tests supply fakes.
"""

from typing import Awaitable, Callable, Protocol


OnTranscript = Callable[[str], Awaitable[None]]
OnToken = Callable[[str], None]
OnAudioChunk = Callable[[bytes], Awaitable[None]]
OnSignal = Callable[[], Awaitable[None]]


class Recognizer(Protocol):
    """Streaming speech recognizer fed with 16-bit PCM audio."""

    async def connect(self) -> bool:
        """Open the stream. Returns False if the connection failed."""
        ...

    def write(self, pcm: bytes) -> None:
        """Queue audio for recognition. Never blocks."""
        ...

    async def close(self) -> None:
        ...


class TextGenerator(Protocol):
    """Streaming text generation."""

    async def generate(self, prompt: str, on_token: OnToken) -> None:
        """
        Stream a response to ``prompt``.

        Tokens are delivered in generation order. Returns on completion,
        raises on failure.
        """
        ...


class Synthesizer(Protocol):
    """Streaming text-to-speech session."""

    async def connect(self) -> None:
        """Start connecting in the background. Returns immediately."""
        ...

    def send_text(self, text: str) -> None:
        """Queue text in send order. An empty string ends the input."""
        ...

    async def close(self) -> None:
        """Release the session. Safe to call more than once."""
        ...


RecognizerFactory = Callable[[OnTranscript, OnTranscript], Recognizer]
SynthesizerFactory = Callable[[OnAudioChunk, OnSignal, OnSignal], Synthesizer]
