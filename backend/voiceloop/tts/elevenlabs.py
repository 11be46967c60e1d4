"""
ElevenLabs streaming TTS client.

One synthesizer instance is one stream-input WebSocket session: text is
pushed incrementally as the response is generated and audio comes back as
soon as ElevenLabs has enough context to speak.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Awaitable, Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from voiceloop.config import settings

logger = logging.getLogger(__name__)


class SynthesisError(Exception):
    """The synthesis session could not be started."""


class ElevenLabsSynthesizer:
    """
    Manages one streaming session with ElevenLabs for TTS.

    Features:
    - connect() returns immediately; text sent before the socket opens is queued
    - Send order preserved through a single sender loop
    - on_chunk_complete after the first audio frame
    - on_finished shortly after ElevenLabs reports isFinal
    - Idempotent close()
    """

    def __init__(
        self,
        on_audio_chunk: Callable[[bytes], Awaitable[None]],
        on_chunk_complete: Optional[Callable[[], Awaitable[None]]] = None,
        on_finished: Optional[Callable[[], Awaitable[None]]] = None,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
        finish_delay_ms: int = 300,
    ):
        self.on_audio_chunk = on_audio_chunk
        self.on_chunk_complete = on_chunk_complete
        self.on_finished = on_finished
        self.api_key = api_key or settings.elevenlabs_api_key
        self.voice_id = voice_id or settings.elevenlabs_voice_id
        self.model_id = model_id or settings.elevenlabs_model_id
        self.finish_delay_ms = finish_delay_ms

        self._ws: Optional[ClientConnection] = None
        self._text_queue: asyncio.Queue = asyncio.Queue()
        self._is_open = False
        self._closed = False
        self._input_ended = False
        self._audio_chunk_count = 0

        self._run_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._finish_task: Optional[asyncio.Task] = None

    def _build_url(self) -> str:
        return (
            f"wss://api.elevenlabs.io/v1/text-to-speech/{self.voice_id}/stream-input"
            f"?model_id={self.model_id}"
        )

    async def connect(self):
        """
        Start the session in the background.

        Raises:
            SynthesisError: No API key configured
        """
        if not self.api_key:
            raise SynthesisError("ELEVENLABS_API_KEY is not set")
        if self._run_task is not None:
            return

        logger.info("🎙️ Creating ElevenLabs TTS connection...")
        self._run_task = asyncio.create_task(self._run())

    def send_text(self, text: str):
        """
        Queue text for synthesis. An empty string ends the input.

        Args:
            text: Next piece of the response, in send order
        """
        if self._closed:
            logger.warning("Attempted to send text to closed TTS connection")
            return
        if self._input_ended:
            logger.warning("Attempted to send text after end of input")
            return

        if text == "":
            self._input_ended = True
        elif not self._is_open:
            logger.debug(f"Queueing text ({len(text)} chars): '{text[:50]}'")

        self._text_queue.put_nowait(text)

    async def close(self):
        """Release the session. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        was_open = self._is_open
        self._is_open = False

        # The socket may exist before the config frame has gone out
        if self._ws is not None:
            try:
                if was_open and not self._input_ended:
                    await self._ws.send(json.dumps({"text": ""}))
                await self._ws.close()
            except WebSocketException as e:
                logger.warning(f"Error during ElevenLabs disconnect: {e}")

        current = asyncio.current_task()
        for task in (self._run_task, self._receive_task, self._finish_task):
            if task and not task.done() and task is not current:
                task.cancel()

        logger.info(f"🔚 ElevenLabs session closed ({self._audio_chunk_count} audio chunks)")

    async def _run(self):
        try:
            self._ws = await connect(
                self._build_url(),
                additional_headers={"xi-api-key": self.api_key},
            )
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to ElevenLabs: {e}")
            return

        if self._closed:
            await self._ws.close()
            return

        try:
            # Voice settings must precede any text
            await self._ws.send(json.dumps({
                "text": " ",
                "voice_settings": {
                    "stability": 0.6,
                    "similarity_boost": 0.8,
                },
                "generation_config": {
                    "chunk_length_schedule": [60, 100, 150, 200],
                },
            }))
            self._is_open = True
            logger.info("✅ ElevenLabs TTS WebSocket connected")

            self._receive_task = asyncio.create_task(self._receive_loop())
            await self._send_loop()

        except asyncio.CancelledError:
            raise
        except WebSocketException as e:
            logger.error(f"ElevenLabs WebSocket error while sending: {e}")
        finally:
            if self._closed:
                await self._ws.close()

    async def _send_loop(self):
        while not self._closed:
            text = await self._text_queue.get()
            if text == "":
                await self._ws.send(json.dumps({"text": ""}))
                logger.debug("Sent end-of-input to ElevenLabs")
                return

            await self._ws.send(json.dumps({"text": text, "try_trigger_generation": True}))
            logger.debug(f"📤 Sent text to ElevenLabs ({len(text)} chars): '{text[:50]}'")

    async def _receive_loop(self):
        try:
            async for message in self._ws:
                await self._process_message(message)
        except asyncio.CancelledError:
            logger.debug("ElevenLabs receive loop cancelled")
        except WebSocketException as e:
            if not self._closed:
                logger.error(f"ElevenLabs WebSocket error: {e}")

    async def _process_message(self, message):
        try:
            msg = json.loads(message)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Error parsing ElevenLabs message: {e}")
            return

        if msg.get("audio"):
            try:
                audio = base64.b64decode(msg["audio"])
            except (binascii.Error, ValueError) as e:
                logger.error(f"Invalid audio payload from ElevenLabs: {e}")
                return

            self._audio_chunk_count += 1
            if self._audio_chunk_count <= 3 or self._audio_chunk_count % 10 == 0:
                logger.debug(f"🔊 ElevenLabs audio chunk {self._audio_chunk_count}: {len(audio)} bytes")

            await self._invoke(self.on_audio_chunk, audio)
            if self._audio_chunk_count == 1 and self.on_chunk_complete:
                await self._invoke(self.on_chunk_complete)

        elif msg.get("error"):
            logger.error(f"ElevenLabs error: {msg['error']}")

        if msg.get("isFinal"):
            logger.info("✅ ElevenLabs generation complete")
            if self.on_finished and self._finish_task is None:
                self._finish_task = asyncio.create_task(self._notify_finished())

    async def _notify_finished(self):
        # Let the last audio frames reach the client first
        await asyncio.sleep(self.finish_delay_ms / 1000.0)
        await self._invoke(self.on_finished)

    async def _invoke(self, callback, *args):
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in synthesis callback: {e}", exc_info=True)

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def is_closed(self) -> bool:
        return self._closed
