"""
Deepgram streaming STT client.

Feeds 16-bit PCM to Deepgram's live endpoint and reports interim results as
partials and `is_final` results as finals. Turn detection is left to the
orchestrator's silence timer, so Deepgram endpointing is not used.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from voiceloop.config import settings

logger = logging.getLogger(__name__)


class DeepgramRecognizer:
    """
    Manages one streaming connection to Deepgram for real-time transcription.

    Features:
    - Interim and final transcript callbacks
    - Non-blocking write() backed by a bounded audio queue
    - Background send and receive loops
    - Transient errors are logged and the stream is left open
    """

    def __init__(
        self,
        on_partial: Callable[[str], Awaitable[None]],
        on_final: Callable[[str], Awaitable[None]],
        api_key: Optional[str] = None,
        sample_rate: Optional[int] = None,
        language: Optional[str] = None,
    ):
        """
        Initialize Deepgram recognizer.

        Args:
            on_partial: Callback for interim results
            on_final: Callback for final results
            api_key: Overrides settings.deepgram_api_key
            sample_rate: PCM sample rate in Hz (default from settings)
            language: Language code (default from settings)
        """
        self.on_partial = on_partial
        self.on_final = on_final
        self.api_key = api_key or settings.deepgram_api_key
        self.sample_rate = sample_rate or settings.stt_sample_rate
        self.language = language or settings.stt_language

        self.ws: Optional[ClientConnection] = None
        self.is_connected = False
        self.is_closing = False
        self._audio_chunks_sent = 0
        self._receive_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._audio_queue: asyncio.Queue = asyncio.Queue(maxsize=100)

    def _build_url(self) -> str:
        params = {
            "model": "nova-2",
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "channels": 1,
            "language": self.language,
            "interim_results": "true",
            "punctuate": "true",
        }
        return f"wss://api.deepgram.com/v1/listen?{urlencode(params)}"

    async def connect(self) -> bool:
        """
        Establish WebSocket connection to Deepgram.

        Returns:
            True if connection successful, False otherwise
        """
        if self.is_connected:
            logger.warning("Already connected to Deepgram")
            return True

        if not self.api_key:
            logger.error("DEEPGRAM_API_KEY is not set - speech recognition unavailable")
            return False

        try:
            self.ws = await connect(
                self._build_url(),
                additional_headers={"Authorization": f"Token {self.api_key}"},
                ping_interval=10,
                ping_timeout=5,
            )
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to Deepgram: {e}")
            return False

        self.is_connected = True
        self.is_closing = False
        self._audio_chunks_sent = 0
        logger.info(f"Connected to Deepgram ({self.sample_rate}Hz, {self.language})")

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._send_task = asyncio.create_task(self._send_loop())
        return True

    def write(self, pcm: bytes):
        """
        Queue audio chunk for sending to Deepgram.

        Args:
            pcm: Raw 16-bit PCM audio bytes (mono)
        """
        if not self.is_connected:
            logger.debug("Cannot send audio: not connected to Deepgram")
            return

        try:
            self._audio_queue.put_nowait(pcm)
        except asyncio.QueueFull:
            logger.warning("Audio queue full - dropping chunk to prevent blocking")

    async def close(self):
        """Gracefully close the Deepgram connection."""
        if self.is_closing or not self.is_connected:
            return

        self.is_closing = True
        self.is_connected = False

        if self.ws:
            try:
                await self.ws.send(json.dumps({"type": "CloseStream"}))
                await self.ws.close()
            except WebSocketException as e:
                logger.warning(f"Error during Deepgram disconnect: {e}")

        for task in (self._receive_task, self._send_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        logger.info("Disconnected from Deepgram")

    async def _send_loop(self):
        """Continuously send audio from queue to Deepgram."""
        try:
            while not self.is_closing:
                try:
                    audio_data = await asyncio.wait_for(self._audio_queue.get(), timeout=5.0)
                except asyncio.TimeoutError:
                    # Silence on the client side; keep the socket alive
                    if self.ws and self.is_connected:
                        await self.ws.send(json.dumps({"type": "KeepAlive"}))
                    continue

                if self.ws and self.is_connected:
                    await self.ws.send(audio_data)
                    self._audio_chunks_sent += 1
                    if self._audio_chunks_sent == 1:
                        logger.info(f"📤 First audio chunk sent to Deepgram: {len(audio_data)} bytes")

        except asyncio.CancelledError:
            logger.debug("Audio send loop cancelled")
        except WebSocketException as e:
            if not self.is_closing:
                logger.error(f"Error sending audio to Deepgram: {e}")
                self.is_connected = False

    async def _receive_loop(self):
        """Continuously receive and process messages from Deepgram."""
        try:
            async for message in self.ws:
                await self._process_message(message)
        except asyncio.CancelledError:
            logger.debug("Deepgram receive loop cancelled")
        except WebSocketException as e:
            if not self.is_closing:
                logger.error(f"Deepgram WebSocket error: {e}")
                self.is_connected = False
        else:
            if not self.is_closing:
                logger.info("🔚 Deepgram stream ended")
                self.is_connected = False

    async def _process_message(self, message):
        """
        Process incoming message from Deepgram.

        Results payload:
          type: "Results"
          is_final: bool
          channel.alternatives[0].transcript: str
        """
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to decode Deepgram message: {e}")
            return

        msg_type = data.get("type", "")

        if msg_type == "Results":
            await self._handle_results(data)
        elif msg_type == "Metadata":
            logger.debug(f"Deepgram metadata: {data}")
        elif msg_type == "Error":
            logger.error(f"Deepgram error: {data.get('message', 'Unknown error')}")
        else:
            logger.debug(f"Unhandled Deepgram message type: {msg_type}")

    async def _handle_results(self, data: dict):
        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return

        transcript = alternatives[0].get("transcript", "").strip()
        if not transcript:
            # Non-speech audio
            return

        try:
            if data.get("is_final", False):
                logger.info(f"✅ STT final: '{transcript}'")
                await self.on_final(transcript)
            else:
                logger.debug(f"⏳ STT partial: '{transcript[:60]}'")
                await self.on_partial(transcript)
        except Exception as e:
            logger.error(f"Error in transcript callback: {e}", exc_info=True)

    @property
    def connection_status(self) -> str:
        """Get current connection status."""
        if self.is_closing:
            return "closing"
        elif self.is_connected:
            return "connected"
        else:
            return "disconnected"
