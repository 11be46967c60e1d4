"""
FastAPI application entry point.
Sets up CORS, health check, and the voice WebSocket endpoint.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from voiceloop.config import settings
from voiceloop.llm.openai_client import OpenAIGenerator
from voiceloop.models import (
    AudioChunkMessage,
    InterruptMessage,
    PingMessage,
    TextInputMessage,
    UpdateSettingsMessage,
    parse_client_message,
)
from voiceloop.orchestration import TurnOrchestrator
from voiceloop.stt.deepgram import DeepgramRecognizer
from voiceloop.tts.elevenlabs import ElevenLabsSynthesizer
from voiceloop.websocket import connection_manager

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# One pooled HTTP session serves every connection's generation requests
generator = OpenAIGenerator()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.
    Handles startup and shutdown events.
    """
    logger.info("Voiceloop backend starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Host: {settings.host}:{settings.port}")
    logger.info(f"Frontend URL: {settings.frontend_url}")
    logger.info(f"OpenAI Model: {settings.openai_model}")
    logger.info(f"Silence debounce: {settings.silence_debounce_ms}ms")

    for name, key in (
        ("DEEPGRAM_API_KEY", settings.deepgram_api_key),
        ("OPENAI_API_KEY", settings.openai_api_key),
        ("ELEVENLABS_API_KEY", settings.elevenlabs_api_key),
    ):
        if not key:
            logger.warning(f"{name} is not set - related turns will fail")

    yield

    logger.info("Voiceloop backend shutting down...")
    await generator.close()


app = FastAPI(
    title="Voiceloop",
    description="Real-time voice conversation turn orchestrator",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint.
    Returns 200 OK if server is running.
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "environment": settings.environment,
            "version": "0.1.0",
            "active_sessions": connection_manager.get_session_count(),
        }
    )


def build_orchestrator(session_id: str) -> TurnOrchestrator:
    """Wire one session's orchestrator to the vendor clients and the socket."""

    async def on_state_change(from_state, to_state):
        await connection_manager.send_state(session_id, to_state)

    async def on_agent_audio(audio_b64):
        await connection_manager.send_agent_audio(session_id, audio_b64)

    async def on_transcript_partial(text):
        await connection_manager.send_partial_transcript(session_id, text)

    async def on_transcript_final(text):
        await connection_manager.send_final_transcript(session_id, text)

    async def on_turn_complete(turn_id, user_text, agent_text, duration_ms, was_interrupted):
        await connection_manager.send_turn_complete(
            session_id, turn_id, user_text, agent_text, duration_ms, was_interrupted
        )

    async def on_error(code, message, recoverable):
        await connection_manager.send_error(session_id, code, message, recoverable)

    return TurnOrchestrator(
        session_id=session_id,
        generator=generator,
        synthesizer_factory=ElevenLabsSynthesizer,
        recognizer_factory=DeepgramRecognizer,
        on_state_change=on_state_change,
        on_agent_audio=on_agent_audio,
        on_transcript_partial=on_transcript_partial,
        on_transcript_final=on_transcript_final,
        on_turn_complete=on_turn_complete,
        on_error=on_error,
    )


async def dispatch_message(session_id: str, orchestrator: TurnOrchestrator, data) -> None:
    """Route one inbound JSON message. Malformed messages are dropped."""
    try:
        message = parse_client_message(data)
    except ValidationError as e:
        message_type = data.get("type", "unknown") if isinstance(data, dict) else "unknown"
        logger.warning(
            f"Session {session_id} sent invalid message (type={message_type}): "
            f"{e.error_count()} validation errors"
        )
        return

    if isinstance(message, AudioChunkMessage):
        await orchestrator.handle_audio_chunk(message.pcm)

    elif isinstance(message, InterruptMessage):
        logger.info(f"Session {session_id} interrupted")
        await orchestrator.interrupt()

    elif isinstance(message, TextInputMessage):
        logger.info(f"Session {session_id} text input: {message.text}")
        await orchestrator.handle_text_input(message.text)

    elif isinstance(message, UpdateSettingsMessage):
        orchestrator.update_settings(silence_debounce_ms=message.silence_debounce_ms)

    elif isinstance(message, PingMessage):
        await connection_manager.send_pong(session_id)


@app.websocket("/ws/voice")
async def voice_websocket(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for real-time voice communication.

    Message flow:
    1. Client connects -> state LISTENING
    2. Client sends audio chunks -> recognizer
    3. Silence after a final transcript -> filler + generation + synthesis
    4. Synthesized audio -> agent_audio messages
    5. Meaningful speech while the agent talks -> barge-in
    """
    session_id = None
    orchestrator = None

    try:
        session_id = await connection_manager.connect(websocket)
        logger.info(f"New voice session: {session_id}")

        orchestrator = build_orchestrator(session_id)
        await orchestrator.start()

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            text = message.get("text")
            if text is None:
                logger.warning(f"Session {session_id} sent a binary frame - dropped")
                continue

            try:
                data = json.loads(text)
            except ValueError as e:
                logger.warning(f"Session {session_id} sent non-JSON frame: {e}")
                continue

            await dispatch_message(session_id, orchestrator, data)

    except WebSocketDisconnect:
        logger.info(f"Session {session_id} disconnected")

    except Exception as e:
        logger.error(f"Session {session_id} error: {e}", exc_info=True)
        if session_id:
            await connection_manager.send_error(
                session_id,
                code="ws_internal_error",
                message_text=f"Internal error: {str(e)}",
                recoverable=False
            )

    finally:
        if orchestrator:
            await orchestrator.stop()
        if session_id:
            await connection_manager.disconnect(session_id)
            logger.info(f"Session {session_id} cleaned up")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voiceloop.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        access_log=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
