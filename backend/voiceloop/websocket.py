"""
WebSocket connection manager.
Tracks live sessions and serialises outbound messages.
"""

import asyncio
import logging
import time
import uuid
from typing import Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from voiceloop.models import (
    AgentAudioMessage,
    ErrorMessage,
    FinalTranscriptMessage,
    PartialTranscriptMessage,
    PongMessage,
    ServerMessage,
    StateMessage,
    TurnCompleteMessage,
)
from voiceloop.state_machine import TurnState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages active WebSocket connections.

    Responsibilities:
    - Track active connections (session_id → websocket)
    - Handle connection lifecycle (connect, disconnect)
    - Send typed messages to specific sessions
    """

    def __init__(self):
        """Initialize connection manager."""
        # Active connections: session_id → WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # Session metadata: session_id → metadata dict
        self.session_metadata: Dict[str, dict] = {}

        # One send at a time per socket: session_id → lock
        self._send_locks: Dict[str, asyncio.Lock] = {}

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept new WebSocket connection and create session.

        Args:
            websocket: WebSocket connection

        Returns:
            session_id: UUID of created session
        """
        await websocket.accept()

        session_id = str(uuid.uuid4())
        self.active_connections[session_id] = websocket
        self.session_metadata[session_id] = {
            "connected_at": int(time.time() * 1000),
            "client_info": websocket.client,
            "total_messages": 0,
        }
        self._send_locks[session_id] = asyncio.Lock()

        logger.info(
            f"WebSocket connected: session_id={session_id}, "
            f"client={websocket.client}, "
            f"total_connections={len(self.active_connections)}"
        )
        return session_id

    async def disconnect(self, session_id: str):
        """
        Forget a session.

        Args:
            session_id: Session ID to disconnect
        """
        if session_id not in self.active_connections:
            return

        self.active_connections.pop(session_id, None)
        metadata = self.session_metadata.pop(session_id, {})
        self._send_locks.pop(session_id, None)

        session_duration = int(time.time() * 1000) - metadata.get("connected_at", 0)
        logger.info(
            f"WebSocket disconnected: session_id={session_id}, "
            f"duration_ms={session_duration}, "
            f"total_messages={metadata.get('total_messages', 0)}, "
            f"remaining_connections={len(self.active_connections)}"
        )

    async def send_message(self, session_id: str, message: ServerMessage) -> bool:
        """
        Send message to specific session.

        Args:
            session_id: Target session ID
            message: Outbound message model

        Returns:
            True if sent successfully, False otherwise
        """
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.debug(f"Dropping {message.type} for closed session: {session_id}")
            return False

        lock = self._send_locks.setdefault(session_id, asyncio.Lock())

        try:
            async with lock:
                await websocket.send_json(message.model_dump(mode="json"))

            if session_id in self.session_metadata:
                self.session_metadata[session_id]["total_messages"] += 1

            logger.debug(f"Message sent to session {session_id}: type={message.type}")
            return True

        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected while sending to session: {session_id}")
            await self.disconnect(session_id)
            return False
        except Exception as e:
            logger.error(f"Error sending message to session {session_id}: {e}", exc_info=True)
            return False

    async def send_state(self, session_id: str, state: TurnState) -> bool:
        return await self.send_message(session_id, StateMessage(value=state))

    async def send_partial_transcript(self, session_id: str, text: str) -> bool:
        return await self.send_message(session_id, PartialTranscriptMessage(text=text))

    async def send_final_transcript(self, session_id: str, text: str) -> bool:
        return await self.send_message(session_id, FinalTranscriptMessage(text=text))

    async def send_agent_audio(self, session_id: str, audio_b64: str) -> bool:
        return await self.send_message(session_id, AgentAudioMessage(audio=audio_b64))

    async def send_turn_complete(
        self,
        session_id: str,
        turn_id: str,
        user_text: str,
        agent_text: str,
        duration_ms: int,
        was_interrupted: bool,
    ) -> bool:
        message = TurnCompleteMessage(
            turn_id=turn_id,
            user_text=user_text,
            agent_text=agent_text,
            duration_ms=max(0, duration_ms),
            was_interrupted=was_interrupted,
        )
        return await self.send_message(session_id, message)

    async def send_error(
        self,
        session_id: str,
        code: str,
        message_text: str,
        recoverable: bool = True
    ) -> bool:
        """
        Send error message to client.

        Args:
            session_id: Session ID
            code: Error code
            message_text: Error message
            recoverable: Whether the session continues
        """
        message = ErrorMessage(code=code, message=message_text, recoverable=recoverable)
        return await self.send_message(session_id, message)

    async def send_pong(self, session_id: str) -> bool:
        return await self.send_message(session_id, PongMessage())

    def get_session_count(self) -> int:
        """Get count of active sessions."""
        return len(self.active_connections)

    def get_session_metadata(self, session_id: str) -> Optional[dict]:
        return self.session_metadata.get(session_id)


# Global connection manager instance
connection_manager = ConnectionManager()
