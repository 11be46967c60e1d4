"""
Pydantic models for WebSocket messages.
Every message is a flat JSON object discriminated by its `type` field.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from voiceloop.state_machine import TurnState


# ============================================================================
# Client → Server Messages
# ============================================================================

class AudioChunkMessage(BaseModel):
    """
    Sent when microphone audio is captured.
    Streams user audio to the recognizer.
    """
    type: Literal["audio_chunk"] = "audio_chunk"
    pcm: str = Field(
        ...,
        description="Base64-encoded 16-bit mono PCM"
    )


class InterruptMessage(BaseModel):
    """
    Sent when the user explicitly stops the agent.
    """
    type: Literal["interrupt"] = "interrupt"


class TextInputMessage(BaseModel):
    """
    Typed user input, handled like a final transcript.
    For testing without a microphone.
    """
    type: Literal["text_input"] = "text_input"
    text: str = Field(
        ...,
        min_length=1,
        description="User text"
    )


class UpdateSettingsMessage(BaseModel):
    """
    Sent when user changes settings in UI.
    """
    type: Literal["update_settings"] = "update_settings"
    silence_debounce_ms: Optional[int] = Field(
        None,
        ge=50,
        le=3000,
        description="Silence debounce in milliseconds"
    )


class PingMessage(BaseModel):
    """
    Heartbeat ping message.
    """
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[
        AudioChunkMessage,
        InterruptMessage,
        TextInputMessage,
        UpdateSettingsMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(data) -> ClientMessage:
    """
    Validate a decoded inbound JSON object.

    Raises:
        pydantic.ValidationError: Unknown type or malformed payload
    """
    return client_message_adapter.validate_python(data)


# ============================================================================
# Server → Client Messages
# ============================================================================

class StateMessage(BaseModel):
    """
    Sent on every state transition.
    """
    type: Literal["state"] = "state"
    value: TurnState = Field(
        ...,
        description="New session state"
    )


class PartialTranscriptMessage(BaseModel):
    """
    Interim recognizer result. For UI display only.
    """
    type: Literal["partial_transcript"] = "partial_transcript"
    text: str


class FinalTranscriptMessage(BaseModel):
    """
    Final recognizer result.
    """
    type: Literal["final_transcript"] = "final_transcript"
    text: str


class AgentAudioMessage(BaseModel):
    """
    One chunk of synthesized agent speech.
    """
    type: Literal["agent_audio"] = "agent_audio"
    audio: str = Field(
        ...,
        description="Base64-encoded audio data"
    )


class TurnCompleteMessage(BaseModel):
    """
    Sent when a turn finishes or is interrupted.
    """
    type: Literal["turn_complete"] = "turn_complete"
    turn_id: str
    user_text: str
    agent_text: str
    duration_ms: int = Field(
        ...,
        ge=0,
        description="Turn duration in milliseconds"
    )
    was_interrupted: bool


class ErrorMessage(BaseModel):
    """
    Sent when an error occurs.
    """
    type: Literal["error"] = "error"
    code: str = Field(
        ...,
        description="Error code"
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    recoverable: bool = Field(
        ...,
        description="True if the session continues"
    )


class PongMessage(BaseModel):
    """
    Heartbeat pong response.
    """
    type: Literal["pong"] = "pong"


ServerMessage = Union[
    StateMessage,
    PartialTranscriptMessage,
    FinalTranscriptMessage,
    AgentAudioMessage,
    TurnCompleteMessage,
    ErrorMessage,
    PongMessage,
]
