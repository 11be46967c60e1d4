"""
Unit tests for WebSocket message models.
"""

import pytest
from pydantic import ValidationError

from voiceloop.models import (
    AudioChunkMessage,
    ErrorMessage,
    InterruptMessage,
    PingMessage,
    StateMessage,
    TextInputMessage,
    TurnCompleteMessage,
    UpdateSettingsMessage,
    parse_client_message,
)
from voiceloop.state_machine import TurnState


class TestClientMessages:
    """Test inbound message parsing."""

    def test_audio_chunk(self):
        message = parse_client_message({"type": "audio_chunk", "pcm": "AAEC"})
        assert isinstance(message, AudioChunkMessage)
        assert message.pcm == "AAEC"

    def test_interrupt(self):
        assert isinstance(parse_client_message({"type": "interrupt"}), InterruptMessage)

    def test_ping(self):
        assert isinstance(parse_client_message({"type": "ping"}), PingMessage)

    def test_text_input(self):
        message = parse_client_message({"type": "text_input", "text": "hello"})
        assert isinstance(message, TextInputMessage)
        assert message.text == "hello"

    def test_update_settings(self):
        message = parse_client_message({"type": "update_settings", "silence_debounce_ms": 450})
        assert isinstance(message, UpdateSettingsMessage)
        assert message.silence_debounce_ms == 450

    def test_update_settings_out_of_range(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "update_settings", "silence_debounce_ms": 10})

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "get_history"})

    def test_missing_type_rejected(self):
        with pytest.raises(ValidationError):
            parse_client_message({"pcm": "AAEC"})

    def test_audio_chunk_requires_pcm(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "audio_chunk"})

    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "text_input", "text": ""})


class TestServerMessages:
    """Test outbound message serialisation."""

    def test_state(self):
        message = StateMessage(value=TurnState.SPEAKING)
        assert message.model_dump(mode="json") == {"type": "state", "value": "SPEAKING"}

    def test_turn_complete(self):
        message = TurnCompleteMessage(
            turn_id="abc_1",
            user_text="Hello",
            agent_text="Hi.",
            duration_ms=1200,
            was_interrupted=False,
        )
        assert message.model_dump(mode="json") == {
            "type": "turn_complete",
            "turn_id": "abc_1",
            "user_text": "Hello",
            "agent_text": "Hi.",
            "duration_ms": 1200,
            "was_interrupted": False,
        }

    def test_error(self):
        message = ErrorMessage(code="turn_start_failed", message="boom", recoverable=True)
        assert message.model_dump(mode="json")["type"] == "error"
