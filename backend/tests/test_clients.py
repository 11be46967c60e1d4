"""
Unit tests for the vendor clients and the connection manager.

No network: message handling is driven directly with vendor payloads.
"""

import asyncio
import base64
import json

import pytest
from fastapi import WebSocketDisconnect

from voiceloop.models import StateMessage
from voiceloop.state_machine import TurnState
from voiceloop.stt.deepgram import DeepgramRecognizer
from voiceloop.tts.elevenlabs import ElevenLabsSynthesizer, SynthesisError
from voiceloop.websocket import ConnectionManager


def deepgram_results(transcript, is_final):
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": transcript}]},
    })


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, *args):
        self.calls.append(args)


class TestDeepgramRecognizer:
    """Test transcript routing."""

    @pytest.mark.asyncio
    async def test_final_and_interim_routing(self):
        partials, finals = Recorder(), Recorder()
        recognizer = DeepgramRecognizer(partials, finals, api_key="test")

        await recognizer._process_message(deepgram_results("hello wor", False))
        await recognizer._process_message(deepgram_results("hello world", True))

        assert partials.calls == [("hello wor",)]
        assert finals.calls == [("hello world",)]

    @pytest.mark.asyncio
    async def test_empty_transcript_ignored(self):
        partials, finals = Recorder(), Recorder()
        recognizer = DeepgramRecognizer(partials, finals, api_key="test")

        await recognizer._process_message(deepgram_results("   ", True))
        await recognizer._process_message("not json")
        await recognizer._process_message(json.dumps({"type": "Metadata"}))

        assert partials.calls == []
        assert finals.calls == []

    def test_write_when_disconnected_is_dropped(self):
        recognizer = DeepgramRecognizer(Recorder(), Recorder(), api_key="test")
        recognizer.write(b"\x00\x01")
        assert recognizer._audio_queue.empty()
        assert recognizer.connection_status == "disconnected"

    @pytest.mark.asyncio
    async def test_connect_without_key_fails(self):
        recognizer = DeepgramRecognizer(Recorder(), Recorder())
        recognizer.api_key = None
        assert await recognizer.connect() is False


class TestElevenLabsSynthesizer:
    """Test stream-input message handling."""

    def make(self, **kwargs):
        audio, chunk_complete, finished = Recorder(), Recorder(), Recorder()
        synth = ElevenLabsSynthesizer(audio, chunk_complete, finished, api_key="test", **kwargs)
        return synth, audio, chunk_complete, finished

    @pytest.mark.asyncio
    async def test_audio_decoded_and_first_chunk_signalled(self):
        synth, audio, chunk_complete, _ = self.make()
        payload = base64.b64encode(b"mp3-bytes").decode()

        await synth._process_message(json.dumps({"audio": payload}))
        await synth._process_message(json.dumps({"audio": payload}))

        assert audio.calls == [(b"mp3-bytes",), (b"mp3-bytes",)]
        assert chunk_complete.calls == [()]

    @pytest.mark.asyncio
    async def test_finished_after_final_delay(self):
        synth, _, _, finished = self.make(finish_delay_ms=20)

        await synth._process_message(json.dumps({"isFinal": True}))
        assert finished.calls == []

        await asyncio.sleep(0.05)
        assert finished.calls == [()]

    @pytest.mark.asyncio
    async def test_connect_without_key_raises(self):
        synth, _, _, _ = self.make()
        synth.api_key = None
        with pytest.raises(SynthesisError):
            await synth.connect()

    @pytest.mark.asyncio
    async def test_text_queued_until_open(self):
        synth, _, _, _ = self.make()

        synth.send_text("Hmm, let me think.")
        synth.send_text("Sure.")
        synth.send_text("")
        synth.send_text("ignored")

        assert synth._text_queue.qsize() == 3
        assert not synth.is_open

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        synth, _, _, _ = self.make()

        await synth.close()
        await synth.close()
        synth.send_text("late")

        assert synth.is_closed
        assert synth._text_queue.empty()


class FakeWebSocket:
    def __init__(self, fail_with=None):
        self.client = ("127.0.0.1", 5000)
        self.accepted = False
        self.sent = []
        self.fail_with = fail_with

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_with:
            raise self.fail_with
        self.sent.append(data)


class TestConnectionManager:
    """Test session tracking and outbound sends."""

    @pytest.mark.asyncio
    async def test_connect_and_send(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()

        session_id = await manager.connect(ws)
        assert ws.accepted
        assert manager.get_session_count() == 1

        assert await manager.send_state(session_id, TurnState.LISTENING)
        assert await manager.send_turn_complete(session_id, "t1", "hi", "hello", 10, False)
        assert ws.sent[0] == {"type": "state", "value": "LISTENING"}
        assert ws.sent[1]["was_interrupted"] is False
        assert manager.get_session_metadata(session_id)["total_messages"] == 2

    @pytest.mark.asyncio
    async def test_send_to_unknown_session(self):
        manager = ConnectionManager()
        assert not await manager.send_message("missing", StateMessage(value=TurnState.IDLE))

    @pytest.mark.asyncio
    async def test_disconnect_during_send(self):
        manager = ConnectionManager()
        session_id = await manager.connect(FakeWebSocket(fail_with=WebSocketDisconnect()))

        assert not await manager.send_pong(session_id)
        assert manager.get_session_count() == 0

    @pytest.mark.asyncio
    async def test_send_error_payload(self):
        manager = ConnectionManager()
        ws = FakeWebSocket()
        session_id = await manager.connect(ws)

        await manager.send_error(session_id, "turn_start_failed", "boom", True)

        assert ws.sent == [{
            "type": "error",
            "code": "turn_start_failed",
            "message": "boom",
            "recoverable": True,
        }]
        await manager.disconnect(session_id)
        assert manager.get_session_count() == 0


class SlowSocket:
    """Socket whose sends stall, holding the synthesizer before it opens."""

    def __init__(self, send_delay):
        self.send_delay = send_delay
        self.sent = []
        self.closed = False

    async def send(self, data):
        await asyncio.sleep(self.send_delay)
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        # No vendor frames; the receive loop idles until cancelled
        await asyncio.Event().wait()


class TestElevenLabsSocketRelease:
    """Test the socket is released on every close path."""

    @pytest.mark.asyncio
    async def test_close_before_config_frame_sent(self, monkeypatch):
        socket = SlowSocket(send_delay=0.2)

        async def fake_connect(url, additional_headers=None):
            return socket

        monkeypatch.setattr("voiceloop.tts.elevenlabs.connect", fake_connect)
        synth = ElevenLabsSynthesizer(Recorder(), api_key="test")

        await synth.connect()
        await asyncio.sleep(0.05)
        assert not synth.is_open

        await synth.close()
        await asyncio.sleep(0.05)

        assert socket.closed
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_close_after_open_ends_input(self, monkeypatch):
        socket = SlowSocket(send_delay=0)

        async def fake_connect(url, additional_headers=None):
            return socket

        monkeypatch.setattr("voiceloop.tts.elevenlabs.connect", fake_connect)
        synth = ElevenLabsSynthesizer(Recorder(), api_key="test")

        await synth.connect()
        await asyncio.sleep(0.02)
        assert synth.is_open

        await synth.close()

        assert socket.closed
        assert json.loads(socket.sent[-1]) == {"text": ""}
