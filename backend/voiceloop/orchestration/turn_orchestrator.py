"""
Turn Orchestrator - drives one voice session from user speech to agent speech.

Coordinates, for a single connection:
- Session state (LISTENING / SPEAKING)
- Silence debounce of recognizer output into committed user turns
- Filler phrase + streaming generation into one synthesis session
- Token buffering between generation and synthesis
- Barge-in classification and teardown
- Joining generation end and synthesis end into turn completion

All mutation happens on the event loop that owns the connection. Every
collaborator callback is bound to the Turn it was created for and drops its
work once that turn is no longer current.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, List, Optional

from voiceloop.config import settings
from voiceloop.interfaces import (
    Recognizer,
    RecognizerFactory,
    Synthesizer,
    SynthesizerFactory,
    TextGenerator,
)
from voiceloop.orchestration.completion_gate import TurnCompletionGate, TurnFlags
from voiceloop.orchestration.interruption import InterruptionDetector
from voiceloop.orchestration.silence_timer import SilenceTimer
from voiceloop.orchestration.token_buffer import TokenBuffer
from voiceloop.state_machine import StateMachine, TurnState
from voiceloop.utils.audio import decode_audio_base64, encode_audio_base64

logger = logging.getLogger(__name__)


@dataclass
class Turn:
    """Everything owned by one user-utterance-to-agent-response cycle."""
    turn_id: str
    user_text: str
    flags: TurnFlags = field(default_factory=TurnFlags)
    gate: Optional[TurnCompletionGate] = None
    buffer: Optional[TokenBuffer] = None
    synthesis: Optional[Synthesizer] = None
    generation_task: Optional[asyncio.Task] = None
    settle_task: Optional[asyncio.Task] = None
    filler: str = ""
    agent_text: str = ""
    token_count: int = 0
    started_at: float = field(default_factory=time.monotonic)
    first_audio_at: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class TurnOrchestrator:
    """
    Per-connection turn state machine.

    State Flow:
    IDLE → LISTENING → SPEAKING → LISTENING ...
                ↑          │ (interrupt / complete)
                └──────────┘
    """

    def __init__(
        self,
        session_id: str,
        generator: TextGenerator,
        synthesizer_factory: SynthesizerFactory,
        on_state_change: Callable[[TurnState, TurnState], Awaitable[None]],
        on_agent_audio: Callable[[str], Awaitable[None]],  # base64 audio
        recognizer_factory: Optional[RecognizerFactory] = None,
        on_transcript_partial: Optional[Callable[[str], Awaitable[None]]] = None,
        on_transcript_final: Optional[Callable[[str], Awaitable[None]]] = None,
        on_turn_complete: Optional[Callable[[str, str, str, int, bool], Awaitable[None]]] = None,  # turn_id, user_text, agent_text, duration_ms, was_interrupted
        on_error: Optional[Callable[[str, str, bool], Awaitable[None]]] = None,  # code, message, recoverable
        silence_debounce_ms: Optional[int] = None,
        token_flush_threshold_chars: Optional[int] = None,
        token_flush_delay_ms: Optional[int] = None,
        turn_settle_delay_ms: Optional[int] = None,
        synthesis_fallback_timeout_ms: Optional[int] = None,
        interruption_min_chars: Optional[int] = None,
        filler_phrases: Optional[List[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session_id = session_id

        # Collaborators
        self.generator = generator
        self.synthesizer_factory = synthesizer_factory
        self.recognizer_factory = recognizer_factory
        self.recognizer: Optional[Recognizer] = None

        # Callbacks
        self.on_state_change = on_state_change
        self.on_agent_audio = on_agent_audio
        self.on_transcript_partial = on_transcript_partial
        self.on_transcript_final = on_transcript_final
        self.on_turn_complete = on_turn_complete
        self.on_error = on_error

        # Tuning
        self.token_flush_threshold_chars = _pick(token_flush_threshold_chars, settings.token_flush_threshold_chars)
        self.token_flush_delay_ms = _pick(token_flush_delay_ms, settings.token_flush_delay_ms)
        self.turn_settle_delay_ms = _pick(turn_settle_delay_ms, settings.turn_settle_delay_ms)
        self.synthesis_fallback_timeout_ms = _pick(
            synthesis_fallback_timeout_ms, settings.synthesis_fallback_timeout_ms
        )
        self.filler_phrases = list(filler_phrases or settings.filler_phrases)
        self._rng = rng or random.Random()

        # Core components
        self.state_machine = StateMachine(TurnState.IDLE)
        self.state_machine.register_on_transition(self._notify_state_change)

        debounce_ms = _pick(silence_debounce_ms, settings.silence_debounce_ms)
        self.silence_timer = SilenceTimer(
            on_silence_complete=self._on_silence_complete,
            debounce_ms=debounce_ms,
            min_debounce_ms=min(settings.min_silence_debounce_ms, debounce_ms),
            max_debounce_ms=max(settings.max_silence_debounce_ms, debounce_ms),
        )
        self.interruption_detector = InterruptionDetector(
            min_chars=_pick(interruption_min_chars, settings.interruption_min_chars)
        )

        # Session data
        self.pending_transcript: Optional[str] = None
        self._turn: Optional[Turn] = None
        self._speaking_started_at: Optional[float] = None

        # Statistics
        self._total_turns = 0
        self._completed_turns = 0
        self._interrupted_turns = 0
        self._failed_turns = 0
        self._fallback_completions = 0
        self._dropped_backchannels = 0

        logger.info(f"TurnOrchestrator initialized for session {session_id}")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self.state_machine.current_state

    @property
    def current_turn(self) -> Optional[Turn]:
        return self._turn

    @property
    def active_synthesis(self) -> Optional[Synthesizer]:
        return self._turn.synthesis if self._turn else None

    async def start(self):
        """Enter LISTENING, announce it and open the recognizer."""
        await self.state_machine.transition(TurnState.LISTENING, reason="Connection opened")

        if self.recognizer_factory is None:
            logger.info("No recognizer configured - text input only")
            return

        try:
            self.recognizer = self.recognizer_factory(
                self.handle_partial_transcript,
                self.handle_final_transcript,
            )
            connected = await self.recognizer.connect()
        except Exception as e:
            logger.error(f"Recognizer setup failed: {e}", exc_info=True)
            connected = False

        if not connected:
            await self._emit(
                self.on_error,
                "recognizer_connection_failed",
                "Failed to connect to speech recognition",
                True,
            )

    async def stop(self):
        """Connection closed: cancel timers, release synthesis and recognizer."""
        self.silence_timer.cancel()
        self.pending_transcript = None

        turn = self._turn
        self._turn = None
        synthesis = self._invalidate_turn(turn) if turn else None
        await self._release_synthesis(synthesis)

        if self.recognizer:
            try:
                await self.recognizer.close()
            except Exception as e:
                logger.warning(f"Error closing recognizer: {e}")
            self.recognizer = None

        logger.info(f"TurnOrchestrator stopped for session {self.session_id}")

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle_audio_chunk(self, pcm_base64: str):
        """
        Forward client microphone audio to the recognizer.

        Args:
            pcm_base64: Base64-encoded 16-bit PCM
        """
        if not self.recognizer:
            logger.debug("Audio received with no active recognizer - dropping")
            return

        audio_bytes = decode_audio_base64(pcm_base64)
        if not audio_bytes:
            logger.warning("Failed to decode audio or empty audio received")
            return

        self.recognizer.write(audio_bytes)

    async def handle_partial_transcript(self, text: str):
        """
        Interim recognizer result: UI display, and proof the user is still talking.
        """
        if not text or not text.strip():
            return

        if self.state_machine.is_state(TurnState.LISTENING):
            self.silence_timer.start()

        await self._emit(self.on_transcript_partial, text)

    async def handle_final_transcript(self, text: str):
        """
        Final recognizer result.

        LISTENING: becomes (part of) the pending transcript and restarts the
        silence timer. SPEAKING: classified as barge-in or noise.
        """
        text = (text or "").strip()
        if not text:
            return

        current_state = self.state_machine.current_state

        if current_state == TurnState.SPEAKING:
            if not self.interruption_detector.is_meaningful(text):
                self._dropped_backchannels += 1
                logger.info(f"Ignoring non-meaningful transcript while speaking: '{text}'")
                return

            logger.info(f"User barge-in detected during SPEAKING: '{text[:50]}' - interrupting agent")
            await self.interrupt(text)
            await self._emit(self.on_transcript_final, text)
            return

        if current_state != TurnState.LISTENING:
            logger.warning(f"Received final transcript in {current_state.value} state - ignoring")
            return

        if self.pending_transcript:
            self.pending_transcript = f"{self.pending_transcript} {text}"
        else:
            self.pending_transcript = text
        self.silence_timer.start()

        await self._emit(self.on_transcript_final, text)

    async def handle_text_input(self, text: str):
        """
        Typed input, handled exactly like a final transcript.

        Args:
            text: User's text input
        """
        logger.info(f"Text input received: {text}")
        await self.handle_final_transcript(text)

    async def interrupt(self, transcript: Optional[str] = None) -> bool:
        """
        Abort the agent's turn.

        The synthesis handle and token buffer are invalidated before the
        first await, so in-flight callbacks of the old turn drop their work.

        Args:
            transcript: Interrupting utterance to adopt as the next pending
                transcript, or None for an explicit client interrupt

        Returns:
            True if a turn was interrupted
        """
        if not self.state_machine.is_state(TurnState.SPEAKING):
            logger.debug(f"Interrupt ignored in {self.state.value} state")
            return False

        turn = self._turn
        self._turn = None
        synthesis = self._invalidate_turn(turn) if turn else None
        self._interrupted_turns += 1

        if transcript:
            self.pending_transcript = transcript
        else:
            self.pending_transcript = None
            self.silence_timer.cancel()

        await self.state_machine.transition(TurnState.LISTENING, reason="User interrupted")

        if transcript:
            self.silence_timer.start()

        await self._release_synthesis(synthesis)

        if turn:
            logger.info(
                f"Turn {turn.turn_id} interrupted after {turn.duration_ms}ms "
                f"({len(turn.agent_text)} chars generated)"
            )
            await self._emit(
                self.on_turn_complete,
                turn.turn_id, turn.user_text, turn.agent_text, turn.duration_ms, True,
            )
        return True

    def update_settings(self, silence_debounce_ms: Optional[int] = None):
        """
        Update orchestrator settings at runtime.

        Args:
            silence_debounce_ms: New silence debounce duration
        """
        if silence_debounce_ms is not None:
            self.silence_timer.set_debounce_ms(silence_debounce_ms)

    def get_telemetry(self) -> dict:
        """Counters for monitoring."""
        return {
            "state": self.state.value,
            "total_turns": self._total_turns,
            "completed_turns": self._completed_turns,
            "interrupted_turns": self._interrupted_turns,
            "failed_turns": self._failed_turns,
            "fallback_completions": self._fallback_completions,
            "dropped_backchannels": self._dropped_backchannels,
            "silence_debounce_ms": self.silence_timer.get_current_debounce_ms(),
            "speaking_started_at": self._speaking_started_at,
        }

    # ------------------------------------------------------------------
    # Turn start
    # ------------------------------------------------------------------

    async def _on_silence_complete(self):
        """
        Silence timer fired: commit the pending transcript if still listening.
        """
        if not self.state_machine.is_state(TurnState.LISTENING):
            logger.debug(f"Silence timer fired in {self.state.value} state - ignoring")
            return

        if not self.pending_transcript:
            logger.debug("Silence timer fired with no pending transcript")
            return

        self._speaking_started_at = time.time()
        await self._handle_turn()

    async def _handle_turn(self):
        """
        Start a turn for the pending transcript.

        Opens synthesis, sends a filler phrase, then starts generation. A
        failure at any point returns the session to LISTENING.
        """
        user_text = self.pending_transcript
        self.pending_transcript = None
        if not user_text:
            logger.warning("Turn start with no pending transcript - skipping")
            return

        turn = self._new_turn(user_text)
        self._turn = turn

        try:
            await self.state_machine.transition(
                TurnState.SPEAKING,
                reason="Silence detected - starting turn"
            )
            if self._turn is not turn:
                return

            turn.synthesis = self.synthesizer_factory(
                partial(self._on_synthesis_audio, turn),
                partial(self._on_synthesis_chunk_complete, turn),
                partial(self._on_synthesis_finished, turn),
            )
            await turn.synthesis.connect()
            if self._turn is not turn:
                return

            # Filler must be queued before generation can produce tokens
            turn.filler = self._rng.choice(self.filler_phrases)
            turn.synthesis.send_text(turn.filler)
            logger.info(f"Turn {turn.turn_id} started: '{user_text[:50]}' (filler: '{turn.filler}')")

            turn.generation_task = asyncio.create_task(self._run_generation(turn))

        except Exception as e:
            logger.error(f"Failed to start turn {turn.turn_id}: {e}", exc_info=True)
            await self._fail_turn(turn, e)

    def _new_turn(self, user_text: str) -> Turn:
        self._total_turns += 1
        turn = Turn(turn_id=f"{self.session_id}_{self._total_turns}", user_text=user_text)
        turn.gate = TurnCompletionGate(
            on_ready=partial(self._check_and_complete_turn, turn),
            fallback_timeout_ms=self.synthesis_fallback_timeout_ms,
            flags=turn.flags,
        )
        turn.buffer = TokenBuffer(
            send_text=partial(self._send_to_synthesis, turn),
            can_send=partial(self._is_turn_speaking, turn),
            flush_threshold_chars=self.token_flush_threshold_chars,
            flush_delay_ms=self.token_flush_delay_ms,
        )
        return turn

    async def _fail_turn(self, turn: Turn, error: Exception):
        self._failed_turns += 1
        was_current = self._turn is turn
        if was_current:
            self._turn = None

        synthesis = self._invalidate_turn(turn)
        await self._release_synthesis(synthesis)

        if was_current:
            await self.state_machine.force(TurnState.LISTENING, reason="Turn start failed")
            await self._emit(
                self.on_error,
                "turn_start_failed",
                f"Could not start agent response: {str(error)[:100]}",
                True,
            )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _run_generation(self, turn: Turn):
        """
        Stream the response for this turn into its token buffer.

        A generation failure counts as generation completion so the turn
        can still finish.
        """
        started = time.monotonic()
        try:
            await self.generator.generate(turn.user_text, partial(self._on_generation_token, turn))
            logger.info(
                f"Generation complete for turn {turn.turn_id}: {turn.token_count} tokens "
                f"in {int((time.monotonic() - started) * 1000)}ms"
            )
        except asyncio.CancelledError:
            logger.info(f"Generation cancelled for turn {turn.turn_id}")
            raise
        except Exception as e:
            logger.error(f"Generation failed for turn {turn.turn_id}: {e}")
            if self._turn is turn:
                await self._emit(
                    self.on_error,
                    "generation_failed",
                    f"AI generation failed: {str(e)[:100]}",
                    True,
                )

        if self._turn is not turn:
            return

        turn.buffer.finish()
        turn.gate.mark_generation_done()
        await self._check_and_complete_turn(turn)

    def _on_generation_token(self, turn: Turn, token: str):
        if not self._is_turn_speaking(turn):
            logger.warning(f"Dropping token for inactive turn {turn.turn_id}: '{token[:30]}'")
            return

        turn.agent_text += token
        turn.token_count += 1
        turn.buffer.push(token)

    def _send_to_synthesis(self, turn: Turn, text: str):
        turn.synthesis.send_text(text)

    # ------------------------------------------------------------------
    # Synthesis callbacks
    # ------------------------------------------------------------------

    async def _on_synthesis_audio(self, turn: Turn, chunk: bytes):
        if self._turn is not turn or turn.synthesis is None:
            logger.debug(f"Dropping {len(chunk)} audio bytes for inactive turn {turn.turn_id}")
            return

        if not turn.flags.first_audio_sent:
            turn.flags.first_audio_sent = True
            turn.first_audio_at = time.monotonic()
            logger.info(f"⏱️ TIMING: First audio for turn {turn.turn_id} after {turn.duration_ms}ms")

        await self._emit(self.on_agent_audio, encode_audio_base64(chunk))

    async def _on_synthesis_chunk_complete(self, turn: Turn):
        await self._check_and_complete_turn(turn)

    async def _on_synthesis_finished(self, turn: Turn):
        if self._turn is not turn:
            return
        turn.gate.mark_synthesis_done()
        await self._check_and_complete_turn(turn)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _check_and_complete_turn(self, turn: Turn):
        """
        Complete the turn once generation and synthesis are both done.

        Idempotent: no-op unless this turn is current, the session is still
        SPEAKING and completion has not been claimed yet.
        """
        if self._turn is not turn or not self.state_machine.is_state(TurnState.SPEAKING):
            return

        if not turn.gate.claim():
            return

        if turn.gate.fallback_fired:
            self._fallback_completions += 1

        logger.info(f"Turn {turn.turn_id} complete - settling for {self.turn_settle_delay_ms}ms")
        synthesis = turn.synthesis
        turn.synthesis = None
        turn.settle_task = asyncio.create_task(self._settle_and_finish(turn, synthesis))

    async def _settle_and_finish(self, turn: Turn, synthesis: Optional[Synthesizer]):
        await self._release_synthesis(synthesis)

        try:
            await asyncio.sleep(self.turn_settle_delay_ms / 1000.0)
        except asyncio.CancelledError:
            return

        if self._turn is not turn or not self.state_machine.is_state(TurnState.SPEAKING):
            return

        self._turn = None
        self._completed_turns += 1
        await self.state_machine.transition(TurnState.LISTENING, reason="Turn complete")
        await self._emit(
            self.on_turn_complete,
            turn.turn_id, turn.user_text, turn.agent_text, turn.duration_ms, False,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_turn_speaking(self, turn: Turn) -> bool:
        return (
            self._turn is turn
            and turn.synthesis is not None
            and self.state_machine.is_state(TurnState.SPEAKING)
        )

    def _invalidate_turn(self, turn: Turn) -> Optional[Synthesizer]:
        """
        Synchronously detach everything the turn owns.

        Returns:
            The synthesis handle, still open, for the caller to release
        """
        synthesis = turn.synthesis
        turn.synthesis = None

        if turn.buffer:
            turn.buffer.clear()
        if turn.gate:
            turn.gate.cancel()
        turn.flags = TurnFlags()

        current = asyncio.current_task()
        for task in (turn.generation_task, turn.settle_task):
            if task and not task.done() and task is not current:
                task.cancel()

        return synthesis

    async def _release_synthesis(self, synthesis: Optional[Synthesizer]):
        if synthesis is None:
            return
        try:
            await synthesis.close()
        except Exception as e:
            logger.warning(f"Error closing synthesis session: {e}")

    async def _notify_state_change(self, from_state: TurnState, to_state: TurnState):
        """Notify state change via callback."""
        await self._emit(self.on_state_change, from_state, to_state)

    async def _emit(self, callback: Optional[Callable[..., Awaitable[None]]], *args):
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as e:
            logger.error(f"Error in orchestrator callback: {e}")

    def __repr__(self) -> str:
        return (
            f"TurnOrchestrator(session={self.session_id}, state={self.state.value}, "
            f"turn={self._turn.turn_id if self._turn else None})"
        )


def _pick(value, default):
    return default if value is None else value
