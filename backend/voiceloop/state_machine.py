"""
State Machine for voice session turn control.
Implements validated state transitions with hooks, plus a forced overwrite
used by failure recovery.

Observed flow: IDLE → LISTENING → SPEAKING → LISTENING (repeat)
THINKING is reserved for a "generating, not yet speaking" phase.
"""

import logging
from enum import Enum
from typing import Optional, Callable, Awaitable, Dict, Set
import time

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    """
    Voice session states.

    IDLE: Pre-connection default
    LISTENING: Receiving user audio, waiting for the user to finish
    THINKING: Reserved, never entered by the current turn flow
    SPEAKING: Agent turn active (filler, generation and synthesis running)
    """
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"


class StateMachine:
    """
    State holder for one connection.

    Every transition overwrites the state before any hook is awaited, so
    callbacks already in flight for the old turn observe the new state.
    """

    ALLOWED_TRANSITIONS: Dict[TurnState, Set[TurnState]] = {
        TurnState.IDLE: {
            TurnState.LISTENING,  # Connection opened
        },
        TurnState.LISTENING: {
            TurnState.SPEAKING,  # Silence committed a transcript
            TurnState.THINKING,
            TurnState.IDLE,
        },
        TurnState.THINKING: {
            TurnState.SPEAKING,
            TurnState.LISTENING,
            TurnState.IDLE,
        },
        TurnState.SPEAKING: {
            TurnState.LISTENING,  # Turn complete or barge-in
            TurnState.IDLE,
        },
    }

    def __init__(self, initial_state: TurnState = TurnState.IDLE):
        """
        Initialize state machine.

        Args:
            initial_state: Starting state (default: IDLE)
        """
        self._current_state: TurnState = initial_state
        self._previous_state: Optional[TurnState] = None
        self._state_history: list[dict] = []

        self._on_enter_hooks: Dict[TurnState, list[Callable]] = {
            state: [] for state in TurnState
        }
        self._on_transition_hooks: list[Callable] = []

        logger.debug(f"State machine initialized in state: {initial_state.value}")
        self._record_state_change(None, initial_state, "initialization")

    @property
    def current_state(self) -> TurnState:
        """Get current state."""
        return self._current_state

    @property
    def previous_state(self) -> Optional[TurnState]:
        """Get previous state."""
        return self._previous_state

    @property
    def state_history(self) -> list[dict]:
        """Get state history for debugging/telemetry."""
        return self._state_history.copy()

    def is_state(self, expected: TurnState) -> bool:
        """Snapshot comparison against the current state."""
        return self._current_state == expected

    def can_transition(self, to_state: TurnState) -> bool:
        """
        Check if transition to target state is allowed.

        Args:
            to_state: Target state

        Returns:
            True if transition is allowed, False otherwise
        """
        return to_state in self.ALLOWED_TRANSITIONS.get(self._current_state, set())

    async def transition(self, to_state: TurnState, reason: str = "") -> bool:
        """
        Transition to new state with validation and hooks.

        Args:
            to_state: Target state
            reason: Optional reason for transition (for logging)

        Returns:
            True if transition succeeded, False if not allowed
        """
        if not self.can_transition(to_state):
            logger.error(
                f"Invalid state transition: {self._current_state.value} → {to_state.value}. "
                f"Allowed transitions: "
                f"{sorted(s.value for s in self.ALLOWED_TRANSITIONS.get(self._current_state, set()))}"
            )
            return False

        await self._apply(to_state, reason)
        return True

    async def force(self, to_state: TurnState, reason: str = "") -> None:
        """
        Overwrite the state unconditionally.

        Used where the session must end up in a known state regardless of
        where it is now (turn-start failure, connection teardown).
        """
        if not self.can_transition(to_state) and to_state != self._current_state:
            logger.warning(
                f"Forcing state {self._current_state.value} → {to_state.value}"
                + (f" (reason: {reason})" if reason else "")
            )
        await self._apply(to_state, reason)

    def register_on_enter(
        self,
        state: TurnState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute when entering a state.

        Args:
            state: State to hook into
            callback: Async callback function
        """
        self._on_enter_hooks[state].append(callback)
        logger.debug(f"Registered on_enter hook for state: {state.value}")

    def register_on_transition(
        self,
        callback: Callable[[TurnState, TurnState], Awaitable[None]]
    ) -> None:
        """
        Register callback to execute on any state transition.

        Args:
            callback: Async callback function receiving (from_state, to_state)
        """
        self._on_transition_hooks.append(callback)
        logger.debug("Registered on_transition hook")

    async def reset(self) -> None:
        """Reset state machine to IDLE."""
        await self.force(TurnState.IDLE, reason="reset")

    async def _apply(self, to_state: TurnState, reason: str) -> None:
        from_state = self._current_state

        # State changes before the first await
        self._previous_state = from_state
        self._current_state = to_state
        self._record_state_change(from_state, to_state, reason)

        log_msg = f"State: {from_state.value} → {to_state.value}"
        if reason:
            log_msg += f" (reason: {reason})"
        logger.info(log_msg)

        await self._execute_enter_hooks(to_state)
        await self._execute_transition_hooks(from_state, to_state)

    def _record_state_change(
        self,
        from_state: Optional[TurnState],
        to_state: TurnState,
        reason: str
    ) -> None:
        """Record state change in history."""
        record = {
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value,
            "reason": reason,
            "timestamp": int(time.time() * 1000),  # Unix timestamp in milliseconds
        }
        self._state_history.append(record)

    async def _execute_enter_hooks(self, state: TurnState) -> None:
        """Execute all on_enter hooks for a state."""
        for callback in self._on_enter_hooks[state]:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in on_enter hook for {state.value}: {e}", exc_info=True)

    async def _execute_transition_hooks(
        self,
        from_state: TurnState,
        to_state: TurnState
    ) -> None:
        """Execute all on_transition hooks."""
        for callback in self._on_transition_hooks:
            try:
                await callback(from_state, to_state)
            except Exception as e:
                logger.error(f"Error in on_transition hook: {e}", exc_info=True)

    def get_allowed_transitions(self) -> Set[TurnState]:
        """Get all allowed transitions from current state."""
        return self.ALLOWED_TRANSITIONS.get(self._current_state, set()).copy()

    def __repr__(self) -> str:
        return (
            f"StateMachine(current={self._current_state.value}, "
            f"previous={self._previous_state.value if self._previous_state else None})"
        )
