"""
Turn orchestration for one voice session: silence commit, barge-in,
token buffering and turn completion.
"""

from .completion_gate import TurnCompletionGate, TurnFlags
from .interruption import InterruptionDetector
from .silence_timer import SilenceTimer
from .token_buffer import TokenBuffer
from .turn_orchestrator import Turn, TurnOrchestrator

__all__ = [
    "TurnCompletionGate",
    "TurnFlags",
    "InterruptionDetector",
    "SilenceTimer",
    "TokenBuffer",
    "Turn",
    "TurnOrchestrator",
]
