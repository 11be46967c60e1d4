"""
Unit tests for TurnCompletionGate.
"""

import pytest
import asyncio
from voiceloop.orchestration.completion_gate import TurnCompletionGate, TurnFlags


def make_gate(timeout_ms=50):
    calls = []

    async def on_ready():
        calls.append(gate.is_ready())

    gate = TurnCompletionGate(on_ready, fallback_timeout_ms=timeout_ms)
    return gate, calls


class TestReadiness:
    """Test the generation/synthesis join."""

    def test_flags_default_false(self):
        flags = TurnFlags()
        assert not flags.generation_done
        assert not flags.synthesis_done
        assert not flags.first_audio_sent

    @pytest.mark.asyncio
    async def test_not_ready_until_both_done(self):
        gate, _ = make_gate()
        assert not gate.is_ready()

        gate.mark_generation_done()
        assert not gate.is_ready()

        gate.mark_synthesis_done()
        assert gate.is_ready()

    @pytest.mark.asyncio
    async def test_order_does_not_matter(self):
        gate, _ = make_gate()
        gate.mark_synthesis_done()
        gate.mark_generation_done()
        assert gate.is_ready()

    @pytest.mark.asyncio
    async def test_shared_flags(self):
        flags = TurnFlags()

        async def on_ready():
            pass

        gate = TurnCompletionGate(on_ready, flags=flags)
        gate.mark_generation_done()
        assert flags.generation_done


class TestClaim:
    """Test idempotent completion."""

    @pytest.mark.asyncio
    async def test_claim_only_when_ready(self):
        gate, _ = make_gate()
        assert not gate.claim()
        gate.mark_generation_done()
        assert not gate.claim()

    @pytest.mark.asyncio
    async def test_claim_succeeds_once(self):
        gate, _ = make_gate()
        gate.mark_generation_done()
        gate.mark_synthesis_done()

        assert gate.claim()
        assert not gate.claim()
        assert gate.is_claimed()

    @pytest.mark.asyncio
    async def test_cancel_blocks_claim(self):
        gate, _ = make_gate()
        gate.cancel()
        gate.mark_generation_done()
        gate.mark_synthesis_done()
        assert not gate.claim()


class TestFallback:
    """Test the synthesis fallback timer."""

    @pytest.mark.asyncio
    async def test_fallback_forces_synthesis_done(self):
        gate, calls = make_gate(timeout_ms=30)
        gate.mark_generation_done()

        await asyncio.sleep(0.06)

        assert gate.flags.synthesis_done
        assert gate.fallback_fired
        assert calls == [True]
        assert gate.claim()

    @pytest.mark.asyncio
    async def test_synthesis_done_disarms_fallback(self):
        gate, calls = make_gate(timeout_ms=30)
        gate.mark_generation_done()
        gate.mark_synthesis_done()

        await asyncio.sleep(0.06)

        assert calls == []
        assert not gate.fallback_fired

    @pytest.mark.asyncio
    async def test_no_fallback_if_synthesis_already_done(self):
        gate, calls = make_gate(timeout_ms=20)
        gate.mark_synthesis_done()
        gate.mark_generation_done()

        await asyncio.sleep(0.05)
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_disarms_fallback(self):
        gate, calls = make_gate(timeout_ms=30)
        gate.mark_generation_done()
        gate.cancel()

        await asyncio.sleep(0.06)

        assert calls == []
        assert not gate.flags.synthesis_done

    @pytest.mark.asyncio
    async def test_not_armed_before_generation_done(self):
        gate, calls = make_gate(timeout_ms=20)
        await asyncio.sleep(0.05)
        assert calls == []
        assert not gate.flags.synthesis_done
