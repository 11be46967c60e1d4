"""
Unit tests for SilenceTimer.

Tests firing, restart and cancellation behavior, and debounce clamping.
"""

import pytest
import asyncio
from voiceloop.orchestration.silence_timer import SilenceTimer


async def _noop():
    pass


class TestSilenceTimer:
    """Test silence timer functionality."""

    @pytest.mark.asyncio
    async def test_timer_completion(self):
        """Test timer fires callback after debounce period."""
        completed = False

        async def on_complete():
            nonlocal completed
            completed = True

        timer = SilenceTimer(on_complete, debounce_ms=50)
        timer.start()

        assert timer.is_running()
        await asyncio.sleep(0.1)

        assert completed
        assert not timer.is_running()

    @pytest.mark.asyncio
    async def test_timer_cancellation(self):
        """Test timer can be cancelled before completion."""
        completed = False

        async def on_complete():
            nonlocal completed
            completed = True

        timer = SilenceTimer(on_complete, debounce_ms=100)
        timer.start()

        await asyncio.sleep(0.03)
        timer.cancel()

        await asyncio.sleep(0.1)

        assert not completed
        assert not timer.is_running()

    @pytest.mark.asyncio
    async def test_timer_restart(self):
        """Test starting timer again restarts the countdown."""
        completed = []

        async def on_complete():
            completed.append(True)

        timer = SilenceTimer(on_complete, debounce_ms=100)
        timer.start()
        assert timer.is_running()

        await asyncio.sleep(0.05)
        timer.start()
        assert timer.is_running()

        # Original deadline has passed, restarted one has not
        await asyncio.sleep(0.07)
        assert completed == []

        await asyncio.sleep(0.08)
        assert len(completed) == 1
        assert not timer.is_running()

    @pytest.mark.asyncio
    async def test_rapid_restarts_fire_once(self):
        completed = []

        async def on_complete():
            completed.append(True)

        timer = SilenceTimer(on_complete, debounce_ms=50)
        for _ in range(10):
            timer.start()

        await asyncio.sleep(0.12)
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_override_duration(self):
        completed = []

        async def on_complete():
            completed.append(True)

        timer = SilenceTimer(on_complete, debounce_ms=1000)
        timer.start(override_ms=30)

        await asyncio.sleep(0.08)
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_restart_from_inside_callback(self):
        """Test a start() issued by the callback does not cancel the callback."""
        calls = []

        async def on_complete():
            calls.append("start")
            if len(calls) == 1:
                timer.start()
            await asyncio.sleep(0.01)
            calls.append("end")

        timer = SilenceTimer(on_complete, debounce_ms=30)
        timer.start()

        await asyncio.sleep(0.15)
        assert calls == ["start", "end", "start", "end"]

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self):
        async def on_complete():
            raise RuntimeError("boom")

        timer = SilenceTimer(on_complete, debounce_ms=20)
        timer.start()

        await asyncio.sleep(0.06)
        assert not timer.is_running()

    def test_cancel_when_idle(self):
        timer = SilenceTimer(_noop, debounce_ms=50)
        timer.cancel()
        assert not timer.is_running()

    def test_initial_debounce(self):
        """Test timer initializes with correct debounce."""
        timer = SilenceTimer(_noop, debounce_ms=500)
        assert timer.get_current_debounce_ms() == 500

    def test_initial_debounce_clamped(self):
        timer = SilenceTimer(_noop, debounce_ms=10, min_debounce_ms=100)
        assert timer.get_current_debounce_ms() == 100

    def test_manual_debounce_adjustment(self):
        """Test manually setting debounce duration."""
        timer = SilenceTimer(
            _noop,
            debounce_ms=400,
            min_debounce_ms=300,
            max_debounce_ms=1000
        )

        timer.set_debounce_ms(600)
        assert timer.get_current_debounce_ms() == 600

        # Clamped to max
        timer.set_debounce_ms(1500)
        assert timer.get_current_debounce_ms() == 1000

        # Clamped to min
        timer.set_debounce_ms(100)
        assert timer.get_current_debounce_ms() == 300
