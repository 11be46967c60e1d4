"""
Unit tests for InterruptionDetector.
"""

import pytest
from voiceloop.orchestration.interruption import DEFAULT_BACKCHANNEL_TOKENS, InterruptionDetector


class TestInterruptionDetector:
    """Test barge-in classification."""

    @pytest.mark.parametrize("text", ["um", "uh", "ah", "ok", "", "   ", "hi"])
    def test_short_text_is_not_meaningful(self, text):
        assert not InterruptionDetector().is_meaningful(text)

    @pytest.mark.parametrize("text", ["hmm", "yeah", "okay", "like", "Yeah", "  OKAY  ", "uh-huh"])
    def test_backchannels_are_not_meaningful(self, text):
        assert not InterruptionDetector().is_meaningful(text)

    @pytest.mark.parametrize("text", ["wait stop that", "stop", "what about tomorrow", "no no no"])
    def test_real_speech_is_meaningful(self, text):
        assert InterruptionDetector().is_meaningful(text)

    def test_length_boundary(self):
        """Exactly min_chars is too short; one more is enough."""
        detector = InterruptionDetector(min_chars=3)
        assert not detector.is_meaningful("abc")
        assert detector.is_meaningful("abcd")

    def test_backchannel_match_is_whole_string(self):
        """A backchannel inside a longer utterance does not suppress it."""
        detector = InterruptionDetector()
        assert detector.is_meaningful("yeah but wait")
        assert detector.is_meaningful("okay stop")

    def test_custom_token_set(self):
        detector = InterruptionDetector(backchannel_tokens=["Gotcha"])
        assert not detector.is_meaningful("gotcha")
        assert detector.is_meaningful("yeah!")

    def test_normalize(self):
        assert InterruptionDetector.normalize("  Hello There ") == "hello there"
        assert InterruptionDetector.normalize(None) == ""

    def test_default_tokens_include_core_set(self):
        assert {"uh", "um", "ah", "hmm", "like", "yeah", "okay"} <= DEFAULT_BACKCHANNEL_TOKENS
