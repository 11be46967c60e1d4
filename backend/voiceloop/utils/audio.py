"""Audio utilities for base64 transport encoding."""

import base64
import binascii
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def decode_audio_base64(audio_b64: str) -> Optional[bytes]:
    """
    Decode base64-encoded audio to bytes.

    Args:
        audio_b64: Base64-encoded audio string

    Returns:
        Audio bytes or None on error
    """
    if not audio_b64:
        return None
    try:
        return base64.b64decode(audio_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Failed to decode base64 audio: {e}")
        return None


def encode_audio_base64(audio_bytes: bytes) -> str:
    """
    Encode audio bytes to base64.

    Args:
        audio_bytes: Raw audio data

    Returns:
        Base64-encoded string
    """
    return base64.b64encode(audio_bytes).decode('utf-8')
