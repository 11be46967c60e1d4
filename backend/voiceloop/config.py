"""
Configuration management using Pydantic Settings.
Loads all environment variables with validation.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


DEFAULT_FILLER_PHRASES = [
    "Hmm, let me think.",
    "Okay, one moment.",
    "Sure, let me see.",
    "Right, give me a second.",
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses .env file in development, environment variables in production.

    Vendor credentials are optional so the server can start without them;
    a missing key surfaces as a recoverable per-turn error.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Keys
    deepgram_api_key: Optional[str] = Field(
        default=None,
        description="Deepgram API key for speech-to-text"
    )
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key for text generation"
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for streaming responses"
    )
    openai_max_tokens: int = Field(
        default=200,
        ge=16,
        le=4096,
        description="Upper bound on generated tokens per turn"
    )
    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        description="ElevenLabs API key for text-to-speech"
    )
    elevenlabs_voice_id: str = Field(
        default="21m00Tcm4TlvDq8ikWAM",
        description="ElevenLabs voice ID (default: Rachel)"
    )
    elevenlabs_model_id: str = Field(
        default="eleven_turbo_v2_5",
        description="ElevenLabs model used by the stream-input socket"
    )

    # Speech recognition
    stt_sample_rate: int = Field(
        default=16000,
        ge=8000,
        le=48000,
        description="Sample rate of the 16-bit PCM audio fed to the recognizer"
    )
    stt_language: str = Field(
        default="en-US",
        description="Recognizer language code"
    )

    # Turn timing
    silence_debounce_ms: int = Field(
        default=300,
        ge=50,
        le=3000,
        description="Quiet interval after the last recognizer event before a turn starts"
    )
    min_silence_debounce_ms: int = Field(
        default=100,
        ge=50,
        le=1000,
        description="Lower bound for runtime debounce updates"
    )
    max_silence_debounce_ms: int = Field(
        default=1500,
        ge=300,
        le=3000,
        description="Upper bound for runtime debounce updates"
    )
    token_flush_threshold_chars: int = Field(
        default=30,
        ge=1,
        le=500,
        description="Flush the token buffer once it grows past this many characters"
    )
    token_flush_delay_ms: int = Field(
        default=30,
        ge=0,
        le=1000,
        description="Debounced flush delay since the last generated token"
    )
    turn_settle_delay_ms: int = Field(
        default=500,
        ge=0,
        le=5000,
        description="Delay before announcing LISTENING after a turn completes"
    )
    synthesis_fallback_timeout_ms: int = Field(
        default=5000,
        ge=100,
        le=60000,
        description="Force synthesis completion this long after generation ends"
    )
    interruption_min_chars: int = Field(
        default=3,
        ge=0,
        le=50,
        description="Transcripts must be longer than this to interrupt the agent"
    )
    filler_phrases: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FILLER_PHRASES),
        description="Stock phrases spoken at turn start to mask generation latency"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Environment: development, staging, or production"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # Server Settings
    host: str = Field(
        default="0.0.0.0",
        description="Server host address"
    )
    port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="Server port"
    )

    # CORS
    frontend_url: str = Field(
        default="http://localhost:5173",
        description="Frontend URL for CORS"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    @field_validator("filler_phrases")
    @classmethod
    def validate_filler_phrases(cls, v: List[str]) -> List[str]:
        """Drop blank phrases; at least one must remain."""
        phrases = [p.strip() for p in v if p and p.strip()]
        if not phrases:
            raise ValueError("filler_phrases must contain at least one non-empty phrase")
        return phrases

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
