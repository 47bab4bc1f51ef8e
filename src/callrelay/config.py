"""
Configuration management for the call relay.

Loads environment variables and provides a strongly-typed configuration object.
Missing service credentials are reported, not fatal: each capability degrades
on its own when its key is absent.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_APOLOGY = "I'm sorry, I'm having trouble right now. Could you please repeat that?"


class ConfigError(Exception):
    """Raised when configuration is invalid."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 3000
    log_level: str = "INFO"

    # Deepgram (transcription)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_endpointing_ms: int = 300
    deepgram_smart_format: bool = True

    # OpenAI (generation)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    generation_timeout_seconds: float = 10.0

    # ElevenLabs (synthesis)
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model_id: str = "eleven_turbo_v2"
    elevenlabs_output_format: str = "ulaw_8000"
    synthesis_timeout_seconds: float = 30.0

    # Supabase (business profile)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_profile_table: str = "business_info"

    # Clover (catalog)
    clover_api_url: str = "https://api.clover.com"
    clover_api_key: str = ""
    clover_merchant_id: str = ""
    clover_item_limit: int = 100

    # Session behaviour
    greeting_delay_ms: int = 500
    apology_text: str = DEFAULT_APOLOGY

    @property
    def stream_path(self) -> str:
        return "/streams"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL advertised to Twilio (requires PUBLIC_HOST)."""
        return f"wss://{self.public_host}{self.stream_path}"

    def missing_credentials(self) -> List[str]:
        """Names of service credentials that are not configured."""
        missing = []
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_key:
            missing.append("SUPABASE_KEY")
        if not self.clover_api_key:
            missing.append("CLOVER_API_KEY")
        if not self.clover_merchant_id:
            missing.append("CLOVER_MERCHANT_ID")
        return missing

    def validate(self) -> None:
        """Validate values; missing credentials are not an error here."""
        problems = []

        if not (0 < self.port < 65536):
            problems.append(f"PORT must be in 1..65535 (got {self.port})")
        if self.generation_timeout_seconds <= 0:
            problems.append("GENERATION_TIMEOUT_SECONDS must be positive")
        if self.synthesis_timeout_seconds <= 0:
            problems.append("SYNTHESIS_TIMEOUT_SECONDS must be positive")
        if self.greeting_delay_ms < 0:
            problems.append("GREETING_DELAY_MS must not be negative")
        if not self.apology_text.strip():
            problems.append("APOLOGY_TEXT must not be empty")

        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host or "(from request)",
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_key=_mask(self.deepgram_api_key),
            openai_model=self.openai_model,
            openai_key=_mask(self.openai_api_key),
            elevenlabs_voice_id=self.elevenlabs_voice_id,
            elevenlabs_model_id=self.elevenlabs_model_id,
            elevenlabs_key=_mask(self.elevenlabs_api_key),
            supabase_url=self.supabase_url or "NOT SET",
            clover_merchant_set=bool(self.clover_merchant_id),
            greeting_delay_ms=self.greeting_delay_ms,
        )


def _mask(secret: str) -> str:
    """Show the first 8 and last 4 characters of a key."""
    if not secret:
        return "NOT SET"
    if len(secret) > 12:
        return f"{secret[:8]}...{secret[-4:]}"
    return "***"


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", "").strip(),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        deepgram_smart_format=_get_bool("DEEPGRAM_SMART_FORMAT", True),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        generation_timeout_seconds=_get_float("GENERATION_TIMEOUT_SECONDS", 10.0),

        # ElevenLabs
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2"),
        elevenlabs_output_format=os.getenv("ELEVENLABS_OUTPUT_FORMAT", "ulaw_8000"),
        synthesis_timeout_seconds=_get_float("SYNTHESIS_TIMEOUT_SECONDS", 30.0),

        # Supabase
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_key=os.getenv("SUPABASE_KEY", ""),
        supabase_profile_table=os.getenv("SUPABASE_PROFILE_TABLE", "business_info"),

        # Clover
        clover_api_url=os.getenv("CLOVER_API_URL", "https://api.clover.com").rstrip("/"),
        clover_api_key=os.getenv("CLOVER_API_KEY", ""),
        clover_merchant_id=os.getenv("CLOVER_MERCHANT_ID", ""),
        clover_item_limit=_get_int("CLOVER_ITEM_LIMIT", 100),

        # Session behaviour
        greeting_delay_ms=_get_int("GREETING_DELAY_MS", 500),
        apology_text=os.getenv("APOLOGY_TEXT", DEFAULT_APOLOGY),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup. Invalid values fail fast; missing
    credentials are logged so the affected capability degrades at runtime.
    """
    config = get_config()
    config.validate()
    for key in config.missing_credentials():
        logger.warning("Missing credential, capability will be degraded", key=key)
    config.log_config()
    return config
