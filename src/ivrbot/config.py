"""
Configuration management for the IVR navigator.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    ivr_number: str = ""  # Destination dialed alongside the media stream
    caller_id: str = ""
    stream_track: str = "inbound_track"  # Which leg's audio Twilio forks to /ws
    dtmf_pause_seconds: int = 60

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2-phonecall"
    deepgram_language: str = "en-US"
    deepgram_interim_results: bool = False

    # Flow
    ivr_flow_path: str = ""  # Empty means the built-in flow
    session_drain_timeout_seconds: float = 5.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.ivr_number:
            missing.append("IVR_NUMBER")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        if self.stream_track not in ("inbound_track", "outbound_track"):
            raise ConfigError(
                f"Invalid STREAM_TRACK '{self.stream_track}'. Expected 'inbound_track' or 'outbound_track'."
            )

        if self.dtmf_pause_seconds < 0:
            raise ConfigError(
                f"Invalid DTMF_PAUSE_SECONDS '{self.dtmf_pause_seconds}'. Expected a non-negative integer."
            )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            ivr_number=self.ivr_number,
            caller_id=self.caller_id or "NOT SET",
            stream_track=self.stream_track,
            dtmf_pause_seconds=self.dtmf_pause_seconds,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_interim_results=self.deepgram_interim_results,
            ivr_flow_path=self.ivr_flow_path or "built-in",
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
        )


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
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        ivr_number=os.getenv("IVR_NUMBER", "").strip(),
        caller_id=os.getenv("CALLER_ID", "").strip(),
        stream_track=os.getenv("STREAM_TRACK", "inbound_track").strip().lower(),
        dtmf_pause_seconds=_get_int("DTMF_PAUSE_SECONDS", 60),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2-phonecall"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_interim_results=_get_bool("DEEPGRAM_INTERIM_RESULTS", False),

        # Flow
        ivr_flow_path=os.getenv("IVR_FLOW_PATH", "").strip(),
        session_drain_timeout_seconds=_get_float("SESSION_DRAIN_TIMEOUT_SECONDS", 5.0),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
