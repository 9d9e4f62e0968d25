"""
Configuration management for the voice call engine.

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
    twilio_validate_signature: bool = True

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2"
    deepgram_language: str = "en-AU"
    deepgram_tts_voice: str = "aura-asteria-en"

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_streaming: bool = True
    llm_max_retries: int = 2

    # Stream tokens
    stream_token_secret: str = ""
    stream_token_ttl_seconds: float = 30.0
    stream_token_sweep_seconds: float = 60.0

    # Internal API (calendar tools, call-completed notifications)
    internal_api_url: str = ""
    internal_api_secret: str = ""

    # Conversation
    max_conversation_messages: int = 21
    test_mode: bool = False

    # Single-tenant call context
    organization_id: str = ""
    organization_name: str = "our office"
    assistant_id: str = ""
    system_prompt: str = ""
    first_message: str = ""
    voice_id: str = ""
    calendar_enabled: bool = False
    transfer_rules_json: str = ""
    knowledge_base: str = ""
    business_timezone: str = "Australia/Sydney"
    business_hours_json: str = ""
    appointment_duration_minutes: int = 30

    @property
    def ws_url(self) -> str:
        """Get the media stream WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws/audio"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.stream_token_secret:
            missing.append("STREAM_TOKEN_SECRET")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

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
            deepgram_stt_model=self.deepgram_stt_model,
            deepgram_language=self.deepgram_language,
            deepgram_tts_voice=self.deepgram_tts_voice,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_streaming=self.llm_streaming,
            stream_token_ttl_seconds=self.stream_token_ttl_seconds,
            max_conversation_messages=self.max_conversation_messages,
            test_mode=self.test_mode,
            calendar_enabled=self.calendar_enabled,
            business_timezone=self.business_timezone,
            internal_api_url=self.internal_api_url or "NOT SET",
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            internal_secret_set=bool(self.internal_api_secret),
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
        twilio_validate_signature=_get_bool("TWILIO_VALIDATE_SIGNATURE", True),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-AU"),
        deepgram_tts_voice=os.getenv("DEEPGRAM_TTS_VOICE", "aura-asteria-en"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_streaming=_get_bool("LLM_STREAMING", True),
        llm_max_retries=_get_int("LLM_MAX_RETRIES", 2),

        # Stream tokens
        stream_token_secret=os.getenv("STREAM_TOKEN_SECRET", ""),
        stream_token_ttl_seconds=_get_float("STREAM_TOKEN_TTL_SECONDS", 30.0),
        stream_token_sweep_seconds=_get_float("STREAM_TOKEN_SWEEP_SECONDS", 60.0),

        # Internal API
        internal_api_url=os.getenv("INTERNAL_API_URL", "").rstrip("/"),
        internal_api_secret=os.getenv("INTERNAL_API_SECRET", ""),

        # Conversation
        max_conversation_messages=_get_int("MAX_CONVERSATION_MESSAGES", 21),
        test_mode=_get_bool("TEST_MODE", False),

        # Call context
        organization_id=os.getenv("ORGANIZATION_ID", ""),
        organization_name=os.getenv("ORGANIZATION_NAME", "our office"),
        assistant_id=os.getenv("ASSISTANT_ID", ""),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        first_message=os.getenv("FIRST_MESSAGE", ""),
        voice_id=os.getenv("VOICE_ID", ""),
        calendar_enabled=_get_bool("CALENDAR_ENABLED", False),
        transfer_rules_json=os.getenv("TRANSFER_RULES", ""),
        knowledge_base=os.getenv("KNOWLEDGE_BASE", ""),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "Australia/Sydney"),
        business_hours_json=os.getenv("BUSINESS_HOURS", ""),
        appointment_duration_minutes=_get_int("APPOINTMENT_DURATION_MINUTES", 30),
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
