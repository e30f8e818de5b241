"""
Configuration management for the Helpline voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Tuple

from dotenv import load_dotenv
import structlog

from src.helpline.errors import ConfigError

if TYPE_CHECKING:
    from src.helpline.delivery import DeliverySettings
    from src.helpline.session import SessionSettings

load_dotenv()

logger = structlog.get_logger(__name__)

__all__ = ["Config", "ConfigError", "get_config", "init_config"]


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 8080
    log_level: str = "INFO"
    artifact_dir: str = "/tmp/helpline-audio"

    # Language used for recognition, the answer greeting and generated replies
    language: str = "pt-BR"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_voice: str = "alice"
    call_timeout_seconds: int = 15

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_keywords: Tuple[str, ...] = field(default_factory=tuple)

    # LLM Provider (Groq/OpenAI)
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 256
    llm_temperature: float = 0.2
    max_history_turns: int = 10

    # TTS Provider (OpenAI/Cartesia)
    tts_provider: str = "openai"  # "openai" | "cartesia"
    openai_tts_model: str = "gpt-4o-mini-tts"
    openai_tts_voice: str = "alloy"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model: str = "sonic-2"

    # Agent settings
    agent_name: str = "Helpline"
    hold_greeting: str = "Olá! Um momento por favor."
    fallback_greeting: str = "Olá! Como posso te ajudar?"
    fallback_reply: str = "Desculpe, não consegui processar sua mensagem. Pode repetir?"
    fallback_recognition: str = "Desculpe, não entendi. Pode repetir?"
    significance_threshold: float = 0.6

    # Session timing (seconds)
    health_check_interval: float = 5.0
    inactivity_timeout: float = 10.0
    no_media_threshold: float = 10.0
    recover_after: float = 20.0
    terminate_after: float = 60.0
    max_consecutive_errors: int = 5
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 8.0
    stop_grace_period: float = 15.0

    # Delivery queue
    delivery_max_attempts: int = 3
    inter_message_delay: float = 2.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0
    sweep_interval: float = 60.0
    artifact_retention: float = 600.0

    @property
    def stream_url(self) -> str:
        """Get the media stream WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def audio_base_url(self) -> str:
        return f"{self.base_url}/audio"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.twilio_phone_number:
            missing.append("TWILIO_PHONE_NUMBER")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

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

        tts = (self.tts_provider or "openai").strip().lower()
        if tts not in ("openai", "cartesia"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'openai' or 'cartesia'."
            )
        if tts == "openai" and not self.openai_api_key and "OPENAI_API_KEY" not in missing:
            missing.append("OPENAI_API_KEY")
        if tts == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def session_settings(self) -> "SessionSettings":
        from src.helpline.session import SessionSettings

        return SessionSettings(
            health_check_interval=self.health_check_interval,
            inactivity_timeout=self.inactivity_timeout,
            no_media_threshold=self.no_media_threshold,
            recover_after=self.recover_after,
            terminate_after=self.terminate_after,
            max_consecutive_errors=self.max_consecutive_errors,
            max_reconnect_attempts=self.max_reconnect_attempts,
            reconnect_base_delay=self.reconnect_base_delay,
            reconnect_max_delay=self.reconnect_max_delay,
            significance_threshold=self.significance_threshold,
            fallback_reply=self.fallback_reply,
            fallback_recognition=self.fallback_recognition,
        )

    def delivery_settings(self) -> "DeliverySettings":
        from src.helpline.delivery import DeliverySettings

        return DeliverySettings(
            max_attempts=self.delivery_max_attempts,
            inter_message_delay=self.inter_message_delay,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            sweep_interval=self.sweep_interval,
            artifact_retention=self.artifact_retention,
        )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            language=self.language,
            artifact_dir=self.artifact_dir,
            deepgram_model=self.deepgram_model,
            deepgram_keywords=len(self.deepgram_keywords),
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            tts_provider=self.tts_provider,
            max_history_turns=self.max_history_turns,
            stop_grace_period=self.stop_grace_period,
            delivery_max_attempts=self.delivery_max_attempts,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


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


def _get_list(key: str) -> Tuple[str, ...]:
    """Get a comma-separated list from environment variable."""
    raw = os.getenv(key, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        artifact_dir=os.getenv("ARTIFACT_DIR", "/tmp/helpline-audio"),

        language=os.getenv("LANGUAGE", "pt-BR"),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        twilio_voice=os.getenv("TWILIO_VOICE", "alice"),
        call_timeout_seconds=_get_int("CALL_TIMEOUT_SECONDS", 15),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_keywords=_get_list("DEEPGRAM_KEYWORDS"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.2),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),

        # TTS Provider
        tts_provider=os.getenv("TTS_PROVIDER", "openai").strip().lower(),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "gpt-4o-mini-tts"),
        openai_tts_voice=os.getenv("OPENAI_TTS_VOICE", "alloy"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model=os.getenv("CARTESIA_MODEL", "sonic-2"),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Helpline"),
        hold_greeting=os.getenv("HOLD_GREETING", "Olá! Um momento por favor."),
        fallback_greeting=os.getenv("FALLBACK_GREETING", "Olá! Como posso te ajudar?"),
        fallback_reply=os.getenv(
            "FALLBACK_REPLY", "Desculpe, não consegui processar sua mensagem. Pode repetir?"
        ),
        fallback_recognition=os.getenv("FALLBACK_RECOGNITION", "Desculpe, não entendi. Pode repetir?"),
        significance_threshold=_get_float("SIGNIFICANCE_THRESHOLD", 0.6),

        # Session timing
        health_check_interval=_get_float("HEALTH_CHECK_INTERVAL", 5.0),
        inactivity_timeout=_get_float("INACTIVITY_TIMEOUT", 10.0),
        no_media_threshold=_get_float("NO_MEDIA_THRESHOLD", 10.0),
        recover_after=_get_float("RECOVER_AFTER", 20.0),
        terminate_after=_get_float("TERMINATE_AFTER", 60.0),
        max_consecutive_errors=_get_int("MAX_CONSECUTIVE_ERRORS", 5),
        max_reconnect_attempts=_get_int("MAX_RECONNECT_ATTEMPTS", 5),
        reconnect_base_delay=_get_float("RECONNECT_BASE_DELAY", 0.5),
        reconnect_max_delay=_get_float("RECONNECT_MAX_DELAY", 8.0),
        stop_grace_period=_get_float("STOP_GRACE_PERIOD", 15.0),

        # Delivery queue
        delivery_max_attempts=_get_int("DELIVERY_MAX_ATTEMPTS", 3),
        inter_message_delay=_get_float("INTER_MESSAGE_DELAY", 2.0),
        retry_base_delay=_get_float("RETRY_BASE_DELAY", 1.0),
        retry_max_delay=_get_float("RETRY_MAX_DELAY", 5.0),
        sweep_interval=_get_float("ARTIFACT_SWEEP_INTERVAL", 60.0),
        artifact_retention=_get_float("ARTIFACT_RETENTION", 600.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
