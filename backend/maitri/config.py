"""
Maitri - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json_format: bool = False

    # --- Display ---
    # IANA zone for dashboard clock times and the "calls today" boundary
    display_timezone: str = "Asia/Kolkata"

    # --- Storage ---
    # "sqlalchemy" = relational store (default)
    # "memory" = in-process dictionaries (tests, demos)
    storage_backend: str = "sqlalchemy"
    database_url: str = "sqlite:///./maitri.db"

    # --- Anonymization ---
    # 32-byte key as 64 hex characters: openssl rand -hex 32
    encryption_key: str = ""
    # Must stay stable across restarts or caller hashes stop matching
    phone_hash_salt: str = "maitri-stable-salt-2024"

    # --- Speech / LLM Analysis ---
    # "mock" = canned analysis (default, no external calls)
    # "openai" = Whisper transcription + chat completion triage
    analysis_backend: str = "mock"
    openai_api_key: Optional[str] = None
    openai_transcription_model: str = "whisper-1"
    openai_chat_model: str = "gpt-4-turbo"
    transcription_language: str = "hi"
    openai_timeout_seconds: float = 60.0
    openai_max_retries: int = 2

    # --- Telephony (Twilio) ---
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    validate_twilio_signature: bool = True
    # Public URL Twilio calls us on; used to rebuild signed URLs behind proxies
    public_base_url: Optional[str] = None
    tts_voice: str = "Polly.Aditi"
    tts_language: str = "hi-IN"

    # --- Triage Policy ---
    max_conversation_turns: int = 5
    emergency_severity_threshold: int = 4
    recent_calls_limit: int = 10

    # --- Security ---
    # When set, dashboard API and alert stream require "Authorization: Bearer <token>"
    dashboard_api_token: Optional[str] = None
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5000"

    @field_validator("display_timezone")
    @classmethod
    def check_display_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in ("development", "testing", "test")

    @property
    def display_tz(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
