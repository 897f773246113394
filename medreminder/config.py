# medreminder/config.py - environment driven configuration
from dotenv import load_dotenv

load_dotenv()
from typing import List, Optional
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "MedReminder Dispatch & Confirmation Engine"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # Database
    database_url: str = Field(default="sqlite:///./medreminder.db", alias="DATABASE_URL")

    # Redis (rate limit counter store)
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    # Shared secrets
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")
    webhook_token: Optional[str] = Field(default=None, alias="WEBHOOK_TOKEN")
    admin_api_token: Optional[str] = Field(default=None, alias="ADMIN_API_TOKEN")

    # Civil time and dispatch
    civil_utc_offset_hours: int = Field(default=7, alias="CIVIL_UTC_OFFSET_HOURS")
    dispatch_batch_size: int = Field(default=50, alias="DISPATCH_BATCH_SIZE")
    dispatch_batch_pause_ms: int = Field(default=50, alias="DISPATCH_BATCH_PAUSE_MS")
    dispatch_due_tolerance_minutes: int = Field(default=1, alias="DISPATCH_DUE_TOLERANCE_MINUTES")

    # Primary provider (Fonnte)
    fonnte_token: Optional[str] = Field(default=None, alias="FONNTE_TOKEN")
    fonnte_base_url: str = Field(default="https://api.fonnte.com", alias="FONNTE_BASE_URL")

    # Backup provider (Twilio)
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_number: Optional[str] = Field(default=None, alias="TWILIO_WHATSAPP_NUMBER")

    # Gateway policy
    messaging_providers: str = Field(default="fonnte,twilio", alias="MESSAGING_PROVIDERS")
    messaging_failover_enabled: bool = Field(default=True, alias="MESSAGING_FAILOVER_ENABLED")
    messaging_timeout_seconds: float = Field(default=10.0, alias="MESSAGING_TIMEOUT_SECONDS")
    messaging_rate_limit: int = Field(default=50, alias="MESSAGING_RATE_LIMIT")
    messaging_rate_window_seconds: int = Field(default=3600, alias="MESSAGING_RATE_WINDOW_SECONDS")

    # Intent classifier
    intent_classifier_url: Optional[str] = Field(default=None, alias="INTENT_CLASSIFIER_URL")
    intent_classifier_token: Optional[str] = Field(default=None, alias="INTENT_CLASSIFIER_TOKEN")
    intent_classifier_timeout_seconds: float = Field(default=8.0, alias="INTENT_CLASSIFIER_TIMEOUT_SECONDS")
    intent_confidence_threshold: float = Field(default=0.7, alias="INTENT_CONFIDENCE_THRESHOLD")

    # Conversation lifetimes
    conversation_ttl_hours: int = Field(default=24, alias="CONVERSATION_TTL_HOURS")
    verification_flow_ttl_hours: int = Field(default=2, alias="VERIFICATION_FLOW_TTL_HOURS")

    # --- Pydantic V2 Validators ---
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("intent_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0 <= v <= 1:
            raise ValueError("INTENT_CONFIDENCE_THRESHOLD must be between 0 and 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def provider_order(self) -> List[str]:
        names = [name.strip().lower() for name in self.messaging_providers.split(",") if name.strip()]
        return names or ["fonnte", "twilio"]

    @property
    def fonnte_enabled(self) -> bool:
        return bool(self.fonnte_token)

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_whatsapp_number)

    @property
    def redis_enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def classifier_enabled(self) -> bool:
        return bool(self.intent_classifier_url)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
