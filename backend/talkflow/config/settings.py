# /talkflow/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Runtime
    environment: str = Field(default="production")
    api_version: str = "v1"
    log_level: str = "INFO"

    # MongoDB
    mongo_uri: str | None = None
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = True
    # "mongo" in deployments, "memory" for local runs and tests
    storage_backend: str = "mongo"

    # Redis
    redis_url: str = "redis://localhost:6379"

    # AI APIs
    gemini_api_key: str | None = None
    gemini_model: str = "models/gemini-1.5-flash"
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    ai_max_tokens: int = 500
    ai_temperature: float = 0.7

    # Command bus
    command_stream_name: str = "talkflow_commands"
    dead_letter_stream_name: str = "talkflow_commands_dead"
    command_consumer_group: str = "talkflow_handlers"
    command_workers: int = 4
    command_max_deliveries: int = 5
    command_claim_idle_ms: int = 60000
    # Lock expiry must outlast COMMAND_CLAIM_IDLE_MS so a reclaimed command waits for the running one
    talk_lock_timeout_seconds: int = 120
    talk_lock_wait_seconds: float = 30.0

    # Conversation engine
    response_history_limit: int = 10
    default_max_attempts: int = 3
    keyword_match_threshold: int = 85

    # Audit
    audit_retention_days: int = 365

    # HTTP
    cors_allowed_origins: List[str] = Field(default_factory=list)

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept either a JSON list or a comma-separated string."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("storage_backend")
    @classmethod
    def storage_backend_must_be_known(cls, v):
        if v not in ("mongo", "memory"):
            raise ValueError("STORAGE_BACKEND must be 'mongo' or 'memory'")
        return v

    @field_validator("response_history_limit", "default_max_attempts")
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def talk_lock_outlasts_claim_idle(self):
        if self.talk_lock_timeout_seconds * 1000 < self.command_claim_idle_ms:
            raise ValueError("TALK_LOCK_TIMEOUT_SECONDS must be at least COMMAND_CLAIM_IDLE_MS")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if settings_obj.storage_backend == "mongo" and not settings_obj.mongo_uri:
                raise ValueError("MONGO_URI is required in production")
            if not settings_obj.gemini_api_key and not settings_obj.openai_api_key:
                raise ValueError("At least one AI API key must be provided")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
