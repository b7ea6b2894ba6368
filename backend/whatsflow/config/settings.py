# /whatsflow/config/settings.py

import sys
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings


REACHABILITY_POLICIES = ("all", "any")


class Settings(BaseSettings):
    # App
    environment: str = "development"
    log_level: str = "INFO"

    # Messaging channel (Evolution API)
    evolution_api_url: str = "http://localhost:8080"
    evolution_api_key: Optional[str] = None
    messaging_timeout_seconds: float = 15.0
    # One HTTP attempt; up to three attempts plus backoff must fit in the timeout above.
    messaging_attempt_timeout_seconds: float = 4.0

    # Flow engine
    max_steps_per_run: int = 500
    validate_before_execute: bool = True
    reachability_policy: str = "all"

    # Actions
    webhook_timeout_seconds: float = 10.0

    # Media storage (S3-compatible)
    media_bucket: Optional[str] = None
    media_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    media_url_expiry_seconds: int = 3600

    # Graph store
    mongo_uri: Optional[str] = None
    mongo_database: str = "whatsflow"

    # Observability
    alerting_webhook_url: Optional[str] = None

    # ---------------- Validators ---------------- #

    @field_validator("evolution_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("reachability_policy")
    @classmethod
    def policy_must_be_known(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in REACHABILITY_POLICIES:
            raise ValueError(f"REACHABILITY_POLICY must be one of {REACHABILITY_POLICIES}")
        return v

    @field_validator("max_steps_per_run")
    @classmethod
    def steps_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_STEPS_PER_RUN must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            if not settings_obj.evolution_api_key:
                raise ValueError("EVOLUTION_API_KEY is required in production")
            if settings_obj.messaging_timeout_seconds <= 0:
                raise ValueError("MESSAGING_TIMEOUT_SECONDS must be positive in production")
            if settings_obj.messaging_attempt_timeout_seconds >= settings_obj.messaging_timeout_seconds:
                raise ValueError("MESSAGING_ATTEMPT_TIMEOUT_SECONDS must be below MESSAGING_TIMEOUT_SECONDS")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
