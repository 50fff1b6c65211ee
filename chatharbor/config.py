from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppEnv(str, Enum):
    """Deployment contexts the service recognises."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"
    TEST = "test"


# Environments where every admission policy is enforced
PRODUCTION_LIKE_ENVS = frozenset({AppEnv.PRODUCTION, AppEnv.STAGING})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/chatharbor", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (stub chat model, runtime resets).",
    )
    # No default and no generated fallback; the identity verifier
    # refuses to start without it.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("chatharbor", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of credentials issued at register/login",
    )
    clock_skew_seconds: int = env_field(
        0,
        "CLOCK_SKEW_SECONDS",
        description="Leeway applied to exp/nbf checks",
    )
    admission_enforced: bool | None = env_field(
        None,
        "ADMISSION_ENFORCED",
        description="Force bypassable rate limits on/off; defaults to production-like APP_ENV",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For hop as the client IP",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    llm_base_url: str = env_field(
        "https://api.groq.com/openai/v1", "LLM_BASE_URL"
    )
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_default_model: str = env_field("llama-3.3-70b-versatile", "LLM_DEFAULT_MODEL")
    llm_timeout_seconds: float = env_field(30.0, "LLM_TIMEOUT_SECONDS")
    max_message_length: int = env_field(5000, "MAX_MESSAGE_LENGTH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower()
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("redis_url", "llm_api_key", "jwt_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def production_like(self) -> bool:
        return self.app_env in PRODUCTION_LIKE_ENVS

    @property
    def enforce_admission(self) -> bool:
        """Whether bypassable admission policies are enforced."""
        if self.admission_enforced is not None:
            return self.admission_enforced
        return self.production_like


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
