from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hoopcards.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime settings for the marketplace auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hoopcards", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Token signing: access and refresh tokens never share a secret
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("hoopcards", "JWT_ISSUER")
    jwt_audience: str = env_field("hoopcards-web", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew allowance applied to token expiry checks",
    )
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    csrf_token_ttl_seconds: int = env_field(15 * 60, "CSRF_TOKEN_TTL_SECONDS")

    # Deployment and origin policy
    app_env: str = env_field("development", "APP_ENV")
    is_production: bool = env_field(False, "IS_PRODUCTION")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    deployment_url: str | None = env_field(
        None,
        "DEPLOYMENT_URL",
        description="Host name of the current deployment, without scheme",
    )
    allowed_origins: list[str] = env_field(
        [],
        "ALLOWED_ORIGINS",
        description="Comma separated list of extra origins trusted for CORS",
    )
    max_request_bytes: int = env_field(100_000, "MAX_REQUEST_BYTES")

    # Email delivery for password reset and verification links
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("HoopCards", "EMAIL_FROM_NAME")

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
        settings = cls(**merged)
        node_env = os.environ.get("NODE_ENV") or env_file_values.get("NODE_ENV")
        if (node_env or "").lower() == "production":
            settings.is_production = True
        return settings

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().rstrip("/") for item in value.split(",") if item.strip()]
        return [str(item).strip().rstrip("/") for item in value if str(item).strip()]

    @field_validator("redis_url", "deployment_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("is_production", mode="before")
    @classmethod
    def _parse_production_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "csrf_token_ttl_seconds",
        "max_request_bytes",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds or bytes")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _validate_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("JWT_LEEWAY_SECONDS cannot be negative")
        return value

    @property
    def production(self) -> bool:
        return self.is_production or self.app_env.lower() == "production"

    def require_signing_secrets(self) -> None:
        """Fail fast when token signing is misconfigured.

        Both secrets must be present and distinct. This runs once when the
        runtime is built so that requests never see a half-configured signer.
        """
        missing = [
            name
            for name, value in (
                ("JWT_SECRET", self.jwt_secret),
                ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
            )
            if not value
        ]
        if missing:
            logger.error("jwt_secret_missing", missing=missing)
            raise RuntimeError(
                f"Token signing secrets are not configured: {', '.join(missing)}"
            )
        if self.jwt_secret == self.jwt_refresh_secret:
            logger.error("jwt_secret_reused")
            raise RuntimeError("JWT_SECRET and JWT_REFRESH_SECRET must differ")


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
