from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


class Settings(BaseModel):
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; relaxes secret length checks.",
    )

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Allowance for clock skew between nodes when checking exp",
    )
    access_token_ttl_seconds: int = env_field(
        900,
        "JWT_ACCESS_EXPIRES_IN",
        description="Access token TTL in seconds",
    )
    refresh_token_ttl_days: int = env_field(
        30,
        "JWT_REFRESH_EXPIRES_DAYS",
        description="Refresh token TTL in days",
    )
    password_hash_cost: int = env_field(
        3,
        "PASSWORD_HASH_COST",
        description="argon2id time cost for password and refresh-token hashes",
    )
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB")

    platform_admin_email_domains: list[str] = env_field(
        [],
        "PLATFORM_ADMIN_EMAIL_DOMAINS",
        description="Registrations from these email domains get the platform_admin role",
    )
    default_member_roles: list[str] = env_field(["learner"], "DEFAULT_MEMBER_ROLES")
    seed_catalog_on_startup: bool = env_field(True, "SEED_CATALOG_ON_STARTUP")

    store_retry_attempts: int = env_field(3, "STORE_RETRY_ATTEMPTS")
    store_retry_backoff_ms: int = env_field(50, "STORE_RETRY_BACKOFF_MS")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")

    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator(
        "platform_admin_email_domains",
        "default_member_roles",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("platform_admin_email_domains")
    @classmethod
    def _normalize_domains(cls, value: list[str]) -> list[str]:
        return [domain.lower().lstrip("@") for domain in value]

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_days",
        "password_hash_cost",
        "store_retry_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            raise ValueError(
                "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set"
            )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.test_mode:
            for env_name, secret in (
                ("JWT_ACCESS_SECRET", self.jwt_access_secret),
                ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
            ):
                if len(secret) < _MIN_SECRET_LENGTH:
                    raise ValueError(
                        f"{env_name} must be at least {_MIN_SECRET_LENGTH} characters"
                    )
        return self

    def is_platform_admin_email(self, email: str) -> bool:
        _, sep, domain = email.lower().rpartition("@")
        if not sep:
            return False
        return any(
            domain == allowed or domain.startswith(f"{allowed}.")
            for allowed in self.platform_admin_email_domains
        )


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
