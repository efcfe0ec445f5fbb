from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from blogauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted signing secret, generating one on first use.

    Tokens must survive restarts, so a generated secret is written to
    SECRETS_DIR with owner-only permissions and reused afterwards.
    """
    secrets_dir = Path(os.getenv("SECRETS_DIR", "/srv/blogauth"))
    secret_path = secrets_dir / filename

    try:
        secrets_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(secrets_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(secrets_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(secrets_dir), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SECRETS_DIR writable"
        ) from exc
    logger.warning("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service, read from env and `.env`."""

    database_url: str = env_field("postgresql://localhost:5432/blogauth", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis for shared rate limiting; in-process buckets are used when unset",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token signing. Access and refresh tokens never share a key.
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_secret: str = env_field(None, "REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("blogauth", "JWT_ISSUER")
    jwt_audience: str = env_field("blog-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        ge=1,
        le=60,
        description="Access tokens are meant to be minutes-scale",
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    # Step-up verification and risk
    login_challenge_ttl_minutes: int = env_field(5, "LOGIN_CHALLENGE_TTL_MINUTES", ge=1)
    risk_max_login_age_days: int = env_field(30, "RISK_MAX_LOGIN_AGE_DAYS", ge=1)
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Read client IP from CF-Connecting-IP / X-Forwarded-For / X-Real-IP",
    )
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)

    # Cookie transport
    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Disable only for plain-http local development"
    )
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Blog", "EMAIL_FROM_NAME")

    # Cloudflare Turnstile; verification is skipped when no secret is set
    turnstile_secret_key: str | None = env_field(None, "TURNSTILE_SECRET_KEY")
    turnstile_verify_url: str = env_field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify", "TURNSTILE_VERIFY_URL"
    )

    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(20, "VERIFY_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".jwt_secret")

    @field_validator("refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_secret")

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if self.jwt_secret == self.refresh_secret:
            raise ValueError("JWT_SECRET and REFRESH_SECRET must be different")
        return self


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
