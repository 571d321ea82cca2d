from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from levelup.logging import get_logger

logger = get_logger(__name__)

# Signing secrets: field name -> file name used when TEST_MODE generates one
_SIGNING_SECRETS = {
    "jwt_access_secret": ".jwt_access_secret",
    "jwt_refresh_secret": ".jwt_refresh_secret",
    "email_verification_secret": ".email_verification_secret",
}

_DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the Level Up API."""

    redis_url: str = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Redis URL for the token blacklist and rate limits; empty disables Redis",
    )
    shared_fs_root: str = env_field("/srv/levelup", "SHARED_FS_ROOT")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Level Up", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:4500", "APP_BASE_URL")
    frontend_url: str = env_field(
        "http://localhost:3000",
        "FRONTEND_URL",
        description="Base URL used for verification and plan share links",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: generated secrets, in-process cache fallback",
    )
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    email_verification_secret: str | None = env_field(None, "EMAIL_VERIFICATION_SECRET")
    jwt_issuer: str = env_field("levelup", "JWT_ISSUER")
    jwt_audience: str = env_field("levelup-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    verification_resend_cooldown_seconds: int = env_field(
        300, "VERIFICATION_RESEND_COOLDOWN_SECONDS", ge=0
    )
    max_active_refresh_tokens: int = env_field(5, "MAX_ACTIVE_REFRESH_TOKENS", ge=1)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE", ge=1
    )
    resend_rate_limit_per_hour: int = env_field(3, "RESEND_RATE_LIMIT_PER_HOUR", ge=1)
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator("frontend_url", "app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        missing = [name for name in _SIGNING_SECRETS if not getattr(self, name)]
        if not missing:
            return self
        if not self.test_mode:
            env_names = ", ".join(name.upper() for name in missing)
            raise ValueError(f"signing secrets must be configured: {env_names}")
        fs_root = Path(self.shared_fs_root)
        for name in missing:
            setattr(self, name, _load_or_create_secret(fs_root, _SIGNING_SECRETS[name]))
        return self

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        return origins or list(_DEFAULT_CORS_ORIGINS)


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Read a persisted secret or generate one so tokens survive restarts."""
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

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
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


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
