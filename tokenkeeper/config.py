from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenkeeper.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}

DEFAULT_ACCESS_TOKEN_TTL_SECONDS = 15 * 60
DEFAULT_REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60


def parse_duration(value: str) -> int | None:
    """Parse a ``<int><s|m|h|d>`` duration into seconds.

    Returns ``None`` when the string does not follow that grammar.
    """
    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        return None
    return int(match.group(1)) * _DURATION_UNIT_SECONDS[match.group(2)]


def _seconds_from_setting(value: Any, *, default: int, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number of seconds or a duration string")
    if isinstance(value, (int, float)):
        seconds = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        seconds = int(value.strip())
    elif isinstance(value, str):
        parsed = parse_duration(value)
        if parsed is None:
            logger.warning("invalid_duration_setting", setting=name, value=value, default=default)
            return default
        seconds = parsed
    else:
        raise ValueError(f"{name} must be a number of seconds or a duration string")
    if seconds <= 0:
        raise ValueError(f"{name} must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenkeeper", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str = env_field(
        "/srv/tokenkeeper",
        "STATE_DIR",
        description="Directory for the persisted signing secret and memory-store state",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and deterministic behaviour in tests",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokenkeeper", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenkeeper-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        DEFAULT_ACCESS_TOKEN_TTL_SECONDS,
        "ACCESS_TOKEN_TTL",
        description="Access token lifetime in seconds, or a duration such as 15m",
    )
    refresh_token_ttl_seconds: int = env_field(
        DEFAULT_REFRESH_TOKEN_TTL_SECONDS,
        "REFRESH_TOKEN_TTL",
        description="Refresh token lifetime in seconds, or a duration such as 7d",
    )
    clock_skew_leeway_seconds: int = env_field(
        0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0, le=300
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=1)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="argon2 memory cost in KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    general_rate_limit_per_window: int = env_field(100, "GENERAL_RATE_LIMIT_PER_WINDOW")
    general_rate_limit_window_seconds: int = env_field(
        15 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS"
    )
    auth_rate_limit_per_window: int = env_field(10, "AUTH_RATE_LIMIT_PER_WINDOW")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_per_window: int = env_field(5, "LOGIN_RATE_LIMIT_PER_WINDOW")
    login_rate_limit_window_seconds: int = env_field(60 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    cors_allow_origins: List[str] = env_field(
        [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ],
        "CORS_ALLOW_ORIGINS",
    )

    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator("access_token_ttl_seconds", mode="before")
    @classmethod
    def _parse_access_ttl(cls, value: Any) -> int:
        return _seconds_from_setting(
            value, default=DEFAULT_ACCESS_TOKEN_TTL_SECONDS, name="access_token_ttl_seconds"
        )

    @field_validator("refresh_token_ttl_seconds", mode="before")
    @classmethod
    def _parse_refresh_ttl(cls, value: Any) -> int:
        return _seconds_from_setting(
            value, default=DEFAULT_REFRESH_TOKEN_TTL_SECONDS, name="refresh_token_ttl_seconds"
        )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(
            (info.data or {}).get("state_dir")
            or os.getenv("STATE_DIR", "/srv/tokenkeeper")
        )
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g. in a container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, secret_path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
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
