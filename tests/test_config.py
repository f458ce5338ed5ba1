"""Tests for settings parsing and signing secret management."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from tokenkeeper.config import Settings, get_settings, parse_duration, reset_settings_cache


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,seconds",
        [("30s", 30), ("15m", 900), ("1h", 3600), ("7d", 604800), (" 2m ", 120)],
    )
    def test_valid_durations(self, raw, seconds):
        assert parse_duration(raw) == seconds

    @pytest.mark.parametrize("raw", ["", "15", "m", "1.5h", "10w", "-1m", "1 h"])
    def test_invalid_durations(self, raw):
        assert parse_duration(raw) is None


class TestTokenLifetimes:
    def test_duration_strings_become_seconds(self, tmp_path):
        settings = Settings(
            jwt_secret="x" * 40,
            state_dir=str(tmp_path),
            access_token_ttl_seconds="1h",
            refresh_token_ttl_seconds="7d",
        )
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60

    def test_plain_numbers_are_seconds(self, tmp_path):
        settings = Settings(jwt_secret="x" * 40, state_dir=str(tmp_path), access_token_ttl_seconds="20")
        assert settings.access_token_ttl_seconds == 20

    @pytest.mark.parametrize("raw,seconds", [("30s", 30), ("90s", 90), ("1s", 1)])
    def test_second_durations_keep_precision(self, tmp_path, raw, seconds):
        settings = Settings(jwt_secret="x" * 40, state_dir=str(tmp_path), access_token_ttl_seconds=raw)
        assert settings.access_token_ttl_seconds == seconds

    def test_invalid_duration_falls_back_to_default(self, tmp_path):
        settings = Settings(
            jwt_secret="x" * 40,
            state_dir=str(tmp_path),
            access_token_ttl_seconds="forever",
            refresh_token_ttl_seconds="soon",
        )
        assert settings.access_token_ttl_seconds == 15 * 60
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60

    @pytest.mark.parametrize("value", [0, -5, True])
    def test_non_positive_lifetimes_rejected(self, tmp_path, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, state_dir=str(tmp_path), access_token_ttl_seconds=value)


class TestJwtSecret:
    def test_explicit_secret_is_kept(self, tmp_path):
        settings = Settings(jwt_secret="explicit-secret", state_dir=str(tmp_path))
        assert settings.jwt_secret == "explicit-secret"
        assert not (Path(tmp_path) / ".jwt_secret").exists()

    def test_generated_secret_is_persisted_and_reused(self, tmp_path):
        first = Settings(state_dir=str(tmp_path))
        secret_path = Path(tmp_path) / ".jwt_secret"

        assert len(first.jwt_secret) >= 32
        assert secret_path.read_text() == first.jwt_secret
        assert (secret_path.stat().st_mode & 0o777) == 0o600

        second = Settings(state_dir=str(tmp_path))
        assert second.jwt_secret == first.jwt_secret

    def test_short_persisted_secret_is_replaced(self, tmp_path):
        (Path(tmp_path) / ".jwt_secret").write_text("short")
        settings = Settings(state_dir=str(tmp_path))
        assert settings.jwt_secret != "short"
        assert len(settings.jwt_secret) >= 32


class TestFromEnv:
    def test_environment_overrides_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
        monkeypatch.setenv("JWT_ISSUER", "issuer-from-env")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

        settings = Settings.from_env()

        assert settings.state_dir == str(tmp_path)
        assert settings.access_token_ttl_seconds == 300
        assert settings.jwt_issuer == "issuer-from-env"
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_dotenv_file_is_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("JWT_AUDIENCE", raising=False)
        (Path(tmp_path) / ".env").write_text("JWT_AUDIENCE=from-dotenv\n")
        assert Settings.from_env().jwt_audience == "from-dotenv"

    def test_settings_cache_resets(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("JWT_ISSUER", "changed")
        reset_settings_cache()
        assert get_settings().jwt_issuer == "changed"
