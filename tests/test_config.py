"""Tests for settings parsing and defaults."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from scaffold.app.core.config import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_RATE_LIMIT_WINDOW,
    DEFAULT_SKIP_PATHS,
    DEFAULT_STORE_TIMEOUT,
    Settings,
    parse_duration,
)
from scaffold.app.core.utils import path_matches


class TestParseDuration:
    """Tests for duration strings."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1h", 3600.0),
            ("15m", 900.0),
            ("1h30m", 5400.0),
            ("500ms", 0.5),
            (" 2H ", 7200.0),
            ("10", 10.0),
            (90, 90.0),
            (timedelta(minutes=2), 120.0),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "1h x", "h1", "5 minutes"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettingsDefaults:
    """Zero or empty values fall back to defaults."""

    def test_defaults(self):
        settings = Settings()
        assert settings.rate_limit_requests == 100
        assert settings.rate_limit_window == 3600.0
        assert settings.rate_limit_status_code == 429
        assert settings.cache_default_ttl == 300
        assert settings.cache_only_methods == ["GET"]
        assert settings.redis_enabled is False

    def test_zero_values_replaced(self):
        settings = Settings(
            rate_limit_requests=0,
            rate_limit_window=0,
            rate_limit_status_code=0,
            rate_limit_message="  ",
            cache_default_ttl=0,
            rate_limit_skip_paths=[],
            cache_invalidate_patterns="",
        )
        assert settings.rate_limit_requests == 100
        assert settings.rate_limit_window == DEFAULT_RATE_LIMIT_WINDOW
        assert settings.rate_limit_status_code == 429
        assert settings.rate_limit_message == "Rate limit exceeded"
        assert settings.cache_default_ttl == 300
        assert settings.rate_limit_skip_paths == DEFAULT_SKIP_PATHS
        assert settings.cache_invalidate_patterns == ["http:*"]

    def test_invalid_window_uses_default(self):
        assert Settings(rate_limit_window="soon").rate_limit_window == DEFAULT_RATE_LIMIT_WINDOW

    @pytest.mark.parametrize(
        "field,value",
        [
            ("rate_limit_requests", -1),
            ("cache_default_ttl", -5),
            ("rate_limit_store_timeout", -0.5),
            ("redis_socket_timeout", -1.0),
            ("rate_limit_cleanup_interval_seconds", -1),
        ],
    )
    def test_rejects_negative_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_zero_timeouts_and_interval_use_defaults(self):
        """Zero store timeouts and sweep interval never stop startup."""
        settings = Settings(
            redis_socket_timeout=0,
            rate_limit_store_timeout=0,
            cache_store_timeout=0,
            rate_limit_cleanup_interval_seconds=0,
        )
        assert settings.redis_socket_timeout == DEFAULT_STORE_TIMEOUT
        assert settings.rate_limit_store_timeout == DEFAULT_STORE_TIMEOUT
        assert settings.cache_store_timeout == DEFAULT_STORE_TIMEOUT
        assert settings.rate_limit_cleanup_interval_seconds == DEFAULT_CLEANUP_INTERVAL

    def test_zero_values_from_environment(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_STORE_TIMEOUT", "0")
        monkeypatch.setenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", "0")

        settings = Settings()
        assert settings.rate_limit_store_timeout == DEFAULT_STORE_TIMEOUT
        assert settings.rate_limit_cleanup_interval_seconds == DEFAULT_CLEANUP_INTERVAL


class TestSettingsFromEnvironment:
    """Tests for values read from environment variables."""

    def test_lists_and_durations(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_WINDOW", "15m")
        monkeypatch.setenv("RATE_LIMIT_SKIP_PATHS", "/status, /internal/*")
        monkeypatch.setenv("CACHE_ONLY_METHODS", "get,head")
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "25")

        settings = Settings()

        assert settings.rate_limit_window == 900.0
        assert settings.rate_limit_skip_paths == ["/status", "/internal/*"]
        assert settings.cache_only_methods == ["GET", "HEAD"]
        assert settings.rate_limit_requests == 25

    def test_redis_toggle(self, monkeypatch):
        monkeypatch.setenv("REDIS_ENABLED", "true")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")

        settings = Settings()
        assert settings.redis_enabled is True
        assert settings.redis_url == "redis://cache:6379/2"


class TestPathMatches:
    """Tests for skip path patterns."""

    def test_exact_match(self):
        assert path_matches("/health", ["/health"])
        assert not path_matches("/healthz", ["/health"])

    def test_wildcard_prefix(self):
        assert path_matches("/health/ready", ["/health/*"])
        assert path_matches("/admin/users/1", ["/admin/*"])
        assert not path_matches("/items", ["/health/*"])

    def test_empty_patterns(self):
        assert not path_matches("/anything", [])
