import logging
import re
from datetime import timedelta
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_REQUESTS = 100
DEFAULT_RATE_LIMIT_WINDOW = 3600.0
DEFAULT_RATE_LIMIT_MESSAGE = "Rate limit exceeded"
DEFAULT_RATE_LIMIT_STATUS_CODE = 429
DEFAULT_SKIP_PATHS = ["/health", "/health/*", "/metrics"]
DEFAULT_CACHE_TTL = 300
DEFAULT_CACHE_METHODS = ["GET"]
DEFAULT_INVALIDATE_PATTERNS = ["http:*"]
DEFAULT_STORE_TIMEOUT = 2.0
DEFAULT_CLEANUP_INTERVAL = 60
DEFAULT_WRITE_POLICY = "strict"

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")


def parse_duration(raw: Any) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds), ``timedelta`` objects and compound strings such
    as ``"1h"``, ``"15m"``, ``"1h30m"`` or ``"500ms"``.

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(raw, timedelta):
        return raw.total_seconds()
    if isinstance(raw, (int, float)):
        return float(raw)

    text = str(raw).strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {raw!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {raw!r}")
    return total


def _parse_str_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]
    return [p for p in re.split(r"[,\s]+", str(raw).strip()) if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    Zero or empty values fall back to the documented defaults instead of
    failing startup.
    """

    app_name: str = "apiscaffold"
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional shared store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = DEFAULT_STORE_TIMEOUT
    redis_max_connections: int = 50

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_requests: int = DEFAULT_RATE_LIMIT_REQUESTS
    rate_limit_window: float = DEFAULT_RATE_LIMIT_WINDOW  # seconds, accepts "1h", "15m"
    rate_limit_skip_paths: Annotated[list[str], NoDecode] = list(DEFAULT_SKIP_PATHS)
    rate_limit_include_headers: bool = True
    rate_limit_message: str = DEFAULT_RATE_LIMIT_MESSAGE
    rate_limit_status_code: int = DEFAULT_RATE_LIMIT_STATUS_CODE
    rate_limit_store_timeout: float = DEFAULT_STORE_TIMEOUT
    rate_limit_cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL
    rate_limit_write_policy: str = DEFAULT_WRITE_POLICY  # profile name for item writes

    # Response cache settings
    cache_enabled: bool = True
    cache_default_ttl: int = DEFAULT_CACHE_TTL  # 5 minutes
    cache_skip_paths: Annotated[list[str], NoDecode] = list(DEFAULT_SKIP_PATHS)
    cache_only_methods: Annotated[list[str], NoDecode] = list(DEFAULT_CACHE_METHODS)
    cache_invalidate_patterns: Annotated[list[str], NoDecode] = list(
        DEFAULT_INVALIDATE_PATTERNS
    )
    cache_store_timeout: float = DEFAULT_STORE_TIMEOUT

    @field_validator("rate_limit_window", mode="before")
    @classmethod
    def decode_rate_limit_window(cls, v: Any) -> float:
        if v is None or v == "" or v == 0:
            return DEFAULT_RATE_LIMIT_WINDOW
        try:
            seconds = parse_duration(v)
        except ValueError:
            logger.warning(
                "Invalid rate limit window duration, using default",
                extra={"window": v, "default_s": DEFAULT_RATE_LIMIT_WINDOW},
            )
            return DEFAULT_RATE_LIMIT_WINDOW
        return seconds if seconds > 0 else DEFAULT_RATE_LIMIT_WINDOW

    @field_validator("rate_limit_skip_paths", "cache_skip_paths", mode="before")
    @classmethod
    def decode_skip_paths(cls, v: Any) -> list[str]:
        return _parse_str_list(v) or list(DEFAULT_SKIP_PATHS)

    @field_validator("cache_only_methods", mode="before")
    @classmethod
    def decode_methods(cls, v: Any) -> list[str]:
        methods = [m.upper() for m in _parse_str_list(v)]
        return methods or list(DEFAULT_CACHE_METHODS)

    @field_validator("cache_invalidate_patterns", mode="before")
    @classmethod
    def decode_invalidate_patterns(cls, v: Any) -> list[str]:
        return _parse_str_list(v) or list(DEFAULT_INVALIDATE_PATTERNS)

    @field_validator("rate_limit_requests")
    @classmethod
    def default_rate_limit_requests(cls, v: int) -> int:
        """Replace an unset (zero) request count with the default."""
        if v < 0:
            raise ValueError("rate_limit_requests must not be negative")
        return v or DEFAULT_RATE_LIMIT_REQUESTS

    @field_validator("rate_limit_status_code")
    @classmethod
    def default_rate_limit_status_code(cls, v: int) -> int:
        return v or DEFAULT_RATE_LIMIT_STATUS_CODE

    @field_validator("rate_limit_message")
    @classmethod
    def default_rate_limit_message(cls, v: str) -> str:
        return v.strip() or DEFAULT_RATE_LIMIT_MESSAGE

    @field_validator("rate_limit_write_policy")
    @classmethod
    def default_write_policy(cls, v: str) -> str:
        return v.strip().lower() or DEFAULT_WRITE_POLICY

    @field_validator("cache_default_ttl")
    @classmethod
    def default_cache_ttl(cls, v: int) -> int:
        if v < 0:
            raise ValueError("cache_default_ttl must not be negative")
        return v or DEFAULT_CACHE_TTL

    @field_validator(
        "redis_socket_timeout", "rate_limit_store_timeout", "cache_store_timeout"
    )
    @classmethod
    def default_store_timeout(cls, v: float) -> float:
        """Replace an unset (zero) timeout with the default."""
        if v < 0:
            raise ValueError("Timeout values must not be negative")
        return v or DEFAULT_STORE_TIMEOUT

    @field_validator("rate_limit_cleanup_interval_seconds")
    @classmethod
    def default_cleanup_interval(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate_limit_cleanup_interval_seconds must not be negative")
        return v or DEFAULT_CLEANUP_INTERVAL

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
