from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Tuple

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_ENV = "SATELLITE_REQUEST_TIMEOUT"
FETCH_ATTEMPTS_ENV = "SATELLITE_FETCH_ATTEMPTS"
RETRY_BACKOFF_ENV = "SATELLITE_RETRY_BACKOFF"
MIN_IMAGE_BYTES_ENV = "SATELLITE_MIN_IMAGE_BYTES"
CACHE_TTL_ENV = "SATELLITE_CACHE_TTL"
PLACEHOLDER_TTL_ENV = "SATELLITE_PLACEHOLDER_TTL"
CACHE_MAX_ENTRIES_ENV = "SATELLITE_CACHE_MAX_ENTRIES"
CACHE_MAX_BYTES_ENV = "SATELLITE_CACHE_MAX_BYTES"
PROVIDERS_ENV = "SATELLITE_PROVIDERS"
USER_AGENT_ENV = "SATELLITE_USER_AGENT"
CACHE_ADMIN_KEY_ENV = "SATELLITE_CACHE_ADMIN_KEY"
API_ACCESS_KEY_ENV = "API_ACCESS_KEY"
DIAGNOSTICS_FLAG_ENV = "ENABLE_SATELLITE_DIAGNOSTICS"

# Upstream attempts are bounded so the worst case of a full fallback sweep stays
# predictable: providers x attempts x timeout.
DEFAULT_REQUEST_TIMEOUT = 15.0
MIN_REQUEST_TIMEOUT = 10.0
MAX_REQUEST_TIMEOUT = 20.0
DEFAULT_FETCH_ATTEMPTS = 2
MAX_FETCH_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 0.5
DEFAULT_MIN_IMAGE_BYTES = 1000
DEFAULT_CACHE_TTL = 24 * 60 * 60
DEFAULT_PLACEHOLDER_TTL = 5 * 60
DEFAULT_CACHE_MAX_ENTRIES = 500
DEFAULT_CACHE_MAX_BYTES = 64 * 1024 * 1024
DEFAULT_USER_AGENT = "solar-imagery/0.1 (+https://github.com/solar-imagery)"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the imagery service."""

    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    fetch_attempts: int = DEFAULT_FETCH_ATTEMPTS
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    min_image_bytes: int = DEFAULT_MIN_IMAGE_BYTES
    cache_ttl: int = DEFAULT_CACHE_TTL
    placeholder_ttl: int = DEFAULT_PLACEHOLDER_TTL
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cache_max_bytes: int = DEFAULT_CACHE_MAX_BYTES
    provider_names: Tuple[str, ...] | None = None
    user_agent: str = DEFAULT_USER_AGENT
    admin_api_key: str | None = None
    diagnostics_enabled: bool = False

    def __post_init__(self) -> None:
        # Bounds hold however the instance was built.
        timeout = _clamp(float(self.request_timeout), MIN_REQUEST_TIMEOUT, MAX_REQUEST_TIMEOUT)
        attempts = int(_clamp(int(self.fetch_attempts), 1, MAX_FETCH_ATTEMPTS))
        object.__setattr__(self, "request_timeout", timeout)
        object.__setattr__(self, "fetch_attempts", attempts)

    @classmethod
    def from_env(cls) -> "Settings":
        admin_key = _env_str(CACHE_ADMIN_KEY_ENV) or _env_str(API_ACCESS_KEY_ENV)
        return cls(
            request_timeout=_env_float(REQUEST_TIMEOUT_ENV, DEFAULT_REQUEST_TIMEOUT),
            fetch_attempts=_env_int(FETCH_ATTEMPTS_ENV, DEFAULT_FETCH_ATTEMPTS),
            retry_backoff=max(0.0, _env_float(RETRY_BACKOFF_ENV, DEFAULT_RETRY_BACKOFF)),
            min_image_bytes=max(0, _env_int(MIN_IMAGE_BYTES_ENV, DEFAULT_MIN_IMAGE_BYTES)),
            cache_ttl=max(1, _env_int(CACHE_TTL_ENV, DEFAULT_CACHE_TTL)),
            placeholder_ttl=max(1, _env_int(PLACEHOLDER_TTL_ENV, DEFAULT_PLACEHOLDER_TTL)),
            cache_max_entries=max(1, _env_int(CACHE_MAX_ENTRIES_ENV, DEFAULT_CACHE_MAX_ENTRIES)),
            cache_max_bytes=max(1, _env_int(CACHE_MAX_BYTES_ENV, DEFAULT_CACHE_MAX_BYTES)),
            provider_names=_env_list(PROVIDERS_ENV),
            user_agent=_env_str(USER_AGENT_ENV) or DEFAULT_USER_AGENT,
            admin_api_key=admin_key,
            diagnostics_enabled=_env_flag(DIAGNOSTICS_FLAG_ENV),
        )


def _env_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return float(raw_value)
    except ValueError:
        logger.warning("Ignoring invalid value %r for %s; using %s", raw_value, name, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        return int(raw_value)
    except ValueError:
        logger.warning("Ignoring invalid value %r for %s; using %s", raw_value, name, default)
        return default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() == "true"


def _env_list(name: str) -> Tuple[str, ...] | None:
    raw_value = os.getenv(name, "")
    names = tuple(token.strip() for token in raw_value.split(",") if token.strip())
    return names or None


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(min(value, maximum), minimum)
