"""
Runtime settings for evescope.

Everything is read from EVS_* environment variables once, by load_settings(),
and handed around as a frozen Settings value. The dashboard engine itself
never reads the environment.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from api.config.env import DEPLOYED_ENVS, _env_int, _env_str, evs_env
from services.chart_configs import TIMESTAMP_LOCAL, TIMESTAMP_UTC
from services.filter_state import DEFAULT_TIME_RANGE, validate_time_range

log = logging.getLogger("evescope.config")

DEFAULT_BACKEND_URL = "http://127.0.0.1:5636"
DEFAULT_MAX_SESSIONS = 64
DEFAULT_HTTP_TIMEOUT = 10
DEFAULT_LOG_LEVEL = "INFO"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def normalize_query_timeout(raw: Optional[object]) -> Optional[float]:
    """
    Per-request timeout in seconds. 0 disables the timeout; anything that is
    not a non-negative integer falls back to the default (disabled).
    """
    if raw is None:
        return None
    try:
        seconds = int(str(raw).strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return float(seconds)


def normalize_timestamp_mode(raw: Optional[str]) -> str:
    mode = str(raw or "").strip().lower()
    return mode if mode in {TIMESTAMP_LOCAL, TIMESTAMP_UTC} else TIMESTAMP_LOCAL


def normalize_log_level(raw: Optional[str]) -> str:
    level = str(raw or "").strip().upper()
    return level if level in _LOG_LEVELS else DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    backend_url: str = DEFAULT_BACKEND_URL
    backend_token: Optional[str] = None
    http_timeout: float = float(DEFAULT_HTTP_TIMEOUT)
    query_timeout: Optional[float] = None
    timestamp_mode: str = TIMESTAMP_LOCAL
    default_time_range: str = DEFAULT_TIME_RANGE
    max_sessions: int = DEFAULT_MAX_SESSIONS
    log_level: str = DEFAULT_LOG_LEVEL


def load_settings() -> Settings:
    env = evs_env()

    default_range = _env_str("EVS_DEFAULT_TIME_RANGE", DEFAULT_TIME_RANGE)
    try:
        default_range = validate_time_range(default_range)
    except ValueError:
        log.warning("config.invalid_default_time_range", extra={"value": default_range})
        default_range = DEFAULT_TIME_RANGE

    token = _env_str("EVS_BACKEND_TOKEN", "") or None
    if token is None and env in DEPLOYED_ENVS:
        log.warning("config.backend_token_missing", extra={"env": env})

    return Settings(
        env=env,
        backend_url=_env_str("EVS_BACKEND_URL", DEFAULT_BACKEND_URL),
        backend_token=token,
        http_timeout=float(max(1, _env_int("EVS_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT))),
        query_timeout=normalize_query_timeout(_env_str("EVS_QUERY_TIMEOUT", "0")),
        timestamp_mode=normalize_timestamp_mode(_env_str("EVS_TIMESTAMP_MODE", TIMESTAMP_LOCAL)),
        default_time_range=default_range,
        max_sessions=max(1, _env_int("EVS_MAX_SESSIONS", DEFAULT_MAX_SESSIONS)),
        log_level=normalize_log_level(_env_str("EVS_LOG_LEVEL", DEFAULT_LOG_LEVEL)),
    )
