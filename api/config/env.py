from __future__ import annotations

import os

VALID_EVS_ENVS = ("dev", "test", "staging", "prod")
DEPLOYED_ENVS = frozenset({"staging", "prod"})


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def evs_env() -> str:
    """
    Deployment environment from EVS_ENV. Unset means "dev" unless
    EVS_REQUIRE_STRICT_ENV is on; an unknown value is always fatal.
    """
    raw = _env_str("EVS_ENV", "")
    if not raw:
        if _env_bool("EVS_REQUIRE_STRICT_ENV", False):
            raise RuntimeError(f"EVS_ENV must be set to one of: {', '.join(VALID_EVS_ENVS)}.")
        return "dev"
    env = raw.lower()
    if env not in VALID_EVS_ENVS:
        raise RuntimeError(f"EVS_ENV must be set to one of: {', '.join(VALID_EVS_ENVS)}.")
    return env
