from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from .errors import ConfigError


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def load_defaults(env: Optional[Mapping[str, str]] = None) -> Dict[str, object]:
    """
    Defaults for the CLI, overridable from the environment:
      CHAINSCAN_START_PORT, CHAINSCAN_END_PORT, CHAINSCAN_TIMEOUT_MS,
      CHAINSCAN_CONCURRENCY, CHAINSCAN_IO_TIMEOUT_MS,
      CHAINSCAN_DNS, CHAINSCAN_FALLBACK_DNS
    """
    env = os.environ if env is None else env
    return {
        "START_PORT": _env_int(env, "CHAINSCAN_START_PORT", 1),
        "END_PORT": _env_int(env, "CHAINSCAN_END_PORT", 1024),
        "TIMEOUT_MS": _env_int(env, "CHAINSCAN_TIMEOUT_MS", 1000),
        "CONCURRENCY": _env_int(env, "CHAINSCAN_CONCURRENCY", 100),
        "IO_TIMEOUT_MS": _env_int(env, "CHAINSCAN_IO_TIMEOUT_MS", 500),
        "DNS": env.get("CHAINSCAN_DNS") or "google",
        "FALLBACK_DNS": env.get("CHAINSCAN_FALLBACK_DNS") or "cloudflare",
    }
