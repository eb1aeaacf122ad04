from __future__ import annotations

from typing import Dict, Optional


class ChainscanError(Exception):
    """Base class for run-level failures."""


class ConfigError(ChainscanError, ValueError):
    """Invalid scan configuration. Raised before any network activity."""


class ResolutionError(ChainscanError):
    def __init__(self, host: str, failures: Optional[Dict[str, str]] = None):
        self.host = host
        self.failures = dict(failures or {})
        detail = "; ".join(f"{name}: {why}" for name, why in self.failures.items())
        msg = f"Could not resolve target '{host}'"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class DuplicateOutcomeError(ChainscanError, RuntimeError):
    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Port {port} already has an outcome")
