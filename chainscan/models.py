from __future__ import annotations

import ipaddress
import math
import socket
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigError
from .ports import MAX_PORT, MIN_PORT


class ServiceLabel(str, Enum):
    ETHEREUM_RPC = "EthereumRpc"
    HTTP_WEB = "HttpWeb"
    API_ENDPOINT = "ApiEndpoint"
    DEBUG_REMOTE = "DebugRemote"
    GENERIC_TCP = "GenericTcp"
    # reserved for imported or hand-built results; ServiceClassifier falls
    # back to GENERIC_TCP and never returns this
    UNKNOWN = "Unknown"


class PortState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass(frozen=True)
class ScanTarget:
    host: str
    address: str

    @property
    def version(self) -> int:
        return ipaddress.ip_address(self.address).version

    @property
    def family(self) -> int:
        return socket.AF_INET6 if self.version == 6 else socket.AF_INET


@dataclass(frozen=True)
class ScanConfig:
    start_port: int = 1
    end_port: int = 1024
    timeout_s: float = 1.0
    concurrency: int = 100
    classify: bool = True

    def validate(self) -> "ScanConfig":
        for name in ("start_port", "end_port"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value < MIN_PORT or value > MAX_PORT:
                raise ConfigError(f"{name} must be in {MIN_PORT}..{MAX_PORT}, got {value}")
        if self.start_port > self.end_port:
            raise ConfigError(
                f"start port ({self.start_port}) is greater than end port ({self.end_port})"
            )
        if not isinstance(self.timeout_s, (int, float)) or not (self.timeout_s > 0) or not math.isfinite(self.timeout_s):
            raise ConfigError(f"timeout must be positive, got {self.timeout_s!r}")
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigError(f"concurrency limit must be >= 1, got {self.concurrency!r}")
        return self

    @property
    def ports(self) -> range:
        return range(self.start_port, self.end_port + 1)

    @property
    def total_ports(self) -> int:
        return self.end_port - self.start_port + 1


@dataclass(frozen=True)
class ServiceInfo:
    label: ServiceLabel
    version: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # read-only view; dict keeps insertion order
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "version": self.version,
            "headers": dict(self.headers),
        }


@dataclass(frozen=True)
class PortOutcome:
    port: int
    state: PortState
    elapsed_s: float = 0.0
    service: Optional[ServiceInfo] = None
    reason: Optional[str] = None

    @classmethod
    def open_(cls, port: int, elapsed_s: float, service: Optional[ServiceInfo] = None) -> "PortOutcome":
        return cls(port=port, state=PortState.OPEN, elapsed_s=elapsed_s, service=service)

    @classmethod
    def closed(cls, port: int, elapsed_s: float) -> "PortOutcome":
        return cls(port=port, state=PortState.CLOSED, elapsed_s=elapsed_s)

    @classmethod
    def timed_out(cls, port: int, elapsed_s: float) -> "PortOutcome":
        return cls(port=port, state=PortState.TIMED_OUT, elapsed_s=elapsed_s)

    @classmethod
    def error(cls, port: int, elapsed_s: float, reason: str) -> "PortOutcome":
        return cls(port=port, state=PortState.ERROR, elapsed_s=elapsed_s, reason=reason)

    @property
    def is_open(self) -> bool:
        return self.state is PortState.OPEN

    @property
    def is_errored(self) -> bool:
        return self.state in (PortState.TIMED_OUT, PortState.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "port": self.port,
            "status": self.state.value,
            "elapsed_s": self.elapsed_s,
            "service": self.service.label.value if self.service else None,
            "version": self.service.version if self.service else None,
            "headers": dict(self.service.headers) if self.service else {},
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScanReport:
    target: ScanTarget
    config: ScanConfig
    outcomes: List[PortOutcome]
    elapsed_s: float
    cancelled: bool = False

    def _count(self, state: PortState) -> int:
        return sum(1 for o in self.outcomes if o.state is state)

    @property
    def open_count(self) -> int:
        return self._count(PortState.OPEN)

    @property
    def closed_count(self) -> int:
        return self._count(PortState.CLOSED)

    @property
    def timed_out_count(self) -> int:
        return self._count(PortState.TIMED_OUT)

    @property
    def error_count(self) -> int:
        return self._count(PortState.ERROR)

    @property
    def errored_count(self) -> int:
        return self.timed_out_count + self.error_count

    @property
    def complete(self) -> bool:
        return len(self.outcomes) == self.config.total_ports

    def get(self, port: int) -> Optional[PortOutcome]:
        for o in self.outcomes:
            if o.port == port:
                return o
        return None

    def open_outcomes(self) -> List[PortOutcome]:
        return [o for o in self.outcomes if o.is_open]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.host,
            "address": self.target.address,
            "start_port": self.config.start_port,
            "end_port": self.config.end_port,
            "elapsed_s": round(self.elapsed_s, 4),
            "cancelled": self.cancelled,
            "summary": {
                "open": self.open_count,
                "closed": self.closed_count,
                "timed_out": self.timed_out_count,
                "error": self.error_count,
            },
            "ports": [o.to_dict() for o in self.outcomes],
        }
