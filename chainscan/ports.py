from __future__ import annotations

from typing import List

from .errors import ConfigError

MIN_PORT = 1
MAX_PORT = 65535

# Ethereum JSON-RPC (geth/erigon/nethermind defaults and neighbours)
ETH_RPC_PORTS = tuple(range(8545, 8550))

# Common debugger / remote shell listener ports
DEBUG_PORTS = (1234, 4444, 5555, 6666, 7777)


def validate_port(p: int) -> int:
    if p < MIN_PORT or p > MAX_PORT:
        raise ConfigError(f"Invalid port: {p}")
    return p


def port_range(start: int, end: int) -> range:
    validate_port(start)
    validate_port(end)
    if start > end:
        raise ConfigError(f"Invalid port range: {start}-{end}")
    return range(start, end + 1)


def parse_ports(spec: str) -> List[int]:
    """
    Parses a port specification string into a list of ports.
    Supports:
    - Single ports: "80"
    - Ranges: "8545-8549"
    - Comma-separated: "1234,4444,5555"
    - Mixed: "1234,4444,9000-9005"
    """
    spec = spec.strip()
    if not spec:
        raise ConfigError("Empty port spec")

    ports: List[int] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                start_s, end_s = part.split("-", 1)
                ports.extend(port_range(int(start_s), int(end_s)))
            else:
                ports.append(validate_port(int(part)))
        except ValueError as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid port spec: {part}") from e

    # De-dupe, keep sorted
    return sorted(set(ports))
