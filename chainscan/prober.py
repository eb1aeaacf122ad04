from __future__ import annotations

import errno
import ipaddress
import socket
import time
from dataclasses import dataclass
from typing import Optional, Union

from .models import PortState, ScanTarget


@dataclass
class ProbeResult:
    port: int
    state: PortState
    elapsed_s: float
    sock: Optional[socket.socket] = None
    reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state is PortState.OPEN

    def close(self) -> None:
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None


def _family(target: Union[ScanTarget, str]) -> int:
    if isinstance(target, ScanTarget):
        return target.family
    return socket.AF_INET6 if ipaddress.ip_address(target).version == 6 else socket.AF_INET


def _reason(e: OSError) -> str:
    name = errno.errorcode.get(e.errno, "") if e.errno else ""
    text = e.strerror or str(e) or e.__class__.__name__
    return f"{name}: {text}" if name else text


def probe(target: Union[ScanTarget, str], port: int, timeout_s: float) -> ProbeResult:
    """
    One TCP connect() to (address, port), bounded by timeout_s.
    On success the connected socket is returned in the result and the caller
    owns it. Per-port failures never raise.
    """
    address = target.address if isinstance(target, ScanTarget) else target
    start = time.perf_counter()
    sock: Optional[socket.socket] = None
    try:
        sock = socket.socket(_family(target), socket.SOCK_STREAM)
        sock.settimeout(timeout_s)
        sock.connect((address, port))
        elapsed = time.perf_counter() - start
        result = ProbeResult(port, PortState.OPEN, round(elapsed, 4), sock=sock)
        sock = None
        return result
    except (socket.timeout, TimeoutError):
        return ProbeResult(port, PortState.TIMED_OUT, round(time.perf_counter() - start, 4))
    except ConnectionRefusedError:
        return ProbeResult(port, PortState.CLOSED, round(time.perf_counter() - start, 4))
    except OSError as e:
        return ProbeResult(port, PortState.ERROR, round(time.perf_counter() - start, 4), reason=_reason(e))
    finally:
        if sock:
            try:
                sock.close()
            except OSError:
                pass
