from __future__ import annotations

import json
import logging
import re
import socket
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence

from .models import ServiceInfo, ServiceLabel
from .ports import DEBUG_PORTS, ETH_RPC_PORTS

logger = logging.getLogger(__name__)

_PRINTABLE = re.compile(r"[^\x09\x0a\x0d\x20-\x7e]")
_STATUS_LINE = re.compile(r"^HTTP/(\d(?:\.\d)?) (\d{3})(?: .*)?$")

# Headers worth keeping in the summary, in display order
INFORMATIVE_HEADERS = (
    "Server",
    "X-Powered-By",
    "Content-Type",
    "Via",
    "X-Generator",
    "X-AspNet-Version",
    "WWW-Authenticate",
    "Location",
)

_JSON_CONTENT_TYPES = ("application/json", "application/graphql")
_API_BODY_MARKERS = ("graphql", "swagger", "openapi", '"/api', "/api/")


def _clean_text(s: str, max_len: int = 300) -> str:
    s = _PRINTABLE.sub("", s)
    s = s.strip()
    if len(s) > max_len:
        return s[:max_len] + "..."
    return s


@dataclass(frozen=True)
class ClassifierConfig:
    rpc_ports: FrozenSet[int] = frozenset(ETH_RPC_PORTS)
    debug_ports: FrozenSet[int] = frozenset(DEBUG_PORTS)
    io_timeout_s: float = 0.5
    max_response_bytes: int = 16384
    host_header: str = "localhost"
    api_refinement: bool = True
    rpc_method: str = "web3_clientVersion"


@dataclass
class HttpResponse:
    status_line: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return None


def _dechunk(raw: bytes) -> bytes:
    out = b""
    while raw:
        size_line, sep, rest = raw.partition(b"\r\n")
        if not sep:
            break
        try:
            size = int(size_line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            break
        if size == 0:
            break
        out += rest[:size]
        raw = rest[size + 2:]
    return out


def parse_http_response(data: bytes) -> Optional[HttpResponse]:
    """
    Parse a raw HTTP/1.x response. Returns None unless the first line is a
    valid status line.
    """
    if not data:
        return None
    head, sep, body = data.partition(b"\r\n\r\n")
    if not sep:
        head, sep, body = data.partition(b"\n\n")
    lines = head.decode("iso-8859-1").splitlines()
    if not lines:
        return None
    status_line = lines[0].strip()
    m = _STATUS_LINE.match(status_line)
    if not m:
        return None

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        name, colon, value = line.partition(":")
        if not colon or not name.strip():
            continue
        name = name.strip()
        # first occurrence wins
        if not any(k.lower() == name.lower() for k in headers):
            headers[name] = value.strip()

    resp = HttpResponse(status_line=_clean_text(status_line, 200), status=int(m.group(2)), headers=headers)
    if (resp.header("Transfer-Encoding") or "").lower() == "chunked":
        body = _dechunk(body)
    resp.body = body.decode("utf-8", errors="replace")
    return resp


def header_summary(resp: HttpResponse) -> Dict[str, str]:
    summary = {"Status": resp.status_line}
    for name in INFORMATIVE_HEADERS:
        value = resp.header(name)
        if value:
            summary[name] = _clean_text(value, 200)
    return summary


def looks_like_api(resp: HttpResponse) -> bool:
    """REST/GraphQL signatures: JSON content type or API-ish body."""
    ctype = (resp.header("Content-Type") or "").split(";", 1)[0].strip().lower()
    if ctype in _JSON_CONTENT_TYPES or ctype.endswith("+json"):
        return True
    body = resp.body.lower()
    return any(marker in body for marker in _API_BODY_MARKERS)


class ClassifyContext:
    """
    Connection state for one open port.

    stream() hands out the already-open handle first; later callers get a
    fresh connection since the first exchange usually ends with the peer
    closing. close() closes everything handed out, plus the handle if no
    strategy used it.
    """

    def __init__(self, address: str, port: int, handle: Optional[socket.socket], config: ClassifierConfig):
        self.address = address
        self.port = port
        self.config = config
        self._handle = handle
        self._opened: List[socket.socket] = []

    def stream(self) -> socket.socket:
        if self._handle is not None:
            sock, self._handle = self._handle, None
        else:
            sock = socket.create_connection((self.address, self.port), timeout=self.config.io_timeout_s)
        self._opened.append(sock)
        sock.settimeout(self.config.io_timeout_s)
        return sock

    def _recv_all(self, sock: socket.socket) -> bytes:
        # one io_timeout_s budget for the whole reply, not per recv
        deadline = time.monotonic() + self.config.io_timeout_s
        limit = self.config.max_response_bytes
        data = b""
        while len(data) < limit:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                chunk = sock.recv(min(4096, limit - len(data)))
            except socket.timeout:
                break
            except OSError:
                # reset after a reply still counts as a reply
                if data:
                    break
                raise
            if not chunk:
                break
            data += chunk
            if _response_complete(data):
                break
        return data

    def exchange(self, request: bytes) -> bytes:
        """Send one request on a stream and read the reply."""
        sock = self.stream()
        sock.sendall(request)
        return self._recv_all(sock)

    def close(self) -> None:
        socks = self._opened + ([self._handle] if self._handle is not None else [])
        for s in socks:
            try:
                s.close()
            except OSError:
                pass
        self._opened = []
        self._handle = None


def _response_complete(data: bytes) -> bool:
    head, sep, body = data.partition(b"\r\n\r\n")
    if not sep:
        return False
    m = re.search(rb"(?im)^content-length:\s*(\d+)\s*$", head)
    if m:
        return len(body) >= int(m.group(1))
    if re.search(rb"(?im)^transfer-encoding:\s*chunked\s*$", head):
        return body.endswith(b"0\r\n\r\n")
    return False


class Strategy:
    name = "strategy"

    def detect(self, ctx: ClassifyContext) -> Optional[ServiceInfo]:
        raise NotImplementedError


class EthereumRpcStrategy(Strategy):
    """POST a web3_clientVersion call; a JSON-RPC 2.0 envelope back is a node."""

    name = "ethereum_rpc"

    def detect(self, ctx: ClassifyContext) -> Optional[ServiceInfo]:
        if ctx.port not in ctx.config.rpc_ports:
            return None

        body = json.dumps(
            {"jsonrpc": "2.0", "method": ctx.config.rpc_method, "params": [], "id": 1},
            separators=(",", ":"),
        )
        request = (
            f"POST / HTTP/1.1\r\n"
            f"Host: {ctx.config.host_header}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n\r\n"
            f"{body}"
        )
        raw = ctx.exchange(request.encode())
        if not raw:
            return None

        headers: Dict[str, str] = {}
        resp = parse_http_response(raw)
        if resp is not None:
            payload = resp.body
            headers = header_summary(resp)
        else:
            # some nodes answer raw JSON without HTTP framing
            payload = raw.decode("utf-8", errors="replace")

        envelope = _parse_envelope(payload)
        if envelope is None:
            return None

        result = envelope.get("result")
        version = _clean_text(result, 200) if isinstance(result, str) and result.strip() else None
        return ServiceInfo(ServiceLabel.ETHEREUM_RPC, version=version, headers=headers)


def _parse_envelope(payload: str) -> Optional[dict]:
    try:
        doc = json.loads(payload.strip())
    except ValueError:
        return None
    if isinstance(doc, list) and doc:
        doc = doc[0]
    if not isinstance(doc, dict):
        return None
    if doc.get("jsonrpc") != "2.0":
        return None
    if "result" not in doc and "error" not in doc:
        return None
    return doc


class HttpStrategy(Strategy):
    """GET /; a valid status line means HTTP. Optionally refined into ApiEndpoint."""

    name = "http"

    def detect(self, ctx: ClassifyContext) -> Optional[ServiceInfo]:
        request = (
            f"GET / HTTP/1.1\r\n"
            f"Host: {ctx.config.host_header}\r\n"
            f"User-Agent: chainscan\r\n"
            f"Accept: */*\r\n"
            f"Connection: close\r\n\r\n"
        )
        resp = parse_http_response(ctx.exchange(request.encode()))
        if resp is None:
            return None

        server = resp.header("Server")
        label = ServiceLabel.HTTP_WEB
        if ctx.config.api_refinement and looks_like_api(resp):
            label = ServiceLabel.API_ENDPOINT
        return ServiceInfo(
            label,
            version=_clean_text(server, 120) if server else None,
            headers=header_summary(resp),
        )


class DebugPortStrategy(Strategy):
    name = "debug_port"

    def detect(self, ctx: ClassifyContext) -> Optional[ServiceInfo]:
        if ctx.port in ctx.config.debug_ports:
            return ServiceInfo(ServiceLabel.DEBUG_REMOTE)
        return None


def default_strategies() -> List[Strategy]:
    return [EthereumRpcStrategy(), HttpStrategy(), DebugPortStrategy()]


class ServiceClassifier:
    """
    Runs strategies in order; the first one to return a ServiceInfo wins.
    Nothing confident -> GenericTcp. Strategy failures are never fatal.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None, strategies: Optional[Sequence[Strategy]] = None):
        self.config = config or ClassifierConfig()
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    def classify(self, handle: Optional[socket.socket], address: str, port: int) -> ServiceInfo:
        """
        Called only after connect() succeeds. Takes ownership of handle and
        closes it before returning.
        """
        ctx = ClassifyContext(address, port, handle, self.config)
        try:
            for strategy in self.strategies:
                try:
                    info = strategy.detect(ctx)
                except Exception as e:
                    logger.debug("%s detection failed on port %d: %s", strategy.name, port, e, exc_info=True)
                    continue
                if info is not None:
                    return info
            return ServiceInfo(ServiceLabel.GENERIC_TCP)
        finally:
            ctx.close()
