import json
import socket
import socketserver
import threading
import time

import pytest


class _Server(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def read_request(sock: socket.socket) -> bytes:
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk
    head, _, body = data.partition(b"\r\n\r\n")
    length = 0
    for line in head.split(b"\r\n")[1:]:
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            length = int(value.strip())
    while len(body) < length:
        chunk = sock.recv(4096)
        if not chunk:
            break
        body += chunk
    return head + b"\r\n\r\n" + body


def http_response(status="200 OK", headers=(), body=b"") -> bytes:
    lines = [f"HTTP/1.1 {status}"]
    lines.extend(f"{k}: {v}" for k, v in headers)
    lines.append(f"Content-Length: {len(body)}")
    lines.append("Connection: close")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


def nginx_reply(request: bytes) -> bytes:
    return http_response(headers=[("Server", "nginx"), ("Content-Type", "text/html")], body=b"<html>hi</html>")


GETH_VERSION = "Geth/v1.13.5-stable/linux-amd64/go1.21.4"


def geth_reply(request: bytes) -> bytes:
    """Answers JSON-RPC posts like a node and anything else like a web server."""
    if b"web3_clientVersion" in request:
        body = json.dumps({"jsonrpc": "2.0", "id": 1, "result": GETH_VERSION}).encode()
        return http_response(headers=[("Content-Type", "application/json")], body=body)
    return nginx_reply(request)


@pytest.fixture
def tcp_server():
    """start(respond) -> port. respond(request_bytes) returns the reply or None;
    with raw=True it is called as respond(sock, request_bytes) instead."""
    servers = []

    def start(respond, read=True, raw=False):
        class Handler(socketserver.BaseRequestHandler):
            def handle(self):
                self.request.settimeout(2.0)
                try:
                    data = read_request(self.request) if read else b""
                except OSError:
                    return
                if raw:
                    # respond drives the socket itself
                    respond(self.request, data)
                    return
                reply = respond(data)
                if reply:
                    try:
                        self.request.sendall(reply)
                    except OSError:
                        pass

        srv = _Server(("127.0.0.1", 0), Handler)
        threading.Thread(target=srv.serve_forever, daemon=True).start()
        servers.append(srv)
        return srv.server_address[1]

    yield start

    for srv in servers:
        srv.shutdown()
        srv.server_close()


@pytest.fixture
def free_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    # give the kernel a moment to release it
    time.sleep(0.01)
    return port


@pytest.fixture
def connect():
    opened = []

    def _connect(port):
        s = socket.create_connection(("127.0.0.1", port), timeout=2.0)
        opened.append(s)
        return s

    yield _connect

    for s in opened:
        s.close()
