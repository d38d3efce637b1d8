import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from socketserver import ThreadingMixIn

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from mediaproxy.stream_proxy import ProxyHTTPServer, RequestForwarder


class _OriginServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class FakeOrigin:
    """Tiny origin server. Routes map a path to fn(handler) -> None."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        origin = self

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt, *args):
                pass

            def do_GET(self):
                path = self.path.split("?", 1)[0]
                origin.requests.append({"path": self.path, "headers": dict(self.headers.items())})
                fn = origin.routes.get(path)
                if fn is None:
                    self.send_response(404)
                    self.send_header("Content-Type", "text/plain")
                    body = b"no such thing"
                    self.send_header("Content-Length", str(len(body)))
                    self.end_headers()
                    self.wfile.write(body)
                    return
                fn(self)

        self.server = _OriginServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        self.thread.start()

    @property
    def base(self):
        return f"http://127.0.0.1:{self.server.server_address[1]}"

    def url(self, path):
        return self.base + path

    @property
    def last_headers(self):
        return {k.lower(): v for k, v in self.requests[-1]["headers"].items()}

    def close(self):
        self.server.shutdown()
        self.server.server_close()


def reply(handler, status, body=b"", headers=None, length=True):
    handler.send_response(status)
    for k, v in (headers or {}).items():
        handler.send_header(k, v)
    if length:
        handler.send_header("Content-Length", str(len(body)))
    else:
        handler.send_header("Connection", "close")
        handler.close_connection = True
    handler.end_headers()
    if body:
        handler.wfile.write(body)


def free_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@pytest.fixture
def origin():
    o = FakeOrigin()
    try:
        yield o
    finally:
        o.close()


@pytest.fixture
def proxy_factory():
    servers = []

    def make(forwarder=None):
        server = ProxyHTTPServer(("127.0.0.1", 0), forwarder or RequestForwarder())
        t = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        t.start()
        servers.append(server)
        return server

    try:
        yield make
    finally:
        for server in servers:
            server.begin_drain()


@pytest.fixture
def proxy_server(proxy_factory):
    return proxy_factory()


@pytest.fixture
def client():
    s = requests.Session()
    s.trust_env = False
    try:
        yield s
    finally:
        s.close()
