"""
Local HTTP proxy that lets an embedded player stream third-party media.

Origins frequently refuse browser playback because of CORS, cookies or the
Referer check. The player instead asks this proxy for
/api/stream/proxy?url=...&cookie=...&referer=..., and the proxy fetches the
origin with the right headers and hands the bytes back with permissive CORS.

Design notes:
- One shared requests.Session with trust_env disabled so system or
  environment proxy settings can never loop requests back through here.
- Non-playlist bodies are streamed chunk by chunk; Range requests and 206
  responses pass through untouched.
- HLS playlists are buffered and rewritten so segments and keys also go
  through the proxy (see playlist.py).
"""

from __future__ import annotations

import json
import logging
import threading
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import requests
from urllib3.exceptions import HTTPError as RawReadError

from mediaproxy.http_headers import (
    DEFAULT_REFERER,
    DEFAULT_USER_AGENT,
    EXPOSED_RESPONSE_HEADERS,
    forwarded_response_headers,
    upstream_request_headers,
)
from mediaproxy.playlist import is_playlist_content_type, rewrite_playlist

LOG = logging.getLogger(__name__)

PROXY_PATH = "/api/stream/proxy"
PING_PATH = "/ping"

_CLIENT_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


def make_session() -> requests.Session:
    """Shared upstream client. Never routed through an external proxy."""
    session = requests.Session()
    session.trust_env = False
    session.proxies.clear()
    # Bodies are relayed as-is, so ask origins not to compress them.
    session.headers["Accept-Encoding"] = "identity"
    return session


def _log_target(url: str) -> str:
    return url[:50]


class RequestForwarder:
    """Per-request pipeline: build the origin request, relay the response.

    One instance is shared by every handler thread; it only holds the
    session and immutable settings.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        default_user_agent: str = DEFAULT_USER_AGENT,
        default_referer: str = DEFAULT_REFERER,
        chunk_size: int = 64 * 1024,
        timeout: Optional[float] = None,
    ) -> None:
        self.session = session or make_session()
        self.default_user_agent = default_user_agent
        self.default_referer = default_referer
        self.chunk_size = max(1024, int(chunk_size))
        self.timeout = timeout

    def open_upstream(
        self,
        url: str,
        inbound: Mapping[str, str],
        cookie: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> requests.Response:
        headers = upstream_request_headers(
            inbound,
            cookie=cookie,
            referer=referer,
            default_user_agent=self.default_user_agent,
            default_referer=self.default_referer,
        )
        return self.session.get(url, headers=headers, stream=True, timeout=self.timeout, allow_redirects=True)

    def forward(self, handler: "StreamProxyHandler", url: str, cookie: Optional[str], referer: Optional[str]) -> int:
        """Run the pipeline for one GET and write the reply. Returns the status sent."""
        LOG.info("[Proxy] Requesting: %s...", _log_target(url))
        try:
            resp = self.open_upstream(url, handler.headers, cookie=cookie, referer=referer)
        except requests.RequestException as e:
            LOG.warning("[Proxy] Request Failed: %s", e)
            return handler.send_text(500, f"Proxy failed: {e}")

        try:
            status = resp.status_code
            headers = forwarded_response_headers(resp.headers)

            if not (200 <= status < 300):
                # 206 is already inside the 2xx range.
                try:
                    error_text = resp.text
                except requests.RequestException as e:
                    error_text = ""
                    LOG.debug("[Proxy] Could not read error body: %s", e)
                LOG.warning("[Proxy] Error %s: %s", status, error_text)
                return handler.send_text(status, error_text, headers=headers)

            if is_playlist_content_type(headers.get("content-type")):
                return self._relay_playlist(handler, resp, headers, url, cookie)

            length = resp.headers.get("content-length")
            if length is not None:
                headers["content-length"] = length
            LOG.info("[Proxy] Success: %s", status)
            self._relay_stream(handler, resp, status, headers, chunked=length is None)
            return status
        finally:
            resp.close()

    def _relay_playlist(
        self,
        handler: "StreamProxyHandler",
        resp: requests.Response,
        headers: Dict[str, str],
        url: str,
        cookie: Optional[str],
    ) -> int:
        try:
            raw = resp.content
        except requests.RequestException as e:
            LOG.warning("[Proxy] Playlist read failed: %s", e)
            return handler.send_text(500, f"Proxy failed: {e}")
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            LOG.warning("[Proxy] Playlist is not valid text: %s", e)
            return handler.send_text(500, f"Failed to decode playlist as text: {e}")

        body = rewrite_playlist(text, url, cookie).encode("utf-8")
        headers["content-length"] = str(len(body))
        LOG.info("[Proxy] Success: %s (playlist rewritten, %d bytes)", resp.status_code, len(body))
        handler.send_head(resp.status_code, headers)
        handler.write_body(body)
        return resp.status_code

    def _relay_stream(
        self,
        handler: "StreamProxyHandler",
        resp: requests.Response,
        status: int,
        headers: Dict[str, str],
        chunked: bool,
    ) -> None:
        if status in (204, 205):
            headers.pop("content-length", None)
            handler.send_head(status, headers)
            return
        if chunked:
            headers["Transfer-Encoding"] = "chunked"
        handler.send_head(status, headers)
        try:
            # Raw bytes: content-length was taken from the origin, so the body
            # must not be decompressed on the way through.
            for chunk in resp.raw.stream(self.chunk_size, decode_content=False):
                if not chunk:
                    continue
                if chunked:
                    handler.wfile.write(b"%X\r\n%s\r\n" % (len(chunk), chunk))
                else:
                    handler.wfile.write(chunk)
            if chunked:
                handler.wfile.write(b"0\r\n\r\n")
        except _CLIENT_GONE:
            LOG.debug("[Proxy] Client disconnected mid-stream: %s", _log_target(resp.url or ""))
            handler.close_connection = True
        except (requests.RequestException, RawReadError) as e:
            # Headers are gone already; all that is left is cutting the connection.
            LOG.warning("[Proxy] Upstream failed mid-stream: %s", e)
            handler.close_connection = True


class StreamProxyHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server_version = "MediaProxy/1.0"

    # Idle keep-alive connections are dropped after this many seconds so a
    # draining server does not wait on them forever. Cleared once a request
    # line has arrived, so slow readers of a long stream are not cut off.
    keepalive_timeout = 15.0

    server: "ProxyHTTPServer"

    def log_message(self, fmt: str, *args) -> None:
        LOG.debug("StreamProxy: " + fmt, *args)

    def handle_one_request(self) -> None:
        self._head_sent = False
        try:
            self.connection.settimeout(self.keepalive_timeout)
        except OSError:
            pass
        super().handle_one_request()
        if self.server.draining:
            self.close_connection = True

    def parse_request(self) -> bool:
        try:
            self.connection.settimeout(None)
        except OSError:
            pass
        return super().parse_request()

    # --- response helpers ---

    def end_headers(self) -> None:
        self._send_cors_headers()
        super().end_headers()

    def _send_cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "*")
        self.send_header("Access-Control-Expose-Headers", ", ".join(EXPOSED_RESPONSE_HEADERS))

    def send_head(self, status: int, headers: Mapping[str, str]) -> None:
        self.send_response(status)
        for k, v in headers.items():
            self.send_header(k, v)
        self.end_headers()
        self._head_sent = True

    def write_body(self, body: bytes) -> None:
        try:
            self.wfile.write(body)
        except _CLIENT_GONE:
            self.close_connection = True

    def send_text(self, status: int, text: str, headers: Optional[Mapping[str, str]] = None) -> int:
        body = text.encode("utf-8")
        out = dict(headers or {})
        if status in (204, 304) or status < 200:
            self.send_head(status, out)
            return status
        if not any(k.lower() == "content-type" for k in out):
            out["Content-Type"] = "text/plain; charset=utf-8"
        out["Content-Length"] = str(len(body))
        self.send_head(status, out)
        self.write_body(body)
        return status

    def send_json(self, status: int, payload: Dict[str, object]) -> int:
        body = json.dumps(payload).encode("utf-8")
        self.send_head(status, {"Content-Type": "application/json", "Content-Length": str(len(body))})
        self.write_body(body)
        return status

    # --- routing ---

    def _route(self) -> Tuple[str, Dict[str, list]]:
        parsed = urlparse(self.path)
        return parsed.path, parse_qs(parsed.query, keep_blank_values=True)

    def do_GET(self) -> None:
        path, query = self._route()
        if path == PING_PATH:
            self.send_text(200, "pong")
            return
        if path != PROXY_PATH:
            self.send_text(404, "Not Found")
            return

        url = query.get("url", [""])[0]
        if not url:
            self.send_json(400, {"error": "Missing url"})
            return
        cookie = query.get("cookie", [None])[0]
        referer = query.get("referer", [None])[0] or None

        try:
            self.server.forwarder.forward(self, url, cookie, referer)
        except _CLIENT_GONE:
            self.close_connection = True
        except Exception as e:
            LOG.error("[Proxy] Unhandled error for %s: %s\n%s", _log_target(url), e, traceback.format_exc())
            if self._head_sent:
                self.close_connection = True
            else:
                self.send_text(500, f"Proxy failed: {e}")

    def do_OPTIONS(self) -> None:
        path, _ = self._route()
        if path == PROXY_PATH or self.headers.get("Access-Control-Request-Method"):
            self.send_head(204, {})
            return
        if path == PING_PATH:
            self._method_not_allowed()
            return
        self.send_text(404, "Not Found")

    def _method_not_allowed(self) -> None:
        path, _ = self._route()
        if path not in (PING_PATH, PROXY_PATH):
            self.send_text(404, "Not Found")
            return
        allow = "GET, OPTIONS" if path == PROXY_PATH else "GET"
        self.send_text(405, "Method Not Allowed", headers={"Allow": allow})

    do_HEAD = _method_not_allowed
    do_POST = _method_not_allowed
    do_PUT = _method_not_allowed
    do_PATCH = _method_not_allowed
    do_DELETE = _method_not_allowed


class ProxyHTTPServer(ThreadingMixIn, HTTPServer):
    """Thread-per-request server that can report when in-flight requests are done."""

    daemon_threads = True
    request_queue_size = 256

    def __init__(self, server_address, forwarder: RequestForwarder) -> None:
        self.forwarder = forwarder
        self.draining = False
        self._active = 0
        self._active_cond = threading.Condition()
        super().__init__(server_address, StreamProxyHandler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def process_request(self, request, client_address) -> None:
        # Counted on the accept thread so a drain that starts before the
        # handler thread runs still waits for it.
        with self._active_cond:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except BaseException:
            self._request_done()
            raise

    def process_request_thread(self, request, client_address) -> None:
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._request_done()

    def _request_done(self) -> None:
        with self._active_cond:
            self._active -= 1
            self._active_cond.notify_all()

    @property
    def active_requests(self) -> int:
        with self._active_cond:
            return self._active

    def begin_drain(self) -> None:
        """Stop accepting connections. Must not be called from the serving thread."""
        self.draining = True
        self.shutdown()
        self.server_close()

    def wait_drained(self, timeout: Optional[float] = None) -> bool:
        with self._active_cond:
            return self._active_cond.wait_for(lambda: self._active == 0, timeout=timeout)
