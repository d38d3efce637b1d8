"""Host-facing boundary of the stream proxy.

The host application only needs three things: the current port, a way to
ask for a rebind, and a notification when a new port is live. Everything
else stays behind ProxyService.
"""

from __future__ import annotations

import http.client
import logging
import threading
import time
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

from mediaproxy.http_headers import DEFAULT_REFERER, DEFAULT_USER_AGENT
from mediaproxy.state import PortState, RestartSignal
from mediaproxy.stream_proxy import PING_PATH, PROXY_PATH, RequestForwarder
from mediaproxy.supervisor import ServerSupervisor

LOG = logging.getLogger(__name__)

PROXY_SERVER_STARTED = "proxy-server-started"


class ProxyService:
    def __init__(
        self,
        host: str = "0.0.0.0",
        forwarder: Optional[RequestForwarder] = None,
        restart_backoff: float = 1.0,
        bind_retry_delay: float = 0.5,
        port_wait_timeout: float = 10.0,
        port_poll_interval: float = 0.1,
    ) -> None:
        self.port_state = PortState()
        self.restart_signal = RestartSignal()
        self.port_wait_timeout = port_wait_timeout
        self.port_poll_interval = port_poll_interval
        self._listeners: Dict[str, List[Callable[[int], None]]] = {}
        self._listeners_lock = threading.Lock()
        self.supervisor = ServerSupervisor(
            self.port_state,
            self.restart_signal,
            forwarder=forwarder,
            host=host,
            restart_backoff=restart_backoff,
            bind_retry_delay=bind_retry_delay,
            on_started=lambda port: self.emit(PROXY_SERVER_STARTED, port),
        )

    @classmethod
    def from_config(cls, config) -> "ProxyService":
        """Build a service from a ConfigManager (or anything with get())."""
        timeout = config.get("upstream_timeout_seconds")
        forwarder = RequestForwarder(
            default_user_agent=config.get("default_user_agent") or DEFAULT_USER_AGENT,
            default_referer=config.get("default_referer") or DEFAULT_REFERER,
            chunk_size=int(config.get("stream_chunk_kb", 64)) * 1024,
            timeout=float(timeout) if timeout else None,
        )
        return cls(
            host=config.get("bind_host", "0.0.0.0"),
            forwarder=forwarder,
            restart_backoff=float(config.get("restart_backoff_seconds", 1.0)),
            bind_retry_delay=float(config.get("bind_retry_delay_seconds", 0.5)),
            port_wait_timeout=float(config.get("port_wait_timeout_seconds", 10)),
            port_poll_interval=int(config.get("port_poll_interval_ms", 100)) / 1000.0,
        )

    # --- lifecycle ---

    def start(self) -> None:
        self.supervisor.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self.supervisor.shutdown(timeout)

    # --- events ---

    def subscribe(self, event: str, callback: Callable[[int], None]) -> None:
        with self._listeners_lock:
            self._listeners.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: Callable[[int], None]) -> None:
        with self._listeners_lock:
            try:
                self._listeners.get(event, []).remove(callback)
            except ValueError:
                pass

    def emit(self, event: str, port: int) -> None:
        with self._listeners_lock:
            callbacks = list(self._listeners.get(event, []))
        for cb in callbacks:
            try:
                cb(port)
            except Exception as e:
                LOG.error("%s listener %r failed: %s", event, cb, e)

    # --- host commands ---

    def get_proxy_port(self, timeout: Optional[float] = None, poll_interval: Optional[float] = None) -> int:
        """Wait for the listener port. Returns 0 if none appears in time."""
        return self.port_state.get_blocking(
            timeout=self.port_wait_timeout if timeout is None else timeout,
            poll_interval=self.port_poll_interval if poll_interval is None else poll_interval,
        )

    def restart_proxy(self) -> None:
        LOG.info("Stream proxy restart requested")
        self.restart_signal.signal()

    # --- helpers for callers building player URLs ---

    def _client_host(self) -> str:
        host = self.supervisor.host
        if host in ("", "0.0.0.0", "::"):
            return "127.0.0.1"
        return host

    @property
    def base_url(self) -> str:
        port = self.get_proxy_port()
        if not port:
            raise RuntimeError("Stream proxy not started")
        return f"http://{self._client_host()}:{port}"

    def proxied_url(self, url: str, cookie: Optional[str] = None, referer: Optional[str] = None) -> str:
        params = {"url": url}
        if cookie:
            params["cookie"] = cookie
        if referer:
            params["referer"] = referer
        return f"{self.base_url}{PROXY_PATH}?{urlencode(params)}"

    def wait_ready(self, timeout: float = 2.0) -> bool:
        """Poll /ping until the listener answers pong."""
        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            port = self.port_state.get()
            if not port:
                time.sleep(0.05)
                continue
            conn = http.client.HTTPConnection(self._client_host(), port, timeout=0.5)
            try:
                conn.request("GET", PING_PATH)
                resp = conn.getresponse()
                if resp.status == 200 and resp.read() == b"pong":
                    return True
            except (OSError, http.client.HTTPException):
                pass
            finally:
                conn.close()
            time.sleep(0.05)
        return False


_SERVICE: Optional[ProxyService] = None
_SERVICE_LOCK = threading.Lock()


def get_proxy_service(config=None) -> ProxyService:
    """Process-wide service, built on first use and started."""
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = ProxyService.from_config(config) if config is not None else ProxyService()
        _SERVICE.start()
        return _SERVICE
