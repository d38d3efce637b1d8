"""Bind/serve/rebind loop for the local stream proxy.

The supervisor is the only writer of PortState. Each cycle binds a fresh
OS-assigned port, publishes it, serves until a restart is requested or the
serve loop dies, then stops accepting, publishes 0, backs off and starts over.
Requests that were already accepted keep running while the old server drains
in the background, so a restart never cuts a video off mid-stream.
"""

from __future__ import annotations

import logging
import threading
import traceback
from typing import Callable, List, Optional

from mediaproxy.state import PortState, RestartSignal
from mediaproxy.stream_proxy import ProxyHTTPServer, RequestForwarder

LOG = logging.getLogger(__name__)

STARTING = "starting"
LISTENING = "listening"
STOPPING = "stopping"
STOPPED = "stopped"


class ServerSupervisor:
    def __init__(
        self,
        port_state: PortState,
        restart_signal: RestartSignal,
        forwarder: Optional[RequestForwarder] = None,
        host: str = "0.0.0.0",
        restart_backoff: float = 1.0,
        bind_retry_delay: float = 0.5,
        on_started: Optional[Callable[[int], None]] = None,
        poll_interval: float = 0.25,
    ) -> None:
        self.port_state = port_state
        self.restart_signal = restart_signal
        self.forwarder = forwarder or RequestForwarder()
        self.host = host
        self.restart_backoff = max(0.0, float(restart_backoff))
        self.bind_retry_delay = max(0.0, float(bind_retry_delay))
        self.on_started = on_started
        self.poll_interval = poll_interval

        self._state = STOPPED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._drains: List[threading.Thread] = []

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    def _set_state(self, state: str) -> None:
        with self._state_lock:
            self._state = state
        LOG.debug("Stream proxy supervisor: %s", state)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="StreamProxySupervisor", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the loop for good and wait for the active listener to drain."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        for drain in list(self._drains):
            drain.join(timeout)
        self._thread = None

    def run(self) -> None:
        try:
            while not self._stop.is_set():
                self._cycle()
                if self._stop.wait(self.restart_backoff):
                    break
        finally:
            self.port_state.set(0)
            self._set_state(STOPPED)

    def _cycle(self) -> None:
        self._set_state(STARTING)
        try:
            server = ProxyHTTPServer((self.host, 0), self.forwarder)
        except OSError as e:
            LOG.error("Stream proxy bind failed on %s: %s", self.host, e)
            self._set_state(STOPPING)
            self._stop.wait(self.bind_retry_delay)
            return

        port = server.port
        fault = threading.Event()
        serve_thread = threading.Thread(
            target=self._serve, args=(server, fault), name=f"StreamProxy:{port}", daemon=True
        )
        serve_thread.start()

        self.port_state.set(port)
        LOG.info("Stream proxy listening on port %d", port)
        self._set_state(LISTENING)
        self._emit_started(port)

        restart = False
        while not self._stop.is_set() and not fault.is_set():
            if self.restart_signal.wait(timeout=self.poll_interval):
                restart = True
                break

        self._set_state(STOPPING)
        if restart and not self._stop.is_set():
            LOG.info("Stream proxy restart requested; draining port %d", port)
        server.begin_drain()
        self.port_state.set(0)
        self._start_drain_watch(server)

    def _serve(self, server: ProxyHTTPServer, fault: threading.Event) -> None:
        try:
            server.serve_forever(poll_interval=0.25)
        except Exception as e:
            LOG.warning("Stream proxy server error: %s\n%s", e, traceback.format_exc())
        finally:
            # Any exit of serve_forever ends the listening phase; after
            # begin_drain this is a no-op for the supervisor.
            fault.set()

    def _start_drain_watch(self, server: ProxyHTTPServer) -> None:
        self._drains = [t for t in self._drains if t.is_alive()]
        if not server.active_requests:
            return

        def watch() -> None:
            pending = server.active_requests
            LOG.debug("Stream proxy port %d draining %d request(s)", server.port, pending)
            server.wait_drained()
            LOG.debug("Stream proxy port %d drained", server.port)

        t = threading.Thread(target=watch, name=f"StreamProxyDrain:{server.port}", daemon=True)
        self._drains.append(t)
        t.start()

    def _emit_started(self, port: int) -> None:
        if self.on_started is None:
            return
        try:
            self.on_started(port)
        except Exception as e:
            LOG.error("proxy-server-started listener failed: %s", e)
