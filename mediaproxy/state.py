"""Process-wide proxy state shared between the supervisor and the host boundary.

Both objects are created once and handed to whoever needs them; nothing here
is a module global.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class PortState:
    """The currently bound local port, 0 while no listener is active.

    Single writer (the supervisor), any number of readers. The lock is only
    held for the assignment or the read itself.
    """

    def __init__(self, port: int = 0) -> None:
        self._lock = threading.Lock()
        self._port = 0
        self.set(port)

    def set(self, port: int) -> None:
        port = int(port)
        if port < 0 or port > 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        with self._lock:
            self._port = port

    def get(self) -> int:
        with self._lock:
            return self._port

    def get_blocking(self, timeout: float = 10.0, poll_interval: float = 0.1) -> int:
        """Poll until the port is non-zero. Returns 0 on timeout.

        A rebind briefly publishes 0 before the new port, so a caller that
        times out right after a restart should simply ask again.
        """
        deadline = time.monotonic() + max(0.0, float(timeout))
        interval = max(0.001, float(poll_interval))
        while True:
            port = self.get()
            if port:
                return port
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return 0
            time.sleep(min(interval, remaining))


class RestartSignal:
    """Single-slot notifier used to ask the supervisor for a clean rebind.

    Any number of signal() calls before the next wait() collapse into one
    wakeup; wait() consumes the pending signal.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._pending = False

    def signal(self) -> None:
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def is_set(self) -> bool:
        with self._cond:
            return self._pending

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: self._pending, timeout=timeout):
                return False
            self._pending = False
            return True
