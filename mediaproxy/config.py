import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json stays alongside the host app.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_CONFIG = {
    "bind_host": "0.0.0.0",  # all interfaces; port is always OS-assigned
    "default_referer": "https://pan.quark.cn/",
    "default_user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "restart_backoff_seconds": 1.0,
    "bind_retry_delay_seconds": 0.5,
    "stream_chunk_kb": 64,
    "upstream_timeout_seconds": None,  # None => no timeout beyond the client default
    "port_wait_timeout_seconds": 10,
    "port_poll_interval_ms": 100,
    "log_level": "INFO",
}


class ConfigManager:
    def __init__(self, path=None):
        self.path = path or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(self.path):
            try:
                with open(self.path, 'r') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except Exception as e:
                LOG.error("Error loading config %s: %s", self.path, e)
                return dict(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = cfg if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def save_config(self):
        try:
            with open(self.path, 'w') as f:
                json.dump(self.config, f, indent=4)
        except Exception as e:
            LOG.error("Error saving config %s: %s", self.path, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()
