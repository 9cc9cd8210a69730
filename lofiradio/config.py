import copy
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from lofiradio import LOGGER_NAME

# Constants
DEFAULT_USER_AGENT = "lofiradio/1.2.3 (+https://github.com/talwat/lowfi)"
DEFAULT_SOURCE = "https://lofigirl.com/wp-content/uploads/"
FETCH_TIMEOUT = 15
FETCH_ATTEMPTS = 5
RETRY_BASE_DELAY = 1.0
RETRY_MULTIPLIER = 2.0
RETRY_MAX_DELAY = 16.0
FRAME_DELTA = 5.0 / 60.0
UI_WIDTH = 43

DEFAULT_CONFIG = {
    "system": {
        "log_dir": "~/.cache/lofiradio/logs",
        "log_file": "lofiradio.log",
        "config_file": "~/.config/lofiradio/config.json",
    },
    "catalog": {
        "source": DEFAULT_SOURCE,
        "extensions": [".mp3"],
        "max_depth": 2,
        "listing_workers": 4,
        "timeout": FETCH_TIMEOUT,
    },
    "fetch": {
        "timeout": FETCH_TIMEOUT,
        "attempts": FETCH_ATTEMPTS,
        "base_delay": RETRY_BASE_DELAY,
        "multiplier": RETRY_MULTIPLIER,
        "max_delay": RETRY_MAX_DELAY,
        "chunk_size": 64 * 1024,
        "max_bytes": 32 * 1024 * 1024,
        "user_agent": DEFAULT_USER_AGENT,
    },
    "audio": {
        "sample_rate": 44100,
        "channels": 2,
        "block_frames": 1024,
        "initial_volume": 1.0,
        "max_volume": 1.0,
        "decode_timeout": 60,
    },
    "pipeline": {
        "failure_delay": 1.0,
        "tick_interval": FRAME_DELTA,
        "prefetch_workers": 2,
    },
    "control": {
        "queue_size": 64,
        "volume_step": 0.1,
        "message_ttl": 4.0,
    },
    "ui": {
        "width": UI_WIDTH,
        "frame_delta": FRAME_DELTA,
        "alternate": False,
    },
}


EXPANDED_PATHS = ("log_dir", "config_file")


def merge_into(base: Dict, overrides: Dict) -> Dict:
    """Merge ``overrides`` into ``base`` in place; nested sections merge key by key."""
    for key, value in overrides.items():
        current = base.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merge_into(current, value)
        else:
            base[key] = value
    return base


def default_config(config_file: Optional[str] = None) -> Dict:
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_file:
        config["system"]["config_file"] = config_file
    return config


class ConfigManager:
    """Defaults from ``DEFAULT_CONFIG`` with an optional JSON file merged over them."""

    def __init__(self, config_file: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.config")
        self.lock = threading.Lock()
        self.config = self._expand(default_config(config_file))

    @staticmethod
    def _expand(config: Dict) -> Dict:
        system = config["system"]
        for key in EXPANDED_PATHS:
            if isinstance(system.get(key), str):
                system[key] = os.path.expanduser(system[key])
        return config

    def _read_file(self, path: str) -> Optional[Dict]:
        if not os.path.exists(path):
            self.logger.debug("No config file found, using defaults")
            return None
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"Error loading config file {path}: {e}")
            return None
        if not isinstance(data, dict):
            self.logger.error(f"Ignoring config file {path}: top level must be an object")
            return None
        return data

    def load(self) -> Dict:
        """Re-read the config file and return a copy of the merged result."""
        path = self.config["system"]["config_file"]
        overrides = self._read_file(path)
        with self.lock:
            if overrides:
                config = merge_into(default_config(path), overrides)
                config["system"]["config_file"] = path
                self.config = self._expand(config)
                self.logger.info(f"Loaded configuration from {path}")
            return copy.deepcopy(self.config)

    def get(self, *keys) -> Any:
        """Walk nested sections; None as soon as a key is missing."""
        with self.lock:
            node = self.config
            for key in keys:
                if not isinstance(node, dict) or key not in node:
                    return None
                node = node[key]
            return node

    def section(self, name: str) -> Dict:
        with self.lock:
            return dict(self.config.get(name, {}))

    def update(self, section: str, values: Dict) -> None:
        with self.lock:
            if section not in self.config:
                raise KeyError(f"Unknown config section: {section}")
            merge_into(self.config[section], values)
