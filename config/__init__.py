"""
Config loader that exposes a dict-like `settings` object.

It loads values from `settings.json` (JSON or JSONC) and falls back to sane
defaults. Supports:
- Trailing inline `//` comments and `/* ... */` block comments
- Numeric literals with underscores, e.g. 604_800

A handful of keys can also be overridden from the environment (see
ENV_OVERRIDES), which is how deployments pass secrets and paths.

Usage:
    from config import settings
    settings["db_path"]
    settings.get("post_char_limit", 300)
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict


SETTINGS_PATH = Path(__file__).with_name("settings.json")


def _strip_jsonc(text: str) -> str:
    """Remove JSONC comments and numeric underscores to make it JSON-safe."""
    # Remove /* block */ comments
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.S)
    # Remove // line comments (but not the ones inside URLs like http://)
    text = re.sub(r"(?<!:)//.*", "", text)
    # Remove underscores within numeric literals (e.g., 604_800 -> 604800)
    text = re.sub(r"(?<=\d)_(?=\d)", "", text)
    return text


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    cleaned = _strip_jsonc(raw)
    try:
        return json.loads(cleaned or "{}")
    except ValueError:
        # Fall back to empty if parsing fails; callers will merge defaults.
        print(f"⚠️ Could not parse {path}, using defaults", file=sys.stderr)
        return {}


DEFAULTS: Dict[str, Any] = {
    # HTTP API
    "host": "127.0.0.1",
    "port": 3001,
    "api_url": "http://127.0.0.1:3001",
    "cors_origins": ["http://localhost:3000", "http://127.0.0.1:3000"],
    # Sessions
    "session_cookie": "bluesky_session_id",
    "session_max_age_secs": 604_800,  # 7 days
    "session_sweep_interval_secs": 3600,
    "cookie_secure": False,
    # Storage
    "db_path": "privacy_bsky.db",
    "encryption_key_path": "storage_key.hex",
    "client_storage_path": "client_storage",
    # Bluesky / AT Protocol
    "bluesky_service": "https://bsky.social",
    "bluesky_app_url": "https://bsky.app",
    "bluesky_timeout_secs": 10,
    "post_char_limit": 300,
    "follows_page_limit": 100,
    # Client timers
    "message_poll_interval_secs": 2,
    "health_poll_interval_secs": 30,
    "health_timeout_secs": 5,
    "health_fallback_timeout_secs": 2,
    "request_timeout_secs": 10,
    "reconcile_window_secs": 10,
    "new_tag_ttl_secs": 2,
    # Logging
    "log_level": "INFO",
}

# environment variable -> settings key
ENV_OVERRIDES: Dict[str, str] = {
    "DB_PATH": "db_path",
    "ENCRYPTION_KEY": "encryption_key",
    "BLUESKY_SERVICE": "bluesky_service",
    "API_URL": "api_url",
    "LOG_LEVEL": "log_level",
}


def _merged_settings() -> Dict[str, Any]:
    data = _read_settings_file(SETTINGS_PATH)
    out = DEFAULTS.copy()
    out.update(data)
    for env_name, key in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            out[key] = value
    return out


class _Settings(dict):
    """Dict subclass with a handy reload() and attribute access."""

    def __getattr__(self, key: str) -> Any:  # settings.key support
        try:
            return self[key]
        except KeyError as exc:
            raise AttributeError(key) from exc

    def reload(self) -> None:
        self.clear()
        self.update(_merged_settings())


# Public settings object
settings = _Settings(_merged_settings())


def setup_logging(level: str | None = None) -> logging.Logger:
    """Configure the `privacy_bsky` logger tree once and return its root.

    Every module logs through `logging.getLogger("privacy_bsky.<area>")`, so a
    single stderr handler here covers the server and the terminal client.
    """
    logger = logging.getLogger("privacy_bsky")
    name = (level or str(settings.get("log_level", "INFO"))).upper()
    logger.setLevel(getattr(logging, name, logging.INFO))
    if not logger.handlers:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
        logger.addHandler(stream)
    return logger
