"""Client configuration for whtzup sync.

Resolution order for each setting:
1. Explicit keyword argument
2. Environment variables (WHTZUP_API_URL, WHTZUP_HOME, ...)
3. ~/.whtzup/config.json
4. Built-in defaults
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from whtzup.types import MAX_RETRY_COUNT

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:4000"
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_RECONNECT_MAX_DELAY = 30.0


def get_whtzup_home() -> Path:
    """Directory holding the local database and config.json."""
    env_home = os.environ.get("WHTZUP_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".whtzup"


def validate_api_url(url: Optional[str]) -> Optional[str]:
    """Reject non-http(s) URLs and plaintext HTTP to anything but localhost.

    Returns the URL without a trailing slash, or None if rejected.
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid api_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid api_url; missing host.")
        return None
    if parsed.scheme == "http":
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http api_url for security.")
            return None
    return url.rstrip("/")


def _load_config_file(home: Path) -> Dict[str, Any]:
    config_path = home / "config.json"
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.debug(f"Failed to load config file {config_path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return None


@dataclass
class ClientConfig:
    """Settings for a sync client installation."""

    api_url: str = DEFAULT_API_URL
    home: Optional[Path] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    max_retries: int = MAX_RETRY_COUNT
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY

    @property
    def db_path(self) -> Path:
        return (self.home or get_whtzup_home()) / "sync.db"

    @property
    def ws_url(self) -> str:
        """Live channel URL derived from the API URL."""
        parsed = urlparse(self.api_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return f"{scheme}://{parsed.netloc}{parsed.path.rstrip('/')}/ws"

    @classmethod
    def load(
        cls,
        api_url: Optional[str] = None,
        home: Optional[Path] = None,
        **overrides: Any,
    ) -> "ClientConfig":
        """Build a config from arguments, environment and config.json."""
        home = Path(home) if home else get_whtzup_home()
        try:
            home.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            fallback = Path(tempfile.gettempdir()) / ".whtzup"
            logger.warning(f"Cannot write to {home} ({e}), falling back to {fallback}")
            home = fallback
            home.mkdir(parents=True, exist_ok=True)

        file_config = _load_config_file(home)

        url = api_url or os.environ.get("WHTZUP_API_URL") or file_config.get("api_url")
        validated = validate_api_url(url) if url else None
        if url and not validated:
            raise ValueError(f"Invalid API URL: {url}")

        values: Dict[str, Any] = {
            "api_url": validated or DEFAULT_API_URL,
            "home": home,
        }

        env_values = {
            "request_timeout": _env_float("WHTZUP_REQUEST_TIMEOUT"),
            "sync_interval": _env_float("WHTZUP_SYNC_INTERVAL"),
        }
        for key in (
            "request_timeout",
            "sync_interval",
            "max_retries",
            "reconnect_attempts",
            "reconnect_delay",
            "reconnect_max_delay",
        ):
            if overrides.get(key) is not None:
                values[key] = overrides[key]
            elif env_values.get(key) is not None:
                values[key] = env_values[key]
            elif file_config.get(key) is not None:
                values[key] = file_config[key]

        return cls(**values)
