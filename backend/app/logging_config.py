"""Logging setup for the whtzup backend.

One stdout handler on the "whtzup" logger tree; request handlers log through
get_logger() and record every applied or failed mutation with
log_sync_operation() so a device's history can be grepped out of the logs.
"""

import logging
import sys

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def configure_logging(debug: bool = False) -> None:
    """Attach the stdout handler once."""
    global _configured
    root = logging.getLogger("whtzup")
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the whtzup namespace."""
    if not name.startswith("whtzup"):
        name = f"whtzup.{name}"
    return logging.getLogger(name)


_sync_logger = get_logger("whtzup.sync")


def log_sync_operation(
    device_id: str | None,
    operation: str,
    event_id: str | None,
    success: bool,
    error: str | None = None,
) -> None:
    """Log one mutation outcome in a fixed, grep-friendly shape."""
    device = device_id or "-"
    target = event_id or "-"
    if success:
        _sync_logger.info(f"SYNC | {device} | {operation} | {target} | ok")
    else:
        _sync_logger.warning(f"SYNC | {device} | {operation} | {target} | failed: {error}")
