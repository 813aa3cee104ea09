"""Rate limiting for the sync endpoints.

Requests are keyed on the client IP. X-Forwarded-For is only honoured when
the direct peer is a trusted proxy, so clients cannot spoof their key.
"""

import ipaddress
import os
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("whtzup.rate_limit")

# Override with TRUSTED_PROXY_CIDRS (comma-separated)
DEFAULT_TRUSTED_PROXY_CIDRS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache
def trusted_proxy_networks() -> tuple[IPNetwork, ...]:
    raw = os.environ.get("TRUSTED_PROXY_CIDRS", "")
    cidrs = [part.strip() for part in raw.split(",") if part.strip()] or list(
        DEFAULT_TRUSTED_PROXY_CIDRS
    )
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr}")
    return tuple(networks)


def is_trusted_proxy(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(address in network for network in trusted_proxy_networks())


def get_client_ip(request) -> str:
    """Client IP, taking the leftmost X-Forwarded-For hop behind a trusted proxy."""
    peer = get_remote_address(request)
    if not is_trusted_proxy(peer):
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    original = forwarded.split(",")[0].strip()
    return original or peer


def sync_rate_limit() -> str:
    """Limit string for sync routes, read from settings at request time."""
    return get_settings().sync_rate_limit


limiter = Limiter(key_func=get_client_ip)
