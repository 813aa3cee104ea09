"""Network transports: the REST client and the live broadcast channel."""

from .http import SyncHttpClient
from .live import ChannelState, LiveChannel

__all__ = ["ChannelState", "LiveChannel", "SyncHttpClient"]
