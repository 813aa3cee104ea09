"""Local storage for the whtzup sync client."""

from .cache import EventCache
from .queue import OperationQueue
from .sqlite import LocalStore

__all__ = ["EventCache", "LocalStore", "OperationQueue"]
