"""
Live update channel: connection registry and message handling.
"""

from .connection_manager import ConnectionLimitExceeded, LiveConnection, LiveUpdateBroadcaster
from .handlers import LiveMessageHandler

__all__ = [
    "ConnectionLimitExceeded",
    "LiveConnection",
    "LiveMessageHandler",
    "LiveUpdateBroadcaster",
]
