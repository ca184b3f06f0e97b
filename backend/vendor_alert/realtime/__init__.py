"""Real-time delivery channel over WebSockets."""

from vendor_alert.realtime.manager import ChannelManager
from vendor_alert.realtime.registry import ConnectedUser, ConnectionRegistry
from vendor_alert.realtime.service import RealtimeService

__all__ = ["ChannelManager", "ConnectedUser", "ConnectionRegistry", "RealtimeService"]
