from mcp_debug.client.agent import AgentClient, ClientState
from mcp_debug.client.cache import CapabilityCache, CapabilityDiff, CapabilityKind, CapabilitySet
from mcp_debug.client.notifications import Notification, NotificationKind
from mcp_debug.client.session import TransportSession

__all__ = [
    "AgentClient",
    "CapabilityCache",
    "CapabilityDiff",
    "CapabilityKind",
    "CapabilitySet",
    "ClientState",
    "Notification",
    "NotificationKind",
    "TransportSession",
]
