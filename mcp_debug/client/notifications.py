"""Server notifications as seen by the agent."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

NOTIFICATION_TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
NOTIFICATION_RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
NOTIFICATION_PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"
NOTIFICATION_MESSAGE = "notifications/message"

# Liveness traffic; never forwarded to subscribers
KEEPALIVE_METHODS = frozenset({"ping", "notifications/ping", "notifications/keepalive", "$/ping"})


class NotificationKind(str, Enum):
    TOOLS_CHANGED = "tools_changed"
    RESOURCES_CHANGED = "resources_changed"
    PROMPTS_CHANGED = "prompts_changed"
    LOG_MESSAGE = "log_message"
    UNKNOWN = "unknown"


_KIND_BY_METHOD = {
    NOTIFICATION_TOOLS_LIST_CHANGED: NotificationKind.TOOLS_CHANGED,
    NOTIFICATION_RESOURCES_LIST_CHANGED: NotificationKind.RESOURCES_CHANGED,
    NOTIFICATION_PROMPTS_LIST_CHANGED: NotificationKind.PROMPTS_CHANGED,
    NOTIFICATION_MESSAGE: NotificationKind.LOG_MESSAGE,
}


def is_keepalive(method: str) -> bool:
    return method in KEEPALIVE_METHODS


@dataclass(frozen=True)
class Notification:
    """One inbound notification. Consumed once, never stored."""

    kind: NotificationKind
    method: str
    params: Optional[dict[str, Any]] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_method(cls, method: str, params: Optional[dict[str, Any]] = None) -> "Notification":
        return cls(kind=_KIND_BY_METHOD.get(method, NotificationKind.UNKNOWN), method=method, params=params)

    @property
    def is_list_changed(self) -> bool:
        return self.kind in (
            NotificationKind.TOOLS_CHANGED,
            NotificationKind.RESOURCES_CHANGED,
            NotificationKind.PROMPTS_CHANGED,
        )
