"""
Notification dispatch for entitlement transitions.

The state machine only names the notification; delivery happens after the
webhook transaction commits, through FastAPI background tasks. A failed
delivery is logged and never affects the webhook response.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from backend.features.entitlements.state_machine import Notification

logger = logging.getLogger("ecoscore.notifications")


class Notifier(Protocol):
    def send(self, user_id: str, notification: Notification, context: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the instruction in the application log."""

    def send(self, user_id: str, notification: Notification, context: Dict[str, Any]) -> None:
        logger.info(
            "[notify] %s",
            notification.value,
            extra={"user_id": user_id, "notification": notification.value, **context},
        )


@dataclass
class RecordingNotifier:
    """Collects sent notifications in memory."""

    sent: List[Dict[str, Any]] = field(default_factory=list)

    def send(self, user_id: str, notification: Notification, context: Dict[str, Any]) -> None:
        self.sent.append({"user_id": user_id, "notification": notification, **context})


def deliver(notifier: Notifier, user_id: str, notification: Notification, context: Dict[str, Any]) -> None:
    try:
        notifier.send(user_id, notification, context)
    except Exception:
        logger.exception(
            "notification delivery failed",
            extra={"user_id": user_id, "notification": notification.value},
        )
