"""
Purpose: Outbound notifications to the external delivery collaborator.
What it does:
- Notification: one event (kind, order id, payload, timestamp)
- Publishers:
   - InMemoryPublisher: keeps everything in a list (tests, simulation)
   - LoggingPublisher: writes events to the log
   - WebhookPublisher: POSTs events as JSON to a configured URL

Delivery is at-least-once and unordered from the engine's point of view. The
engine never reads notifications back; persisted state is the source of truth,
so a failed publish is logged and otherwise ignored.

Example in .env:
NOTIFICATIONS_WEBHOOK_URL=http://localhost:9000/dispatch-events
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from orders.models import utcnow

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ASSIGNMENT_OFFERED = "AssignmentOffered"
    ORDER_BOUND = "OrderBound"
    ORDER_STATUS_CHANGED = "OrderStatusChanged"
    ORDER_REASSIGNED = "OrderReassigned"
    ORDER_CANCELLED = "OrderCancelled"
    ORDER_ESCALATED = "OrderEscalated"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    order_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "order_id": self.order_id,
            "at": self.at.isoformat(),
            "payload": self.payload,
        }


class NotificationPublisher:
    def publish(self, notification: Notification) -> None:
        raise NotImplementedError


class InMemoryPublisher(NotificationPublisher):
    def __init__(self):
        self._lock = threading.Lock()
        self.sent: List[Notification] = []

    def publish(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def kinds(self, order_id: Optional[str] = None) -> List[NotificationKind]:
        with self._lock:
            return [n.kind for n in self.sent if order_id is None or n.order_id == order_id]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()


class LoggingPublisher(NotificationPublisher):
    def publish(self, notification: Notification) -> None:
        logger.info("notify %s order=%s %s", notification.kind.value, notification.order_id, notification.payload)


class WebhookPublisher(NotificationPublisher):
    """
    Sends each notification as a JSON POST. Raises on transport errors and
    non-2xx responses; the engine logs and drops those.
    """

    def __init__(self, url: str, timeout: int = 5):
        if not url:
            raise ValueError("Webhook URL not set. Please set NOTIFICATIONS_WEBHOOK_URL in the .env file.")
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()

    def publish(self, notification: Notification) -> None:
        response = self.session.post(self.url, json=notification.to_dict(), timeout=self.timeout)
        response.raise_for_status()


def publish_safely(publisher: Optional[NotificationPublisher], notification: Notification) -> None:
    if publisher is None:
        return
    try:
        publisher.publish(notification)
    except Exception:
        logger.exception("Failed to publish %s for order %s", notification.kind.value, notification.order_id)


def publisher_from_env() -> NotificationPublisher:
    load_dotenv()
    url = os.getenv("NOTIFICATIONS_WEBHOOK_URL")
    if url:
        timeout = int(os.getenv("NOTIFICATIONS_WEBHOOK_TIMEOUT", "5"))
        return WebhookPublisher(url, timeout=timeout)
    return LoggingPublisher()
