"""
Topic-scoped publish/subscribe fan-out for state-change events.
Delivery is at-most-once and ephemeral: no persistence, no retry, no
backpressure towards publishers. A subscriber that raises is logged and skipped.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("smartpole.events")

Subscriber = Callable[[str, dict], None]

ALL_PATIENTS = "patients"
POLE_STATUS = "poles/status"
ALERTS = "alerts"


def pole_topic(device_id: str) -> str:
    return f"pole/{device_id}"


def pole_alert_topic(device_id: str) -> str:
    return f"pole/{device_id}/alert"


def patient_topic(patient_id) -> str:
    return f"patient/{patient_id}"


def alert_type_topic(alert_type: str) -> str:
    return f"alerts/{alert_type}"


@dataclass
class Subscription:
    topic: str
    callback: Subscriber
    _owner: Optional["Broadcaster"] = None

    def cancel(self) -> None:
        if self._owner is not None:
            self._owner.unsubscribe(self)
            self._owner = None


class Broadcaster:
    """
    Transport interface used by ingestion and liveness code. Swap in a durable
    queue by subclassing; callers only rely on publish/subscribe.
    """

    def publish(self, topic: str, payload: dict) -> int:
        raise NotImplementedError

    def subscribe(self, topic: str, callback: Subscriber) -> Subscription:
        raise NotImplementedError

    def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    def publish_many(self, topics: List[str], payload: dict) -> int:
        delivered = 0
        for topic in topics:
            delivered += self.publish(topic, payload)
        return delivered


class InMemoryBroadcaster(Broadcaster):
    """In-process fan-out; callbacks run synchronously on the publisher's thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Subscriber) -> Subscription:
        sub = Subscription(topic=topic, callback=callback, _owner=self)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(sub)
        logger.debug("subscribed to %s", topic)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.topic, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscribers.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, payload: dict) -> int:
        """Returns how many subscribers accepted the message (0 is success too)."""
        message = dict(payload)
        message.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        with self._lock:
            targets = list(self._subscribers.get(topic, []))
        delivered = 0
        for sub in targets:
            try:
                sub.callback(topic, message)
                delivered += 1
            except Exception as e:
                logger.exception("broadcast to %s failed: %s", topic, e)
        return delivered
