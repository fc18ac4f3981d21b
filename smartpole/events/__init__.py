from .broadcaster import (
    ALERTS,
    ALL_PATIENTS,
    POLE_STATUS,
    Broadcaster,
    InMemoryBroadcaster,
    Subscriber,
    Subscription,
    alert_type_topic,
    patient_topic,
    pole_alert_topic,
    pole_topic,
)

__all__ = [
    "ALERTS",
    "ALL_PATIENTS",
    "POLE_STATUS",
    "Broadcaster",
    "InMemoryBroadcaster",
    "Subscriber",
    "Subscription",
    "alert_type_topic",
    "patient_topic",
    "pole_alert_topic",
    "pole_topic",
]
