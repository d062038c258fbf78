"""Notification fan-out for VaultSync."""

from .hub import (
    DEFAULT_BUFFER_SIZE,
    InMemoryNotificationHub,
    NotificationEvent,
    NotificationHub,
    Subscription,
)

__all__ = [
    "DEFAULT_BUFFER_SIZE",
    "InMemoryNotificationHub",
    "NotificationEvent",
    "NotificationHub",
    "Subscription",
]
