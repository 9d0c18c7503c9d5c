# Integration Module
"""
Security audit trail and the outbound notification queue.

Account identifiers are hashed before they reach the audit trail.
"""

from .event_logger import (
    EventType,
    SecurityEvent,
    EventLogger,
    get_user_hash,
)

from .notifications import (
    Notification,
    NotificationOutbox,
)

__all__ = [
    'EventType',
    'SecurityEvent',
    'EventLogger',
    'get_user_hash',
    'Notification',
    'NotificationOutbox',
]
