"""
Event Logger Module

Security audit trail for the authentication core.

Every security-relevant action (logins, lockouts, 2FA changes, recovery
code use, password changes) is recorded as a SecurityEvent.

Features:
- Privacy-preserving account hashes (SHA-256), never raw ids or emails
- Subscriber callbacks for forwarding events to external sinks
- Query helpers and JSON export

Secrets (passwords, codes, tokens) are never part of an event.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
SYSTEM_USER = "system"


# ============================================================================
# Privacy Functions
# ============================================================================

def get_user_hash(account_id: str) -> str:
    """
    Compute privacy-preserving hash of an account id.

    Allows correlating events for the same account without storing the
    identifier itself.

    Args:
        account_id: The account identifier

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(account_id.encode()).hexdigest()


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of security events that can be logged."""

    # Account lifecycle
    REGISTERED = "registered"
    EMAIL_VERIFIED = "email_verified"
    ACCOUNT_DELETED = "account_deleted"

    # Authentication events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_CHALLENGED = "login_challenged"
    ACCOUNT_LOCKED = "account_locked"
    RATE_LIMITED = "rate_limited"
    LOGOUT = "logout"

    # Second factor
    TOTP_ENROLLED = "totp_enrolled"
    TOTP_VERIFIED = "totp_verified"
    TOTP_FAILED = "totp_failed"
    TOTP_DISABLED = "totp_disabled"
    RECOVERY_CODE_USED = "recovery_code_used"
    RECOVERY_CODE_FAILED = "recovery_code_failed"
    TRUSTED_DEVICE_ADDED = "trusted_device_added"
    TRUSTED_DEVICES_REVOKED = "trusted_devices_revoked"

    # Credentials
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    Represents a security event to be logged.

    All account-identifying information is hashed for privacy.
    """
    event_type: EventType
    user_hash: str  # SHA-256 hash of the account id
    timestamp: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': EVENT_VERSION,
            'type': self.event_type.value,
            'user': self.user_hash,
            'time': self.timestamp,
            'iso_time': datetime.fromtimestamp(self.timestamp).isoformat(),
            'details': self.details,
        }

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} | "
            f"user:{self.user_hash[:8]}..."
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    In-process security audit trail.

    Events are kept in memory in arrival order and mirrored to the
    standard logging system at INFO level.
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 max_events: int = 10000):
        """
        Initialize the event logger.

        Args:
            clock: Source of the current Unix time
            max_events: Oldest events are dropped beyond this count
        """
        self._clock = clock
        self._max_events = max_events
        self._events: List[SecurityEvent] = []
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[SecurityEvent], None]] = []

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def log(self, event_type: EventType, account_id: Optional[str] = None,
            **details: Any) -> SecurityEvent:
        """
        Record a security event.

        Args:
            event_type: What happened
            account_id: Account involved (hashed before storage)
            **details: Non-secret context

        Returns:
            The logged event
        """
        user_hash = get_user_hash(account_id) if account_id else SYSTEM_USER
        event = SecurityEvent(
            event_type=event_type,
            user_hash=user_hash,
            timestamp=self._clock(),
            details=details,
        )

        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                del self._events[:len(self._events) - self._max_events]

        logger.info("security event %s user=%s", event_type.value, user_hash[:16])

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Security event callback failed")

        return event

    # ========================================================================
    # Queries
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def get_account_events(self, account_id: str) -> List[SecurityEvent]:
        """Get all events for a specific account."""
        user_hash = get_user_hash(account_id)
        return [e for e in self.get_all_events() if e.user_hash == user_hash]

    def get_events_by_type(self, event_type: EventType) -> List[SecurityEvent]:
        """Get all events of a specific type."""
        return [e for e in self.get_all_events() if e.event_type == event_type]

    def export_log(self) -> str:
        """Export all events as JSON."""
        return json.dumps([e.to_dict() for e in self.get_all_events()], indent=2)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
