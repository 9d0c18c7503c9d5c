"""
Notification Outbox

Out-of-band security notifications (lockout alerts, password changes,
verification and reset links) are handed to an outbox and delivered later
by whoever owns the process. The request path never waits on delivery.

Delivery is at-least-once: a message whose transport call raises is put
back on the queue and retried on the next drain, up to max_attempts.
Messages that exhaust their attempts are kept as dead letters until an
operator requeues them; nothing is discarded silently.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from ..storage.models import Account

logger = logging.getLogger(__name__)


# Notification kinds
ACCOUNT_LOCKED = "account_locked"
PASSWORD_CHANGED = "password_changed"
PASSWORD_RESET = "password_reset"
VERIFY_EMAIL = "verify_email"
TWO_FACTOR_DISABLED = "two_factor_disabled"

DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class Notification:
    """One outbound message."""
    kind: str
    account_id: str
    email: str
    context: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


Transport = Callable[[Notification], None]


class NotificationOutbox:
    """
    Thread-safe queue of pending notifications.

    Example:
        >>> outbox = NotificationOutbox()
        >>> outbox.send(ACCOUNT_LOCKED, account, {'locked_until': 1700000000})
        >>> outbox.drain(mailer.deliver)
        1
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self._queue: "queue.Queue[Notification]" = queue.Queue()
        self._max_attempts = max_attempts
        self._dead_lock = threading.Lock()
        self._dead_letters: List[Notification] = []

    def send(self, kind: str, account: Account,
             context: Dict[str, Any] = None) -> Notification:
        """
        Enqueue a notification and return immediately.

        Args:
            kind: Notification kind
            account: Recipient account
            context: Template data for the transport

        Returns:
            The queued notification
        """
        notification = Notification(
            kind=kind,
            account_id=account.id,
            email=account.email,
            context=dict(context or {}),
        )
        self._queue.put_nowait(notification)
        logger.debug("Queued %s notification for account %s", kind, account.id)
        return notification

    def drain(self, transport: Transport) -> int:
        """
        Deliver everything currently pending.

        Messages that fail are re-queued for the next drain; each pending
        message is attempted at most once per call. A message that fails
        its last allowed attempt moves to the dead letters.

        Args:
            transport: Callable that delivers one notification or raises

        Returns:
            Number of notifications delivered
        """
        delivered = 0
        retry: List[Notification] = []

        while True:
            try:
                notification = self._queue.get_nowait()
            except queue.Empty:
                break

            notification.attempts += 1
            try:
                transport(notification)
                delivered += 1
            except Exception:
                if notification.attempts >= self._max_attempts:
                    logger.exception(
                        "Giving up on %s notification for account %s after %d attempts",
                        notification.kind, notification.account_id, notification.attempts,
                    )
                    with self._dead_lock:
                        self._dead_letters.append(notification)
                else:
                    logger.warning(
                        "Delivery of %s notification for account %s failed (attempt %d)",
                        notification.kind, notification.account_id, notification.attempts,
                        exc_info=True,
                    )
                    retry.append(notification)

        for notification in retry:
            self._queue.put_nowait(notification)

        return delivered

    def pending(self) -> List[Notification]:
        """Snapshot of queued notifications, oldest first."""
        with self._queue.mutex:
            return list(self._queue.queue)

    def dead_letters(self) -> List[Notification]:
        """Snapshot of notifications that ran out of attempts, oldest first."""
        with self._dead_lock:
            return list(self._dead_letters)

    def requeue_dead_letters(self) -> int:
        """
        Put every dead letter back on the queue with a fresh attempt count.

        Returns:
            Number of notifications requeued
        """
        with self._dead_lock:
            revived, self._dead_letters = self._dead_letters, []
        for notification in revived:
            notification.attempts = 0
            self._queue.put_nowait(notification)
        if revived:
            logger.info("Requeued %d dead-letter notifications", len(revived))
        return len(revived)

    def __len__(self) -> int:
        return self._queue.qsize()
