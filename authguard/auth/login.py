"""
Login Guards

Implements brute-force protection with:
- Fixed-window rate limiting per (identity, endpoint)
- Account lockout with escalating cooldown after repeated failed logins

Security considerations:
- The rate limiter fails open: if the counter store errors, the attempt is
  allowed and the failure is logged
- A locked account is rejected without consuming a further attempt
- Only lockout and rate-limit errors disclose a wait time
"""

import logging
import time
from typing import Callable, Optional

from ..errors import LockedError, RateLimitedError
from ..storage.memory import RateLimitStore
from ..storage.models import Account

logger = logging.getLogger(__name__)


# Rate limiting configuration
RATE_LIMIT_MAX_ATTEMPTS = 5
RATE_LIMIT_WINDOW_SECONDS = 15 * 60    # 15 minute window

# Lockout configuration
MAX_FAILED_LOGINS = 5
FAILED_LOGIN_WINDOW_SECONDS = 15 * 60  # failures older than this are forgotten
LOCKOUT_BASE_SECONDS = 15 * 60         # first lockout
LOCKOUT_MAX_SECONDS = 24 * 60 * 60     # cap for escalated lockouts

LOCKED_MESSAGE = "Account temporarily locked due to too many failed attempts"


class RateLimiter:
    """
    Rate limiter to prevent brute-force attacks on sensitive endpoints.

    Counts attempts per identity (account id, email or client address) and
    endpoint in a fixed window. Counting happens in the store in one step,
    so concurrent attempts cannot jointly exceed the limit.

    Example:
        >>> limiter = RateLimiter(InMemoryRateLimitStore())
        >>> limiter.check(account_id, "totp-challenge")
        >>> limiter.reset(account_id, "change-password")
    """

    def __init__(self, store: RateLimitStore,
                 max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
                 window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize rate limiter.

        Args:
            store: Counter store
            max_attempts: Attempts allowed per window
            window_seconds: Window length in seconds
            clock: Time source
        """
        self._store = store
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def check(self, identity: str, endpoint: str,
              max_attempts: Optional[int] = None,
              window_seconds: Optional[float] = None) -> None:
        """
        Record an attempt and enforce the limit.

        Args:
            identity: Who is attempting
            endpoint: Which operation
            max_attempts: Override of the default limit
            window_seconds: Override of the default window

        Raises:
            RateLimitedError: If the attempt exceeds the limit
        """
        limit = max_attempts if max_attempts is not None else self._max_attempts
        window = window_seconds if window_seconds is not None else self._window_seconds
        now = self._clock()

        try:
            record = self._store.hit(identity, endpoint, window, now)
        except Exception:
            logger.exception("Rate limit store failed for %s; allowing attempt", endpoint)
            return

        if record.count > limit:
            logger.warning("Rate limit exceeded on %s (count=%d)", endpoint, record.count)
            raise RateLimitedError(record.retry_after(now))

    def reset(self, identity: str, endpoint: str) -> None:
        """Forget attempts after a verified success."""
        try:
            self._store.delete(identity, endpoint)
        except Exception:
            logger.exception("Rate limit reset failed for %s", endpoint)


class LockoutPolicy:
    """
    Failed-login accounting on the account record.

    Each lockout doubles the next cooldown up to a cap. A successful
    authentication clears both the attempt counter and the escalation.
    All methods mutate the account in place and are meant to run inside
    an atomic store update.
    """

    def __init__(self, max_failures: int = MAX_FAILED_LOGINS,
                 window_seconds: float = FAILED_LOGIN_WINDOW_SECONDS,
                 base_seconds: float = LOCKOUT_BASE_SECONDS,
                 max_seconds: float = LOCKOUT_MAX_SECONDS):
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._base_seconds = base_seconds
        self._max_seconds = max_seconds

    def backoff(self, escalation_count: int) -> float:
        """Cooldown for the given number of previous lockouts."""
        return min(self._base_seconds * (2 ** escalation_count), self._max_seconds)

    def ensure_not_locked(self, account: Account, now: float) -> None:
        """
        Raises:
            LockedError: If the account is currently locked
        """
        if account.is_locked(now):
            raise LockedError(account.locked_until, now, LOCKED_MESSAGE)

    def release_if_expired(self, account: Account, now: float) -> bool:
        """Clear an elapsed lock. Returns True if one was cleared."""
        if account.locked_until is not None and account.locked_until <= now:
            account.locked_until = None
            account.failed_login_attempts = 0
            account.last_failed_login_at = None
            return True
        return False

    def register_failure(self, account: Account, now: float) -> bool:
        """
        Count a failed password.

        Returns:
            True if this failure locked the account
        """
        self.release_if_expired(account, now)

        last = account.last_failed_login_at
        if last is not None and now - last > self._window_seconds:
            account.failed_login_attempts = 0

        account.failed_login_attempts += 1
        account.last_failed_login_at = now

        if account.failed_login_attempts < self._max_failures:
            return False

        account.locked_until = now + self.backoff(account.lockout_escalation_count)
        account.lockout_escalation_count += 1
        logger.warning(
            "Account %s locked until %.0f (escalation %d)",
            account.id, account.locked_until, account.lockout_escalation_count,
        )
        return True

    def clear(self, account: Account) -> None:
        """Reset all failure state after a successful authentication."""
        account.failed_login_attempts = 0
        account.last_failed_login_at = None
        account.locked_until = None
        account.lockout_escalation_count = 0
