"""
In-Memory Stores

Reference adapters for the document-store contracts the core depends on.
A production deployment provides the same interface over its own database.

Concurrency:
- AccountStore.update runs the mutation on a private copy and commits it
  only if the mutation returns normally, all under the store lock, so
  read-modify-write sequences are atomic per store
- RateLimitStore.hit creates, resets or increments a counter in one step
  and drops records whose window has elapsed
"""

import copy
import logging
import threading
from typing import Callable, Dict, Optional, Protocol, Tuple, TypeVar

from ..errors import ConflictError, NotFoundError
from .models import Account, RateLimitRecord, normalize_email

logger = logging.getLogger(__name__)

T = TypeVar('T')

PURGE_INTERVAL_SECONDS = 60


class AccountStore(Protocol):
    """Persistence contract for accounts."""

    def add(self, account: Account) -> None: ...

    def get(self, account_id: str) -> Optional[Account]: ...

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def find_by_verification_token(self, token_hash: str) -> Optional[Account]: ...

    def update(self, account_id: str, mutate: Callable[[Account], T]) -> T: ...

    def delete(self, account_id: str) -> bool: ...


class RateLimitStore(Protocol):
    """Persistence contract for rate-limit counters."""

    def hit(self, identity: str, endpoint: str,
            window: float, now: float) -> RateLimitRecord: ...

    def get(self, identity: str, endpoint: str) -> Optional[RateLimitRecord]: ...

    def delete(self, identity: str, endpoint: str) -> None: ...


class InMemoryAccountStore:
    """
    Thread-safe dict-backed account store.

    Reads return copies; callers never hold a reference into the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._by_email: Dict[str, str] = {}

    def add(self, account: Account) -> None:
        """
        Insert a new account.

        Raises:
            ConflictError: If the email is already registered
        """
        with self._lock:
            if account.email in self._by_email:
                raise ConflictError("Email already in use")
            if account.id in self._accounts:
                raise ConflictError("Account already exists")
            self._accounts[account.id] = copy.deepcopy(account)
            self._by_email[account.email] = account.id

    def get(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def find_by_email(self, email: str) -> Optional[Account]:
        with self._lock:
            account_id = self._by_email.get(normalize_email(email))
            if account_id is None:
                return None
            return copy.deepcopy(self._accounts[account_id])

    def find_by_verification_token(self, token_hash: str) -> Optional[Account]:
        with self._lock:
            for account in self._accounts.values():
                if account.verification_token_hash == token_hash:
                    return copy.deepcopy(account)
            return None

    def update(self, account_id: str, mutate: Callable[[Account], T]) -> T:
        """
        Apply a mutation atomically.

        Args:
            account_id: Account to change
            mutate: Function that edits the account in place and may raise
                to abort; its return value is passed through

        Returns:
            Whatever mutate returned

        Raises:
            NotFoundError: If the account does not exist
        """
        with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                raise NotFoundError("Account not found")

            draft = copy.deepcopy(current)
            result = mutate(draft)

            if draft.email != current.email:
                if draft.email in self._by_email:
                    raise ConflictError("Email already in use")
                del self._by_email[current.email]
                self._by_email[draft.email] = account_id

            self._accounts[account_id] = draft
            return result

    def delete(self, account_id: str) -> bool:
        with self._lock:
            account = self._accounts.pop(account_id, None)
            if account is None:
                return False
            self._by_email.pop(account.email, None)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)


class InMemoryRateLimitStore:
    """
    Thread-safe fixed-window counters keyed by (identity, endpoint).

    Records expire with their window; hit() sweeps expired ones at most
    once per purge_interval, so the store holds only live windows.
    """

    def __init__(self, purge_interval: float = PURGE_INTERVAL_SECONDS):
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str], RateLimitRecord] = {}
        self._purge_interval = purge_interval
        self._next_purge = 0.0

    def hit(self, identity: str, endpoint: str,
            window: float, now: float) -> RateLimitRecord:
        """
        Count one attempt.

        A missing or elapsed record is reset to count=1 with a new window.

        Returns:
            A copy of the record after the increment
        """
        key = (identity, endpoint)
        with self._lock:
            if now >= self._next_purge:
                self._purge_locked(now)
            record = self._records.get(key)
            if record is None or record.is_expired(now):
                record = RateLimitRecord(
                    identity=identity,
                    endpoint=endpoint,
                    count=1,
                    window_reset_at=now + window,
                )
                self._records[key] = record
            else:
                record.count += 1
            return copy.copy(record)

    def get(self, identity: str, endpoint: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._records.get((identity, endpoint))
            return copy.copy(record) if record else None

    def delete(self, identity: str, endpoint: str) -> None:
        with self._lock:
            self._records.pop((identity, endpoint), None)

    def purge_expired(self, now: float) -> int:
        """
        Drop records whose window has elapsed.

        Returns:
            Number of records removed
        """
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, r in self._records.items() if r.is_expired(now)]
        for key in expired:
            del self._records[key]
        self._next_purge = now + self._purge_interval
        if expired:
            logger.debug("Purged %d expired rate-limit records", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
