"""
Session Management

Implements tamper-evident session tokens with:
- HMAC-SHA256 signatures over a fixed, versioned payload
- Short default lifetime, long lifetime only on explicit request
- Server-side denylist for logout
- Single-use upgrade of a challenge-pending session after the second factor
- Account-wide revocation on password change, reset and deletion

Token format:
    v1.<base64url(json payload)>.<hex HMAC-SHA256 of "v1.<payload>">

Security considerations:
- Use constant-time comparison (hmac.compare_digest) for signatures
- A token that fails any check is "no session", never a distinct error
- Payloads with unknown or missing fields are rejected
- Never log tokens
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


# Session configuration
SESSION_VERSION = 1
SESSION_ID_BYTES = 16
SESSION_EXPIRY_SECONDS = 3600                   # 1 hour default
SESSION_REMEMBER_SECONDS = 30 * 24 * 60 * 60    # 30 days when remembered
PURGE_INTERVAL_SECONDS = 60                     # expired bookkeeping is dropped at most this often

TOKEN_PREFIX = f"v{SESSION_VERSION}"

_FIELD_TYPES = {
    'v': int,
    'sid': str,
    'aid': str,
    'tfv': bool,
    'ev': bool,
    'iat': (int, float),
    'ttl': (int, float),
}


@dataclass(frozen=True)
class Session:
    """An authenticated (or challenge-pending) session."""
    session_id: str
    account_id: str
    two_factor_verified: bool
    email_verified: bool
    issued_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def is_authenticated(self) -> bool:
        """False while a second-factor challenge is outstanding."""
        return self.two_factor_verified


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('ascii')


def _b64decode(data: str) -> bytes:
    padding = '=' * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


class SessionManager:
    """
    Issues and validates signed session tokens.

    Tokens are self-contained; the manager keeps the ids of live sessions
    per account and a denylist of destroyed ones until they expire.

    Example:
        >>> manager = SessionManager(secret)
        >>> token, session = manager.issue("acct-1", two_factor_verified=True)
        >>> manager.validate(token).account_id
        'acct-1'
    """

    def __init__(self, secret_key: bytes = None,
                 default_ttl: float = SESSION_EXPIRY_SECONDS,
                 remember_ttl: float = SESSION_REMEMBER_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize session manager.

        Args:
            secret_key: Server-side secret for HMAC (generated if not provided)
            default_ttl: Session lifetime in seconds
            remember_ttl: Lifetime when the caller asks to be remembered
            clock: Time source
        """
        self._secret_key = secret_key or secrets.token_bytes(32)
        self._default_ttl = default_ttl
        self._remember_ttl = remember_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._denylist: Dict[str, float] = {}             # session_id -> expires_at
        self._issued: Dict[str, Dict[str, float]] = {}  # account_id -> {session_id: expires_at}
        self._next_purge = 0.0

    def _sign(self, message: bytes) -> str:
        return hmac.new(self._secret_key, message, hashlib.sha256).hexdigest()

    def _encode(self, session: Session) -> str:
        payload = {
            'v': SESSION_VERSION,
            'sid': session.session_id,
            'aid': session.account_id,
            'tfv': session.two_factor_verified,
            'ev': session.email_verified,
            'iat': session.issued_at,
            'ttl': session.ttl,
        }
        body = _b64encode(json.dumps(payload, separators=(',', ':'), sort_keys=True).encode())
        signed = f"{TOKEN_PREFIX}.{body}"
        return f"{signed}.{self._sign(signed.encode())}"

    def _decode(self, token: str) -> Optional[Session]:
        if not isinstance(token, str):
            return None
        parts = token.split('.')
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            return None

        prefix, body, signature = parts
        expected = self._sign(f"{prefix}.{body}".encode())
        if not hmac.compare_digest(expected.encode(), signature.encode('utf-8', 'replace')):
            return None

        try:
            payload = json.loads(_b64decode(body))
        except (binascii.Error, ValueError):
            return None

        if not isinstance(payload, dict) or set(payload) != set(_FIELD_TYPES):
            return None
        for name, expected_type in _FIELD_TYPES.items():
            value = payload[name]
            # bool is a subclass of int
            if isinstance(value, bool) and expected_type is not bool:
                return None
            if not isinstance(value, expected_type):
                return None
        if payload['v'] != SESSION_VERSION:
            return None

        return Session(
            session_id=payload['sid'],
            account_id=payload['aid'],
            two_factor_verified=payload['tfv'],
            email_verified=payload['ev'],
            issued_at=float(payload['iat']),
            ttl=float(payload['ttl']),
        )

    def issue(self, account_id: str, two_factor_verified: bool = True,
              email_verified: bool = False,
              remember: bool = False) -> Tuple[str, Session]:
        """
        Create a new session.

        Args:
            account_id: Account the session belongs to
            two_factor_verified: False for a challenge-pending session
            email_verified: Carried for the caller's authorization checks
            remember: Use the long lifetime

        Returns:
            Tuple of (session_token, Session object)
        """
        session = Session(
            session_id=secrets.token_hex(SESSION_ID_BYTES),
            account_id=account_id,
            two_factor_verified=two_factor_verified,
            email_verified=email_verified,
            issued_at=self._clock(),
            ttl=self._remember_ttl if remember else self._default_ttl,
        )
        self._track(session)
        return self._encode(session), session

    def validate(self, token: str) -> Optional[Session]:
        """
        Decode and check a token.

        Returns:
            Session if valid, None otherwise
        """
        session = self._decode(token)
        if session is None:
            return None

        now = self._clock()
        if session.is_expired(now):
            return None

        with self._lock:
            if session.session_id in self._denylist:
                return None
        return session

    def destroy(self, token: str) -> bool:
        """
        Invalidate (logout) a session.

        Returns:
            True if the token was valid and is now destroyed
        """
        session = self.validate(token)
        if session is None:
            return False

        now = self._clock()
        with self._lock:
            self._denylist[session.session_id] = session.expires_at
            self._issued.get(session.account_id, {}).pop(session.session_id, None)
            self._purge_if_due(now)
        return True

    def revoke_account(self, account_id: str, keep: Optional[str] = None) -> int:
        """
        Invalidate every session issued so far for an account.

        Args:
            account_id: Account whose sessions are revoked
            keep: Session id left alive (the caller's own session)

        Returns:
            Number of sessions revoked
        """
        now = self._clock()
        with self._lock:
            issued = self._issued.pop(account_id, {})
            revoked = 0
            for sid, expires in issued.items():
                if sid == keep:
                    self._issued.setdefault(account_id, {})[sid] = expires
                    continue
                self._denylist[sid] = expires
                revoked += 1
            self._purge_if_due(now)
        return revoked

    def upgrade(self, pending: Session, email_verified: Optional[bool] = None,
                remember: bool = False) -> Optional[Tuple[str, Session]]:
        """
        Exchange a challenge-pending session for a fully authenticated one.

        The pending session is destroyed and the new one gets a fresh id.
        A pending session can be upgraded once.

        Args:
            pending: Validated session with two_factor_verified False
            email_verified: Current verification state (kept if None)
            remember: Use the long lifetime

        Returns:
            Tuple of (session_token, Session), or None if the pending
            session was already used or revoked
        """
        with self._lock:
            if pending.session_id in self._denylist:
                return None
            self._denylist[pending.session_id] = pending.expires_at
            self._issued.get(pending.account_id, {}).pop(pending.session_id, None)

        return self.issue(
            pending.account_id,
            two_factor_verified=True,
            email_verified=pending.email_verified if email_verified is None else email_verified,
            remember=remember,
        )

    def _track(self, session: Session) -> None:
        with self._lock:
            self._issued.setdefault(session.account_id, {})[session.session_id] = session.expires_at
            self._purge_if_due(session.issued_at)

    def _purge_if_due(self, now: float) -> None:
        if now >= self._next_purge:
            self._purge(now)

    def _purge(self, now: float) -> None:
        expired = [sid for sid, expires in self._denylist.items() if expires <= now]
        for sid in expired:
            del self._denylist[sid]
        for account_id in list(self._issued):
            live = {s: e for s, e in self._issued[account_id].items() if e > now}
            if live:
                self._issued[account_id] = live
            else:
                del self._issued[account_id]
        self._next_purge = now + PURGE_INTERVAL_SECONDS

    def tracked_count(self) -> int:
        """Number of live sessions the manager is tracking."""
        with self._lock:
            return sum(len(sessions) for sessions in self._issued.values())
