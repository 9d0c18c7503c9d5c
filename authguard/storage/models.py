"""
Account Data Model

Value types persisted by the account and rate-limit stores.

The second-factor state is a closed variant: an account is either
TwoFactorDisabled or TwoFactorEnabled, and an enabled state cannot be built
without a secret ciphertext. Disabling replaces the whole state, so recovery
codes disappear together with the flag.
"""

import time
from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass
class RecoveryCode:
    """A keyed hash of one backup code."""
    hash: str
    used: bool = False


@dataclass
class TrustedDevice:
    """A device-bypass token bound to an account until expiry."""
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class TwoFactorDisabled:
    """No second factor configured."""

    @property
    def enabled(self) -> bool:
        return False


@dataclass
class TwoFactorEnabled:
    """TOTP is active: encrypted secret plus the hashed recovery codes."""
    secret_ciphertext: str
    recovery_codes: List[RecoveryCode] = field(default_factory=list)

    def __post_init__(self):
        if not self.secret_ciphertext:
            raise ValueError("Enabled two-factor state requires a secret ciphertext")

    @property
    def enabled(self) -> bool:
        return True


TwoFactorState = Union[TwoFactorDisabled, TwoFactorEnabled]


def normalize_email(email: str) -> str:
    """Canonical form used for lookup and uniqueness."""
    return (email or '').strip().lower()


@dataclass
class Account:
    """
    Identity and credential root.

    password_history holds superseded hashes, oldest first.
    """
    id: str
    email: str
    password_hash: str
    password_history: List[str] = field(default_factory=list)
    two_factor: TwoFactorState = field(default_factory=TwoFactorDisabled)
    trusted_devices: List[TrustedDevice] = field(default_factory=list)

    failed_login_attempts: int = 0
    last_failed_login_at: Optional[float] = None
    locked_until: Optional[float] = None
    lockout_escalation_count: int = 0

    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    verification_token_hash: Optional[str] = None
    verification_token_expires_at: Optional[float] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.email = normalize_email(self.email)

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @property
    def two_factor_enabled(self) -> bool:
        return self.two_factor.enabled


@dataclass
class RateLimitRecord:
    """Fixed-window attempt counter for one (identity, endpoint) pair."""
    identity: str
    endpoint: str
    count: int
    window_reset_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.window_reset_at

    def retry_after(self, now: float) -> float:
        return max(0.0, self.window_reset_at - now)
