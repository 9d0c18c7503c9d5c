# Storage Module
"""
Account data model and the store contracts the core requires, with
thread-safe in-memory implementations.
"""

from .models import (
    Account,
    RecoveryCode,
    TrustedDevice,
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorState,
    RateLimitRecord,
    normalize_email,
)

from .memory import (
    AccountStore,
    RateLimitStore,
    InMemoryAccountStore,
    InMemoryRateLimitStore,
)

__all__ = [
    # Models
    'Account',
    'RecoveryCode',
    'TrustedDevice',
    'TwoFactorDisabled',
    'TwoFactorEnabled',
    'TwoFactorState',
    'RateLimitRecord',
    'normalize_email',
    # Stores
    'AccountStore',
    'RateLimitStore',
    'InMemoryAccountStore',
    'InMemoryRateLimitStore',
]
