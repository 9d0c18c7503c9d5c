# Authentication Module
"""
Authentication implementations including:
- Password hashing (Argon2id) - registration.py
- Password reuse prevention - history.py
- Rate limiting and account lockout - login.py
- TOTP (2FA, RFC 6238) - totp.py
- Recovery codes - recovery.py
- Trusted devices - devices.py
- HMAC-SHA256 session tokens - sessions.py
- Login / enrollment / recovery flows - orchestrator.py

Security features:
- Argon2id for password hashing (PHC winner)
- AES-256-GCM encryption of TOTP secrets with a dedicated key
- Constant-time comparison for every secret check
- Cryptographically secure random tokens
- Rate limiting and escalating lockout against brute-force attacks
"""

from .registration import (
    CredentialHasher,
    validate_password_strength,
    calculate_password_score,
    validate_email,
)

from .history import PasswordHistoryGuard

from .login import (
    RateLimiter,
    LockoutPolicy,
)

from .totp import (
    TOTPGenerator,
    TOTPEngine,
    EnrollmentStaging,
    EnrollmentTicket,
    QRCodeRenderer,
    totp,
    verify_totp,
    hotp,
    generate_secret,
    secret_to_base32,
    base32_to_secret,
)

from .recovery import RecoveryCodeManager
from .devices import TrustedDeviceRegistry
from .sessions import Session, SessionManager

from .orchestrator import (
    AuthOrchestrator,
    AuthStatus,
    LoginResult,
    EnrollmentResult,
    ChallengeResult,
    RecoveryResult,
    RegistrationResult,
    TwoFactorStatus,
)

__all__ = [
    # Registration
    'CredentialHasher',
    'validate_password_strength',
    'calculate_password_score',
    'validate_email',
    'PasswordHistoryGuard',
    # Login guards
    'RateLimiter',
    'LockoutPolicy',
    # TOTP
    'TOTPGenerator',
    'TOTPEngine',
    'EnrollmentStaging',
    'EnrollmentTicket',
    'QRCodeRenderer',
    'totp',
    'verify_totp',
    'hotp',
    'generate_secret',
    'secret_to_base32',
    'base32_to_secret',
    # Second-factor state
    'RecoveryCodeManager',
    'TrustedDeviceRegistry',
    # Sessions
    'Session',
    'SessionManager',
    # Flows
    'AuthOrchestrator',
    'AuthStatus',
    'LoginResult',
    'EnrollmentResult',
    'ChallengeResult',
    'RecoveryResult',
    'RegistrationResult',
    'TwoFactorStatus',
]
