"""
Authentication Orchestrator

Composes the password check, lockout, rate limiting, TOTP, recovery codes,
trusted devices and sessions into request-level flows.

Login state machine:

    START -> CREDENTIALS_PENDING -> REJECTED | LOCKED | SESSION_ISSUED
                                    | CHALLENGE_PENDING
    CHALLENGE_PENDING -> SESSION_ISSUED (TOTP ok)
                       | SESSION_ISSUED_WITH_2FA_DISABLED (recovery code)
                       | REJECTED (bad code) | LOCKED (too many failures)

CHALLENGE_PENDING is held by the pending session token login() returns.
The challenge flows take that token, never a bare account id, and exchange
it once for an authenticated session. Account settings flows take an
authenticated session token.

Successful flows return a result carrying their status. Failed flows raise;
the exception's ``status`` attribute names the terminal failure state.

Every read-modify-write on an account runs inside AccountStore.update, so
a recovery code can be redeemed only once even under concurrent requests.
"""

import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..config import Settings, get_settings
from ..crypto.cipher import SecretCipher
from ..errors import (
    AuthenticationError,
    AuthGuardError,
    ConflictError,
    InternalError,
    LockedError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from ..integration import notifications
from ..integration.event_logger import EventLogger, EventType
from ..integration.notifications import NotificationOutbox
from ..storage.memory import AccountStore, RateLimitStore
from ..storage.models import Account, TwoFactorDisabled, TwoFactorEnabled, normalize_email
from .devices import TrustedDeviceRegistry
from .history import PasswordHistoryGuard
from .login import LOCKED_MESSAGE, LockoutPolicy, RateLimiter
from .recovery import INVALID_RECOVERY_CODE_MESSAGE, RecoveryCodeManager
from .registration import (
    PASSWORD_POLICY_MESSAGE,
    CredentialHasher,
    generate_one_time_token,
    hash_reset_token,
    hash_verification_token,
    validate_email,
    validate_name,
    validate_password_strength,
)
from .sessions import Session, SessionManager
from .totp import (
    INVALID_CODE_MESSAGE,
    EnrollmentStaging,
    EnrollmentTicket,
    QRCodeRenderer,
    TOTPEngine,
)

logger = logging.getLogger(__name__)


# Rate-limited endpoints
ENDPOINT_TOTP_ENROLL = "totp-enroll"
ENDPOINT_TOTP_CHALLENGE = "totp-challenge"
ENDPOINT_TOTP_DISABLE = "totp-disable"
ENDPOINT_RECOVERY_CODE = "recovery-code"
ENDPOINT_CHANGE_PASSWORD = "change-password"
ENDPOINT_RESEND_VERIFICATION = "resend-verification"
ENDPOINT_PASSWORD_RESET = "password-reset"
ENDPOINT_VERIFY_EMAIL = "verify-email"

RESEND_VERIFICATION_MAX = 3
RESEND_VERIFICATION_WINDOW_SECONDS = 60 * 60
PASSWORD_RESET_MAX = 3
PASSWORD_RESET_WINDOW_SECONDS = 60 * 60
VERIFY_EMAIL_MAX = 5
VERIFY_EMAIL_WINDOW_SECONDS = 60 * 60

# Uniform failure messages
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
INVALID_CURRENT_PASSWORD_MESSAGE = "Current password is incorrect"
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"
INVALID_VERIFICATION_TOKEN_MESSAGE = "Invalid or expired verification token"
CAPTCHA_FAILED_MESSAGE = "CAPTCHA verification failed"
NO_PENDING_CHALLENGE_MESSAGE = "No sign-in challenge in progress"
NOT_AUTHENTICATED_MESSAGE = "Authentication required"


class AuthStatus(Enum):
    """States of the login state machine."""
    START = "START"
    CREDENTIALS_PENDING = "CREDENTIALS_PENDING"
    REJECTED = "REJECTED"
    LOCKED = "LOCKED"
    SESSION_ISSUED = "SESSION_ISSUED"
    CHALLENGE_PENDING = "CHALLENGE_PENDING"
    SESSION_ISSUED_WITH_2FA_DISABLED = "SESSION_ISSUED_WITH_2FA_DISABLED"


class CaptchaVerifier(Protocol):
    def verify(self, token: str) -> bool: ...


class Notifier(Protocol):
    def send(self, kind: str, account: Account, context: Dict[str, Any] = None) -> Any: ...


@dataclass
class LoginResult:
    status: AuthStatus
    session_token: Optional[str] = None
    session: Optional[Session] = None
    trusted_device_token: Optional[str] = None
    two_factor_enabled: bool = False


@dataclass
class EnrollmentResult:
    """Recovery codes are shown to the user once and never again."""
    recovery_codes: List[str]
    session_token: str
    session: Session
    trusted_device_token: Optional[str] = None


@dataclass
class ChallengeResult:
    status: AuthStatus
    session_token: str
    session: Session
    trusted_device_token: Optional[str] = None


@dataclass
class RecoveryResult:
    status: AuthStatus
    session_token: str
    session: Session
    two_factor_disabled: bool = True


@dataclass
class RegistrationResult:
    account_id: str
    verification_token: str


@dataclass
class TwoFactorStatus:
    enabled: bool
    recovery_codes_remaining: int = 0
    trusted_devices: int = 0


@dataclass
class _LoginOutcome:
    two_factor_enabled: bool
    trusted: bool
    email_verified: bool
    new_device_token: Optional[str] = None


class AuthOrchestrator:
    """
    Entry point for every authentication flow.

    All collaborators are passed in explicitly; nothing is created lazily
    on first use.

    Example:
        >>> auth = AuthOrchestrator(InMemoryAccountStore(), InMemoryRateLimitStore())
        >>> auth.register("alice@example.com", "Str0ng!Pass")
        >>> result = auth.login("alice@example.com", "Str0ng!Pass")
        >>> result.status
        <AuthStatus.SESSION_ISSUED: 'SESSION_ISSUED'>
    """

    def __init__(self, accounts: AccountStore,
                 rate_limits: RateLimitStore,
                 settings: Optional[Settings] = None,
                 *,
                 notifier: Optional[Notifier] = None,
                 event_logger: Optional[EventLogger] = None,
                 captcha: Optional[CaptchaVerifier] = None,
                 qr_renderer: Optional[QRCodeRenderer] = None,
                 hasher: Optional[CredentialHasher] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            accounts: Account store
            rate_limits: Rate-limit counter store
            settings: Configuration (process settings if omitted)
            notifier: Outbound notification queue
            event_logger: Security audit trail
            captcha: Verifier consulted at registration; skipped when None
            qr_renderer: Renders provisioning URIs
            hasher: Password hasher
            clock: Time source shared by every component
        """
        self._settings = settings or get_settings()
        self._accounts = accounts
        self._clock = clock
        self._notifier = notifier if notifier is not None else NotificationOutbox()
        self._events = event_logger if event_logger is not None else EventLogger(clock=clock)
        self._captcha = captcha

        s = self._settings
        self._hasher = hasher or CredentialHasher()
        self._history = PasswordHistoryGuard(self._hasher, s.PASSWORD_HISTORY_SIZE)
        self._limiter = RateLimiter(rate_limits, s.RATE_LIMIT_MAX,
                                    s.RATE_LIMIT_WINDOW_SECONDS, clock)
        self._lockout = LockoutPolicy(s.MAX_FAILED_LOGINS, s.FAILED_LOGIN_WINDOW_SECONDS,
                                      s.LOCKOUT_BASE_SECONDS, s.LOCKOUT_MAX_SECONDS)
        self._totp = TOTPEngine(
            cipher=SecretCipher(s.totp_encryption_key()),
            staging=EnrollmentStaging(s.ENROLLMENT_TTL_SECONDS, clock),
            qr_renderer=qr_renderer,
            issuer=s.ISSUER,
            drift_tolerance=s.TOTP_DRIFT_STEPS,
        )
        self._recovery = RecoveryCodeManager(s.recovery_code_pepper())
        self._devices = TrustedDeviceRegistry(s.TRUSTED_DEVICE_TTL_SECONDS,
                                              hash_tokens=s.HASH_TRUSTED_DEVICE_TOKENS)
        self._sessions = SessionManager(s.session_secret(), s.SESSION_TTL_SECONDS,
                                        s.SESSION_REMEMBER_TTL_SECONDS, clock)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def events(self) -> EventLogger:
        return self._events

    # ========================================================================
    # Helpers
    # ========================================================================

    def _store(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Run a store call; unexpected failures become InternalError."""
        try:
            return operation(*args)
        except AuthGuardError:
            raise
        except Exception as exc:
            logger.exception("Account store operation failed")
            raise InternalError() from exc

    def _get(self, account_id: str) -> Optional[Account]:
        if not account_id:
            return None
        return self._store(self._accounts.get, account_id)

    def _require(self, account_id: str) -> Account:
        account = self._get(account_id)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    def _update(self, account_id: str, mutate: Callable[[Account], Any]) -> Any:
        return self._store(self._accounts.update, account_id, mutate)

    def _rate_check(self, identity: str, endpoint: str, account_id: Optional[str] = None,
                    **limits: Any) -> None:
        try:
            self._limiter.check(identity, endpoint, **limits)
        except RateLimitedError as e:
            self._events.log(EventType.RATE_LIMITED, account_id, endpoint=endpoint,
                             retry_after=e.retry_after)
            raise

    def _notify(self, kind: str, account: Account, context: Dict[str, Any] = None) -> None:
        try:
            self._notifier.send(kind, account, context or {})
        except Exception:
            logger.exception("Failed to queue %s notification for account %s", kind, account.id)

    def _check_new_password(self, password: str) -> None:
        strength = validate_password_strength(password)
        if not strength['valid']:
            raise ValidationError(PASSWORD_POLICY_MESSAGE, strength['errors'])

    def _pending_session(self, session_token: str) -> Session:
        """The challenge-pending session login() handed out for this token."""
        session = self._sessions.validate(session_token)
        if session is None or session.two_factor_verified:
            raise AuthenticationError(NO_PENDING_CHALLENGE_MESSAGE)
        return session

    def _authenticated_session(self, session_token: str) -> Session:
        """A fully signed-in session. Pending and invalid tokens are refused."""
        session = self._sessions.validate(session_token)
        if session is None or not session.is_authenticated:
            raise AuthenticationError(NOT_AUTHENTICATED_MESSAGE)
        return session

    # ========================================================================
    # Login
    # ========================================================================

    def login(self, email: str, password: str, remember: bool = False,
              device_token: Optional[str] = None) -> LoginResult:
        """
        Check a password and decide whether a second factor is needed.

        Args:
            email: Account email (any case)
            password: Plaintext password
            remember: Long session; with 2FA disabled also trusts this device
            device_token: Trusted-device token presented by the client

        Returns:
            LoginResult with SESSION_ISSUED or CHALLENGE_PENDING

        Raises:
            ValidationError: Missing email or password
            AuthenticationError: Unknown email or wrong password
            LockedError: Account locked, or this failure locked it
        """
        if not email or not password:
            raise ValidationError("Email and password are required")

        now = self._clock()
        account = self._store(self._accounts.find_by_email, email)
        if account is None:
            self._hasher.burn_verification(password)
            self._events.log(EventType.LOGIN_FAILED, reason='unknown_account')
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        try:
            self._lockout.ensure_not_locked(account, now)
        except LockedError:
            self._events.log(EventType.LOGIN_FAILED, account.id, reason='locked')
            raise

        if not self._hasher.verify_password(password, account.password_hash):
            self._reject_password(account, now)

        rehashed = None
        if self._hasher.needs_rehash(account.password_hash):
            rehashed = self._hasher.hash_password(password)

        def complete(draft: Account) -> _LoginOutcome:
            self._lockout.ensure_not_locked(draft, now)
            self._lockout.clear(draft)
            if rehashed and draft.password_hash == account.password_hash:
                draft.password_hash = rehashed

            enabled = draft.two_factor_enabled
            outcome = _LoginOutcome(
                two_factor_enabled=enabled,
                trusted=enabled and self._devices.is_trusted(draft, device_token, now),
                email_verified=draft.email_verified,
            )
            if remember and not enabled:
                outcome.new_device_token = self._devices.issue(draft, now)
            return outcome

        outcome = self._update(account.id, complete)

        if outcome.new_device_token:
            self._events.log(EventType.TRUSTED_DEVICE_ADDED, account.id)

        if outcome.two_factor_enabled and not outcome.trusted:
            token, session = self._sessions.issue(
                account.id,
                two_factor_verified=False,
                email_verified=outcome.email_verified,
            )
            self._events.log(EventType.LOGIN_CHALLENGED, account.id)
            return LoginResult(
                status=AuthStatus.CHALLENGE_PENDING,
                session_token=token,
                session=session,
                two_factor_enabled=True,
            )

        token, session = self._sessions.issue(
            account.id,
            two_factor_verified=True,
            email_verified=outcome.email_verified,
            remember=remember,
        )
        self._events.log(EventType.LOGIN_SUCCESS, account.id,
                         via='trusted_device' if outcome.trusted else 'password')
        return LoginResult(
            status=AuthStatus.SESSION_ISSUED,
            session_token=token,
            session=session,
            trusted_device_token=outcome.new_device_token,
            two_factor_enabled=outcome.two_factor_enabled,
        )

    def _reject_password(self, account: Account, now: float) -> None:
        """Count a failed password and raise. Locks the account at the threshold."""

        def record(draft: Account) -> Optional[float]:
            # Locked by a concurrent request since the snapshot was read
            if draft.is_locked(now):
                return draft.locked_until
            if self._lockout.register_failure(draft, now):
                return draft.locked_until
            return None

        locked_until = self._update(account.id, record)
        if locked_until is not None:
            self._events.log(EventType.ACCOUNT_LOCKED, account.id, locked_until=locked_until)
            self._notify(notifications.ACCOUNT_LOCKED, account, {'locked_until': locked_until})
            raise LockedError(locked_until, now, LOCKED_MESSAGE)

        self._events.log(EventType.LOGIN_FAILED, account.id, reason='bad_password')
        raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

    # ========================================================================
    # TOTP enrollment
    # ========================================================================

    def enroll_totp(self, session_token: str) -> EnrollmentTicket:
        """
        Start TOTP enrollment for the signed-in account.

        The new secret is staged, not stored on the account, until
        verify_totp_enrollment confirms it.

        Raises:
            AuthenticationError: No signed-in session
            NotFoundError: Unknown account
            ConflictError: 2FA is already enabled
        """
        session = self._authenticated_session(session_token)
        account = self._require(session.account_id)
        if account.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        return self._totp.begin_enrollment(account)

    def verify_totp_enrollment(self, staged_ref: str, code: str,
                               trust_device: bool = False) -> EnrollmentResult:
        """
        Confirm enrollment with the first code from the authenticator.

        Generates the recovery codes and persists the encrypted secret and
        the hashed codes together.

        Raises:
            ValidationError: Missing reference or code
            AuthenticationError: Unknown/expired enrollment or bad code
            RateLimitedError: Too many attempts
            ConflictError: 2FA was enabled by another request meanwhile
        """
        if not staged_ref or not code:
            raise ValidationError("Enrollment reference and code are required")

        staged = self._totp.peek_staged(staged_ref)
        if staged is None:
            raise AuthenticationError("No enrollment in progress")
        account_id = staged.account_id

        self._rate_check(account_id, ENDPOINT_TOTP_ENROLL, account_id)

        now = self._clock()
        try:
            account_id, secret = self._totp.verify_staged(staged_ref, code, now)
        except AuthenticationError:
            self._events.log(EventType.TOTP_FAILED, account_id, stage='enrollment')
            raise

        plaintext_codes, stored_codes = self._recovery.generate()
        ciphertext = self._totp.encrypt_secret(account_id, secret)

        def enable(draft: Account):
            if draft.two_factor_enabled:
                raise ConflictError("Two-factor authentication is already enabled")
            draft.two_factor = TwoFactorEnabled(
                secret_ciphertext=ciphertext,
                recovery_codes=stored_codes,
            )
            device_token = self._devices.issue(draft, now) if trust_device else None
            return device_token, draft.email_verified

        try:
            device_token, email_verified = self._update(account_id, enable)
        except NotFoundError:
            raise AuthenticationError("No enrollment in progress") from None

        self._limiter.reset(account_id, ENDPOINT_TOTP_ENROLL)
        token, session = self._sessions.issue(
            account_id,
            two_factor_verified=True,
            email_verified=email_verified,
            remember=trust_device,
        )
        self._events.log(EventType.TOTP_ENROLLED, account_id,
                         recovery_codes=len(plaintext_codes))
        if device_token:
            self._events.log(EventType.TRUSTED_DEVICE_ADDED, account_id)

        return EnrollmentResult(
            recovery_codes=plaintext_codes,
            session_token=token,
            session=session,
            trusted_device_token=device_token,
        )

    # ========================================================================
    # Second-factor challenge
    # ========================================================================

    def verify_totp_challenge(self, pending_token: str, code: str,
                              trust_device: bool = False) -> ChallengeResult:
        """
        Resolve CHALLENGE_PENDING with a TOTP code.

        Args:
            pending_token: Session token returned by login() with
                CHALLENGE_PENDING
            code: Six-digit code from the authenticator
            trust_device: Also issue a trusted-device token

        The pending session is exchanged for a new, fully authenticated
        one; the pending token stops working.

        Raises:
            ValidationError: Missing token or code
            AuthenticationError: No pending challenge, bad code (or no 2FA
                on the account)
            LockedError: The account is locked
            RateLimitedError: Too many challenge attempts (status LOCKED)
        """
        if not pending_token or not code:
            raise ValidationError("Authentication code is required")

        pending = self._pending_session(pending_token)
        account_id = pending.account_id
        self._rate_check(account_id, ENDPOINT_TOTP_CHALLENGE, account_id)

        now = self._clock()
        account = self._get(account_id)
        if account is None:
            raise AuthenticationError(INVALID_CODE_MESSAGE)
        self._lockout.ensure_not_locked(account, now)
        if not self._totp.verify_account_code(account, code, now):
            self._events.log(EventType.TOTP_FAILED, account_id, stage='challenge')
            raise AuthenticationError(INVALID_CODE_MESSAGE)

        def complete(draft: Account):
            if not draft.two_factor_enabled:
                raise AuthenticationError(INVALID_CODE_MESSAGE)
            self._lockout.ensure_not_locked(draft, now)
            device_token = self._devices.issue(draft, now) if trust_device else None
            return device_token, draft.email_verified

        try:
            device_token, email_verified = self._update(account_id, complete)
        except NotFoundError:
            raise AuthenticationError(INVALID_CODE_MESSAGE) from None

        self._limiter.reset(account_id, ENDPOINT_TOTP_CHALLENGE)
        upgraded = self._sessions.upgrade(pending, email_verified=email_verified,
                                          remember=trust_device)
        if upgraded is None:
            raise AuthenticationError(NO_PENDING_CHALLENGE_MESSAGE)
        token, session = upgraded
        self._events.log(EventType.TOTP_VERIFIED, account_id)
        if device_token:
            self._events.log(EventType.TRUSTED_DEVICE_ADDED, account_id)

        return ChallengeResult(
            status=AuthStatus.SESSION_ISSUED,
            session_token=token,
            session=session,
            trusted_device_token=device_token,
        )

    def redeem_recovery_code(self, pending_token: str, code: str,
                             remember: bool = False) -> RecoveryResult:
        """
        Resolve CHALLENGE_PENDING with a recovery code.

        A successful redemption disables 2FA and purges every remaining
        code; the user has to enroll again. The pending session is
        exchanged for an authenticated one.

        Raises:
            ValidationError: Missing token or code
            AuthenticationError: No pending challenge, unknown or
                already-used code
            LockedError: The account is locked
            RateLimitedError: Too many attempts
        """
        if not pending_token or not code:
            raise ValidationError("Recovery code is required")

        pending = self._pending_session(pending_token)
        account_id = pending.account_id
        self._rate_check(account_id, ENDPOINT_RECOVERY_CODE, account_id)

        now = self._clock()
        account = self._get(account_id)
        if account is None:
            raise AuthenticationError(INVALID_RECOVERY_CODE_MESSAGE)
        self._lockout.ensure_not_locked(account, now)

        def redeem(draft: Account) -> bool:
            self._lockout.ensure_not_locked(draft, now)
            self._recovery.redeem(draft, code)
            return draft.email_verified

        try:
            email_verified = self._update(account_id, redeem)
        except NotFoundError:
            raise AuthenticationError(INVALID_RECOVERY_CODE_MESSAGE) from None
        except AuthenticationError:
            self._events.log(EventType.RECOVERY_CODE_FAILED, account_id)
            raise

        self._limiter.reset(account_id, ENDPOINT_RECOVERY_CODE)
        self._events.log(EventType.RECOVERY_CODE_USED, account_id)
        self._events.log(EventType.TOTP_DISABLED, account_id, reason='recovery_code')
        self._notify(notifications.TWO_FACTOR_DISABLED, account, {'reason': 'recovery_code'})

        upgraded = self._sessions.upgrade(pending, email_verified=email_verified,
                                          remember=remember)
        if upgraded is None:
            raise AuthenticationError(NO_PENDING_CHALLENGE_MESSAGE)
        token, session = upgraded

        return RecoveryResult(
            status=AuthStatus.SESSION_ISSUED_WITH_2FA_DISABLED,
            session_token=token,
            session=session,
            two_factor_disabled=True,
        )

    def disable_totp(self, session_token: str, code: str) -> bool:
        """
        Turn 2FA off. Requires a fresh TOTP code, not just a session.

        Recovery codes go with the secret. Trusted devices survive unless
        REVOKE_DEVICES_ON_TOTP_DISABLE is set.

        Raises:
            ConflictError: 2FA is not enabled
            AuthenticationError: No signed-in session, or bad code
            RateLimitedError: Too many attempts
        """
        if not code:
            raise ValidationError("Authentication code is required")

        account_id = self._authenticated_session(session_token).account_id
        account = self._require(account_id)
        if not account.two_factor_enabled:
            raise ConflictError("Two-factor authentication is not enabled")

        self._rate_check(account_id, ENDPOINT_TOTP_DISABLE, account_id)

        now = self._clock()
        if not self._totp.verify_account_code(account, code, now):
            self._events.log(EventType.TOTP_FAILED, account_id, stage='disable')
            raise AuthenticationError(INVALID_CODE_MESSAGE)

        revoke_devices = self._settings.REVOKE_DEVICES_ON_TOTP_DISABLE

        def disable(draft: Account) -> int:
            if not draft.two_factor_enabled:
                raise ConflictError("Two-factor authentication is not enabled")
            draft.two_factor = TwoFactorDisabled()
            return self._devices.revoke_all(draft) if revoke_devices else 0

        revoked = self._update(account_id, disable)

        self._limiter.reset(account_id, ENDPOINT_TOTP_DISABLE)
        self._events.log(EventType.TOTP_DISABLED, account_id, reason='user')
        if revoked:
            self._events.log(EventType.TRUSTED_DEVICES_REVOKED, account_id, count=revoked)
        self._notify(notifications.TWO_FACTOR_DISABLED, account, {'reason': 'user'})
        return True

    # ========================================================================
    # Password management
    # ========================================================================

    def change_password(self, session_token: str, current_password: str,
                        new_password: str) -> bool:
        """
        Rotate the password of a signed-in account.

        Every other session of the account is revoked afterwards, and so
        are trusted devices when 2FA is enabled. The caller stays signed in.

        Raises:
            ValidationError: Missing input or weak new password
            AuthenticationError: No signed-in session, or current password
                is wrong
            ConflictError: New password is current or recently used
            RateLimitedError: Too many attempts
        """
        if not current_password or not new_password:
            raise ValidationError("Current and new password are required")

        session = self._authenticated_session(session_token)
        account_id = session.account_id
        self._rate_check(account_id, ENDPOINT_CHANGE_PASSWORD, account_id)

        account = self._require(account_id)
        if not self._hasher.verify_password(current_password, account.password_hash):
            raise AuthenticationError(INVALID_CURRENT_PASSWORD_MESSAGE)

        self._check_new_password(new_password)
        self._history.ensure_not_reused(account, new_password)
        new_hash = self._hasher.hash_password(new_password)

        def rotate(draft: Account) -> bool:
            if draft.password_hash != account.password_hash:
                raise ConflictError("Password was changed by another request")
            had_devices = bool(draft.trusted_devices)
            self._history.apply(draft, new_hash, self._devices)
            return had_devices and not draft.trusted_devices

        devices_revoked = self._update(account_id, rotate)

        self._limiter.reset(account_id, ENDPOINT_CHANGE_PASSWORD)
        self._sessions.revoke_account(account_id, keep=session.session_id)
        self._events.log(EventType.PASSWORD_CHANGED, account_id)
        if devices_revoked:
            self._events.log(EventType.TRUSTED_DEVICES_REVOKED, account_id)
        self._notify(notifications.PASSWORD_CHANGED, account)
        return True

    def request_password_reset(self, email: str) -> None:
        """
        Queue a reset link if the email belongs to an account.

        Behaves the same whether or not the account exists.

        Raises:
            RateLimitedError: Too many requests for this email
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")

        self._rate_check(normalized, ENDPOINT_PASSWORD_RESET,
                         max_attempts=PASSWORD_RESET_MAX,
                         window_seconds=PASSWORD_RESET_WINDOW_SECONDS)

        account = self._store(self._accounts.find_by_email, normalized)
        if account is None:
            self._events.log(EventType.PASSWORD_RESET_REQUESTED, found=False)
            return

        token = generate_one_time_token()
        expires_at = self._clock() + self._settings.RESET_TOKEN_TTL_SECONDS

        def store_token(draft: Account) -> None:
            draft.reset_token_hash = hash_reset_token(token)
            draft.reset_token_expires_at = expires_at

        self._update(account.id, store_token)
        self._events.log(EventType.PASSWORD_RESET_REQUESTED, account.id, found=True)
        self._notify(notifications.PASSWORD_RESET, account,
                     {'token': token, 'expires_at': expires_at})

    def reset_password(self, email: str, token: str, new_password: str) -> bool:
        """
        Set a new password with a token from request_password_reset.

        The token is single use. Sessions are revoked and any lockout is
        cleared.

        Raises:
            AuthenticationError: Unknown email, or bad/expired/used token
            ValidationError: Weak new password
            ConflictError: New password is current or recently used
        """
        if not email or not token or not new_password:
            raise ValidationError("Email, token and new password are required")

        now = self._clock()
        account = self._store(self._accounts.find_by_email, email)
        if account is None or not self._reset_token_matches(account, token, now):
            raise AuthenticationError(INVALID_RESET_TOKEN_MESSAGE)

        self._check_new_password(new_password)
        self._history.ensure_not_reused(account, new_password)
        new_hash = self._hasher.hash_password(new_password)

        def reset(draft: Account) -> None:
            if draft.reset_token_hash != account.reset_token_hash:
                raise AuthenticationError(INVALID_RESET_TOKEN_MESSAGE)
            self._history.apply(draft, new_hash, self._devices)
            draft.reset_token_hash = None
            draft.reset_token_expires_at = None
            self._lockout.clear(draft)

        self._update(account.id, reset)

        self._sessions.revoke_account(account.id)
        self._events.log(EventType.PASSWORD_RESET, account.id)
        self._notify(notifications.PASSWORD_CHANGED, account, {'reason': 'reset'})
        return True

    @staticmethod
    def _reset_token_matches(account: Account, token: str, now: float) -> bool:
        if not account.reset_token_hash or account.reset_token_expires_at is None:
            return False
        if now >= account.reset_token_expires_at:
            return False
        return hmac.compare_digest(hash_reset_token(token), account.reset_token_hash)

    # ========================================================================
    # Registration and email verification
    # ========================================================================

    def register(self, email: str, password: str,
                 captcha_token: Optional[str] = None,
                 first_name: Optional[str] = None,
                 last_name: Optional[str] = None) -> RegistrationResult:
        """
        Create an account and queue the verification email.

        Raises:
            ValidationError: CAPTCHA failure, bad email, weak password or bad name
            ConflictError: Email already registered
        """
        if self._captcha is not None:
            if not captcha_token or not self._captcha.verify(captcha_token):
                raise ValidationError(CAPTCHA_FAILED_MESSAGE)

        normalized = normalize_email(email)
        if not validate_email(normalized):
            raise ValidationError("Invalid email address")
        self._check_new_password(password)

        try:
            first_name = validate_name(first_name, "First name")
            last_name = validate_name(last_name, "Last name")
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from None

        if self._store(self._accounts.find_by_email, normalized) is not None:
            raise ConflictError("Email already in use")

        now = self._clock()
        token = generate_one_time_token()
        account = Account(
            id=uuid.uuid4().hex,
            email=normalized,
            password_hash=self._hasher.hash_password(password),
            first_name=first_name,
            last_name=last_name,
            verification_token_hash=hash_verification_token(
                token, self._settings.verification_hmac_secret()),
            verification_token_expires_at=now + self._settings.VERIFICATION_TOKEN_TTL_SECONDS,
            created_at=now,
        )
        self._store(self._accounts.add, account)

        self._events.log(EventType.REGISTERED, account.id)
        self._notify(notifications.VERIFY_EMAIL, account, {'token': token})
        return RegistrationResult(account_id=account.id, verification_token=token)

    def verify_email(self, token: str, client_id: Optional[str] = None) -> bool:
        """
        Mark the account's email verified.

        Args:
            token: Token from the verification email
            client_id: Caller identity (such as an IP address) that attempts
                are counted against; the token itself when omitted

        Raises:
            AuthenticationError: Unknown or expired token
            RateLimitedError: Too many attempts from this client
        """
        if not token:
            raise ValidationError("Verification token is required")

        token_hash = hash_verification_token(token, self._settings.verification_hmac_secret())
        self._rate_check(client_id or f"token:{token_hash[:16]}", ENDPOINT_VERIFY_EMAIL,
                         max_attempts=VERIFY_EMAIL_MAX,
                         window_seconds=VERIFY_EMAIL_WINDOW_SECONDS)

        account = self._store(self._accounts.find_by_verification_token, token_hash)
        now = self._clock()
        if (account is None or account.verification_token_expires_at is None
                or now >= account.verification_token_expires_at):
            raise AuthenticationError(INVALID_VERIFICATION_TOKEN_MESSAGE)

        def verify(draft: Account) -> None:
            if draft.verification_token_hash != token_hash:
                raise AuthenticationError(INVALID_VERIFICATION_TOKEN_MESSAGE)
            draft.email_verified = True
            draft.verification_token_hash = None
            draft.verification_token_expires_at = None

        self._update(account.id, verify)
        self._events.log(EventType.EMAIL_VERIFIED, account.id)
        return True

    def resend_verification(self, session_token: str) -> bool:
        """
        Issue a new verification token, replacing the previous one.

        Raises:
            AuthenticationError: No signed-in session
            NotFoundError: Unknown account
            ConflictError: Email already verified
            RateLimitedError: Too many resends
        """
        account_id = self._authenticated_session(session_token).account_id
        account = self._require(account_id)
        if account.email_verified:
            raise ConflictError("Email already verified")

        self._rate_check(account_id, ENDPOINT_RESEND_VERIFICATION, account_id,
                         max_attempts=RESEND_VERIFICATION_MAX,
                         window_seconds=RESEND_VERIFICATION_WINDOW_SECONDS)

        token = generate_one_time_token()
        token_hash = hash_verification_token(token, self._settings.verification_hmac_secret())
        expires_at = self._clock() + self._settings.VERIFICATION_TOKEN_TTL_SECONDS

        def store_token(draft: Account) -> None:
            if draft.email_verified:
                raise ConflictError("Email already verified")
            draft.verification_token_hash = token_hash
            draft.verification_token_expires_at = expires_at

        self._update(account_id, store_token)
        self._notify(notifications.VERIFY_EMAIL, account, {'token': token})
        return True

    # ========================================================================
    # Sessions and account lifecycle
    # ========================================================================

    def current_session(self, session_token: str) -> Optional[Session]:
        """Validated session for a token, or None."""
        return self._sessions.validate(session_token)

    def logout(self, session_token: str, device_token: Optional[str] = None) -> bool:
        """
        Destroy the session, and forget the presented device if any.

        Other trusted devices of the account are left alone.

        Returns:
            False if the session token was not valid
        """
        session = self._sessions.validate(session_token)
        if session is None:
            return False

        self._sessions.destroy(session_token)
        if device_token:
            try:
                self._update(session.account_id,
                             lambda draft: self._devices.revoke(draft, device_token))
            except NotFoundError:
                pass
        self._events.log(EventType.LOGOUT, session.account_id)
        return True

    def delete_account(self, session_token: str) -> bool:
        """
        Remove the signed-in account with its devices, codes and sessions.

        Raises:
            AuthenticationError: No signed-in session
            NotFoundError: Unknown account
        """
        account_id = self._authenticated_session(session_token).account_id
        if not self._store(self._accounts.delete, account_id):
            raise NotFoundError("Account not found")

        self._sessions.revoke_account(account_id)
        self._totp.staging.discard_for(account_id)
        self._events.log(EventType.ACCOUNT_DELETED, account_id)
        return True

    def two_factor_status(self, session_token: str) -> TwoFactorStatus:
        """Summary for a settings page."""
        session = self._authenticated_session(session_token)
        account = self._require(session.account_id)
        now = self._clock()
        return TwoFactorStatus(
            enabled=account.two_factor_enabled,
            recovery_codes_remaining=RecoveryCodeManager.remaining(account),
            trusted_devices=TrustedDeviceRegistry.active_count(account, now),
        )
