"""
TOTP (Time-based One-Time Password) Implementation

Implements RFC 6238 TOTP for two-factor authentication.

Features:
- TOTP code generation and verification
- Time drift tolerance (one step either side by default)
- Secret key generation (160 bits, base32 for authenticator apps)
- Provisioning URI and QR code generation
- Short-lived staging of secrets during enrollment
- Encryption of enrolled secrets at rest

Used with:
- Google Authenticator
- Authy
- Microsoft Authenticator
- Any RFC 6238 compliant authenticator
"""

import base64
import binascii
import hashlib
import hmac
import io
import logging
import secrets
import struct
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote

import qrcode
from qrcode.constants import ERROR_CORRECT_L

from ..crypto.cipher import SecretCipher
from ..errors import AuthenticationError
from ..storage.models import Account, TwoFactorEnabled

logger = logging.getLogger(__name__)


# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_SECRET_BYTES = 20    # Secret key length (160 bits for SHA-1)
TOTP_ALGORITHM = 'SHA1'   # Hash algorithm
TOTP_DRIFT_TOLERANCE = 1  # Accept codes from +/- this many time steps

ENROLLMENT_TTL_SECONDS = 600
INVALID_CODE_MESSAGE = "Invalid authentication code"


def generate_secret(length: int = TOTP_SECRET_BYTES) -> bytes:
    """
    Generate a cryptographically secure random secret.

    Args:
        length: Secret length in bytes (default 20 for SHA-1)

    Returns:
        Random bytes for use as TOTP secret
    """
    return secrets.token_bytes(length)


def secret_to_base32(secret: bytes) -> str:
    """
    Encode secret as base32 string (for authenticator apps).

    Args:
        secret: Raw secret bytes

    Returns:
        Base32-encoded string (no padding)
    """
    return base64.b32encode(secret).decode('ascii').rstrip('=')


def base32_to_secret(encoded: str) -> bytes:
    """
    Decode base32 secret string to bytes.

    Args:
        encoded: Base32-encoded string, with or without padding

    Returns:
        Raw secret bytes

    Raises:
        ValueError: If the string is not valid base32
    """
    encoded = encoded.strip().replace(' ', '').upper().rstrip('=')
    padding = (-len(encoded)) % 8
    try:
        return base64.b32decode(encoded + '=' * padding)
    except binascii.Error as e:
        raise ValueError(f"Invalid base32 secret: {e}") from None


def get_time_counter(timestamp: float = None, time_step: int = TOTP_TIME_STEP) -> int:
    """
    Get the time counter value for TOTP.

    Args:
        timestamp: Unix timestamp (uses current time if None)
        time_step: Time step in seconds

    Returns:
        Time counter (T = floor(time / time_step))
    """
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp) // time_step


def hotp(secret: bytes, counter: int, digits: int = TOTP_DIGITS,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate HOTP (HMAC-based OTP) value.

    Implements RFC 4226.

    Args:
        secret: Shared secret key
        counter: Counter value (8-byte integer)
        digits: Number of digits in OTP (default 6)
        algorithm: Hash algorithm (SHA1, SHA256, SHA512)

    Returns:
        OTP string with specified number of digits
    """
    counter_bytes = struct.pack('>Q', counter)

    hash_algo = {
        'SHA1': hashlib.sha1,
        'SHA256': hashlib.sha256,
        'SHA512': hashlib.sha512,
    }.get(algorithm.upper(), hashlib.sha1)

    hmac_hash = hmac.new(secret, counter_bytes, hash_algo).digest()

    # Dynamic truncation (RFC 4226)
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack('>I', hmac_hash[offset:offset + 4])[0]
    truncated &= 0x7FFFFFFF

    otp = truncated % (10 ** digits)
    return str(otp).zfill(digits)


def totp(secret: bytes, timestamp: float = None,
         digits: int = TOTP_DIGITS,
         time_step: int = TOTP_TIME_STEP,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate TOTP (Time-based OTP) value.

    Implements RFC 6238.

    Args:
        secret: Shared secret key
        timestamp: Unix timestamp (uses current time if None)
        digits: Number of digits in OTP
        time_step: Time step in seconds
        algorithm: Hash algorithm

    Returns:
        TOTP string with specified number of digits
    """
    counter = get_time_counter(timestamp, time_step)
    return hotp(secret, counter, digits, algorithm)


def normalize_code(code) -> str:
    """Strip spaces and surrounding whitespace from a user-entered code."""
    return str(code or '').replace(' ', '').strip()


def verify_totp(secret: bytes, code: str,
                timestamp: float = None,
                digits: int = TOTP_DIGITS,
                time_step: int = TOTP_TIME_STEP,
                algorithm: str = TOTP_ALGORITHM,
                drift_tolerance: int = TOTP_DRIFT_TOLERANCE) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Checks the code against current time step and +/- drift_tolerance
    time steps to account for clock drift.

    Args:
        secret: Shared secret key
        code: OTP code to verify
        timestamp: Unix timestamp (uses current time if None)
        digits: Expected number of digits
        time_step: Time step in seconds
        algorithm: Hash algorithm
        drift_tolerance: Number of time steps to check in each direction

    Returns:
        True if code is valid, False otherwise
    """
    if timestamp is None:
        timestamp = time.time()

    code = normalize_code(code)
    if len(code) != digits or not (code.isascii() and code.isdigit()):
        return False

    current_counter = get_time_counter(timestamp, time_step)

    matched = False
    for offset in range(-drift_tolerance, drift_tolerance + 1):
        counter = current_counter + offset
        if counter < 0:
            continue
        expected = hotp(secret, counter, digits, algorithm)
        # Check every step so timing does not reveal which one matched
        if hmac.compare_digest(code, expected):
            matched = True

    return matched


class TOTPGenerator:
    """
    TOTP generator and verifier for a specific secret.

    Example:
        >>> totp_gen = TOTPGenerator()
        >>> code = totp_gen.generate()
        >>> totp_gen.verify(code)
        True
    """

    def __init__(self, secret: bytes = None,
                 digits: int = TOTP_DIGITS,
                 time_step: int = TOTP_TIME_STEP,
                 algorithm: str = TOTP_ALGORITHM,
                 issuer: str = "AuthGuard",
                 account_name: str = "user",
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE):
        """
        Initialize TOTP generator.

        Args:
            secret: Shared secret (generated if None)
            digits: Number of digits in OTP
            time_step: Time step in seconds
            algorithm: Hash algorithm
            issuer: Service name for authenticator apps
            account_name: Account label, usually the email
            drift_tolerance: Steps accepted either side of the current one
        """
        self._secret = secret or generate_secret()
        self._digits = digits
        self._time_step = time_step
        self._algorithm = algorithm
        self._issuer = issuer
        self._account_name = account_name
        self._drift_tolerance = drift_tolerance

    @property
    def secret(self) -> bytes:
        """Raw secret bytes."""
        return self._secret

    @property
    def secret_base32(self) -> str:
        """Base32-encoded secret for authenticator apps."""
        return secret_to_base32(self._secret)

    @property
    def time_step(self) -> int:
        return self._time_step

    @property
    def digits(self) -> int:
        return self._digits

    def generate(self, timestamp: float = None) -> str:
        """
        Generate TOTP code for current or specified time.

        Args:
            timestamp: Unix timestamp (uses current time if None)

        Returns:
            TOTP code string
        """
        return totp(
            self._secret,
            timestamp,
            self._digits,
            self._time_step,
            self._algorithm
        )

    def verify(self, code: str, timestamp: float = None) -> bool:
        """
        Verify a TOTP code.

        Args:
            code: OTP code to verify
            timestamp: Unix timestamp (uses current time if None)

        Returns:
            True if code is valid
        """
        return verify_totp(
            self._secret,
            code,
            timestamp,
            self._digits,
            self._time_step,
            self._algorithm,
            self._drift_tolerance
        )

    def get_provisioning_uri(self) -> str:
        """
        Generate otpauth:// URI for QR code.

        Format: otpauth://totp/{issuer}:{account}?secret=...&issuer=...

        Returns:
            otpauth:// URI string
        """
        label = f"{self._issuer}:{self._account_name}"
        params = {
            'secret': self.secret_base32,
            'issuer': self._issuer,
            'algorithm': self._algorithm,
            'digits': str(self._digits),
            'period': str(self._time_step),
        }

        param_str = '&'.join(f"{k}={quote(str(v))}" for k, v in params.items())
        return f"otpauth://totp/{quote(label)}?{param_str}"

    def __repr__(self) -> str:
        return f"TOTPGenerator(issuer='{self._issuer}', account='{self._account_name}')"


class QRCodeRenderer:
    """Renders provisioning URIs as PNG QR codes."""

    def __init__(self, box_size: int = 10, border: int = 4):
        self._box_size = box_size
        self._border = border

    def render(self, uri: str) -> bytes:
        """
        Generate a QR code image for the provisioning URI.

        Args:
            uri: otpauth:// provisioning URI

        Returns:
            PNG image bytes
        """
        qr = qrcode.QRCode(
            version=1,
            error_correction=ERROR_CORRECT_L,
            box_size=self._box_size,
            border=self._border,
        )
        qr.add_data(uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()


@dataclass
class StagedSecret:
    """A secret waiting for its first valid code."""
    account_id: str
    secret: bytes
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class EnrollmentStaging:
    """
    Short-lived holding area for secrets during enrollment.

    Secrets live here, never on the account, until the user proves they
    can generate a valid code. Each account has at most one pending
    enrollment; starting a new one discards the previous secret.
    """

    def __init__(self, ttl: float = ENROLLMENT_TTL_SECONDS,
                 clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._staged: Dict[str, StagedSecret] = {}
        self._by_account: Dict[str, str] = {}

    def stage(self, account_id: str, secret: bytes) -> str:
        """
        Hold a secret for an account.

        Returns:
            Opaque reference to present when confirming
        """
        ref = secrets.token_urlsafe(24)
        now = self._clock()
        with self._lock:
            self._purge(now)
            previous = self._by_account.pop(account_id, None)
            if previous is not None:
                self._staged.pop(previous, None)
            self._staged[ref] = StagedSecret(account_id, secret, now + self._ttl)
            self._by_account[account_id] = ref
        return ref

    def peek(self, ref: str) -> Optional[StagedSecret]:
        """Return the staged secret if the reference is live."""
        with self._lock:
            staged = self._staged.get(ref)
            if staged is None or staged.is_expired(self._clock()):
                return None
            return staged

    def pop(self, ref: str) -> Optional[StagedSecret]:
        """Remove and return a live staged secret."""
        with self._lock:
            staged = self._staged.pop(ref, None)
            if staged is None:
                return None
            if self._by_account.get(staged.account_id) == ref:
                del self._by_account[staged.account_id]
            if staged.is_expired(self._clock()):
                return None
            return staged

    def discard_for(self, account_id: str) -> bool:
        """Cancel any pending enrollment for an account."""
        with self._lock:
            ref = self._by_account.pop(account_id, None)
            if ref is None:
                return False
            self._staged.pop(ref, None)
            return True

    def _purge(self, now: float) -> None:
        expired = [r for r, s in self._staged.items() if s.is_expired(now)]
        for ref in expired:
            staged = self._staged.pop(ref)
            if self._by_account.get(staged.account_id) == ref:
                del self._by_account[staged.account_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._staged)


@dataclass
class EnrollmentTicket:
    """Everything the caller needs to show the user during enrollment."""
    provisioning_uri: str
    staged_secret_ref: str
    secret_base32: str  # for manual entry when scanning is not possible
    qr_png: bytes

    @property
    def qr_data_uri(self) -> str:
        """The QR code as a data: URI ready for an <img> tag."""
        return "data:image/png;base64," + base64.b64encode(self.qr_png).decode("ascii")


class TOTPEngine:
    """
    Enrollment and verification of TOTP second factors.

    Secrets are encrypted with a dedicated key before they are stored on an
    account; the account id is bound as associated data.
    """

    def __init__(self, cipher: SecretCipher,
                 staging: EnrollmentStaging,
                 qr_renderer: QRCodeRenderer = None,
                 issuer: str = "AuthGuard",
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE):
        self._cipher = cipher
        self._staging = staging
        self._qr_renderer = qr_renderer or QRCodeRenderer()
        self._issuer = issuer
        self._drift_tolerance = drift_tolerance

    @property
    def staging(self) -> EnrollmentStaging:
        return self._staging

    def begin_enrollment(self, account: Account) -> EnrollmentTicket:
        """
        Generate and stage a new secret for an account.

        Args:
            account: Account enrolling a second factor

        Returns:
            EnrollmentTicket with URI, QR code and staging reference
        """
        generator = TOTPGenerator(
            secret=generate_secret(),
            issuer=self._issuer,
            account_name=account.email,
            drift_tolerance=self._drift_tolerance,
        )
        uri = generator.get_provisioning_uri()
        ref = self._staging.stage(account.id, generator.secret)
        logger.info("Started TOTP enrollment for account %s", account.id)

        return EnrollmentTicket(
            provisioning_uri=uri,
            staged_secret_ref=ref,
            secret_base32=generator.secret_base32,
            qr_png=self._qr_renderer.render(uri),
        )

    def peek_staged(self, ref: str) -> Optional[StagedSecret]:
        return self._staging.peek(ref)

    def verify_staged(self, ref: str, code: str, now: float) -> Tuple[str, bytes]:
        """
        Confirm an enrollment with a code from the authenticator app.

        The staged secret is discarded only when the code is valid, so the
        user can retry a mistyped code.

        Returns:
            Tuple of (account_id, secret)

        Raises:
            AuthenticationError: Unknown or expired reference, or bad code
        """
        staged = self._staging.peek(ref)
        if staged is None:
            raise AuthenticationError("No enrollment in progress")

        if not verify_totp(staged.secret, code, now,
                           drift_tolerance=self._drift_tolerance):
            raise AuthenticationError(INVALID_CODE_MESSAGE)

        self._staging.pop(ref)
        return staged.account_id, staged.secret

    def encrypt_secret(self, account_id: str, secret: bytes) -> str:
        """Encrypt a secret for storage on the given account."""
        return self._cipher.encrypt(secret_to_base32(secret),
                                    associated_data=account_id.encode())

    def decrypt_secret(self, account_id: str, ciphertext: str) -> bytes:
        """
        Decrypt a stored secret.

        Raises:
            InternalError: If the ciphertext is corrupt or bound to another account
        """
        plaintext = self._cipher.decrypt(ciphertext, associated_data=account_id.encode())
        return base32_to_secret(plaintext)

    def verify_account_code(self, account: Account, code: str, now: float) -> bool:
        """
        Check a code against an account's enrolled secret.

        Returns:
            False if 2FA is not enabled or the code is wrong
        """
        state = account.two_factor
        if not isinstance(state, TwoFactorEnabled):
            return False
        secret = self.decrypt_secret(account.id, state.secret_ciphertext)
        return verify_totp(secret, code, now, drift_tolerance=self._drift_tolerance)
