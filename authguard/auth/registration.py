"""
User Registration Module

Password hashing and the input checks applied at registration, password
change and password reset.

Features:
- Argon2id password hashing (winner of Password Hashing Competition)
- Per-hash random salt, handled by argon2-cffi
- Password strength validation
- Email address validation
- One-time tokens for email verification and password reset

Security considerations:
- Never store plaintext passwords or plaintext one-time tokens
- Verification tokens are stored as HMAC-SHA256 with a server secret,
  reset tokens as SHA-256
"""

import hashlib
import hmac
import re
import secrets
from typing import Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


# Argon2id configuration
# These parameters balance security and performance
# - time_cost: number of iterations
# - memory_cost: memory usage in KiB
# - parallelism: number of parallel threads
# - hash_len: length of the hash output
# - salt_len: length of the random salt
ARGON2_CONFIG = {
    'time_cost': 3,          # Number of iterations
    'memory_cost': 65536,    # 64 MiB memory
    'parallelism': 4,        # 4 parallel threads
    'hash_len': 32,          # 256-bit hash
    'salt_len': 16,          # 128-bit salt
    'type': Type.ID          # Argon2id (hybrid)
}


# Password strength requirements
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
SPECIAL_CHARACTERS = r"""[!@#$%^&*()_+\-=\[\]{};':"\\|,.<>/?]"""

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters long and include uppercase, "
    "lowercase, number, and special character"
)

# Email validation (RFC 5322 subset)
EMAIL_MAX_LENGTH = 254
EMAIL_LOCAL_MAX_LENGTH = 64
EMAIL_DOMAIN_MAX_LENGTH = 253
EMAIL_REGEX = re.compile(
    r"^[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?$"
)

NAME_MAX_LENGTH = 50
ONE_TIME_TOKEN_BYTES = 32


class CredentialHasher:
    """
    Secure password hasher using Argon2id.

    Argon2id is the recommended variant for password hashing as it
    provides resistance against both side-channel and GPU attacks.

    Example:
        >>> hasher = CredentialHasher()
        >>> stored = hasher.hash_password("SecurePass123!")
        >>> hasher.verify_password("SecurePass123!", stored)
        True
    """

    def __init__(self, **kwargs):
        """
        Initialize the password hasher with Argon2id.

        Args:
            **kwargs: Override default Argon2 parameters
        """
        config = ARGON2_CONFIG.copy()
        config.update(kwargs)

        self._hasher = PasswordHasher(
            time_cost=config['time_cost'],
            memory_cost=config['memory_cost'],
            parallelism=config['parallelism'],
            hash_len=config['hash_len'],
            salt_len=config['salt_len'],
            type=config['type']
        )
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        """
        Hash a password using Argon2id.

        The resulting hash contains the algorithm parameters and salt.
        Strength is checked by the caller, not here, so that legacy
        passwords can still be hashed for comparison.

        Args:
            password: Plaintext password to hash

        Returns:
            Argon2id hash string
        """
        return self._hasher.hash(password)

    def verify_password(self, password: str, hash_str: str) -> bool:
        """
        Verify a password against an Argon2id hash.

        Args:
            password: Plaintext password to verify
            hash_str: Argon2id hash string to verify against

        Returns:
            True if password matches, False otherwise
        """
        if not password or not hash_str:
            return False
        try:
            return self._hasher.verify(hash_str, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            return False

    def burn_verification(self, password: str) -> None:
        """
        Spend the time of one verification without a real hash.

        Used when the account does not exist, so the response time does
        not reveal that.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_hex(16))
        self.verify_password(password or 'x', self._dummy_hash)

    def needs_rehash(self, hash_str: str) -> bool:
        """
        Check if a hash needs to be rehashed with updated parameters.

        Args:
            hash_str: Existing hash to check

        Returns:
            True if hash should be regenerated with new parameters
        """
        return self._hasher.check_needs_rehash(hash_str)


def validate_password_strength(password: str) -> Dict:
    """
    Validate password against strength requirements.

    Args:
        password: Password to validate

    Returns:
        Dict with 'valid' bool, 'errors' list and 'score'
    """
    password = password or ''
    errors = []

    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Must be at most {PASSWORD_MAX_LENGTH} characters")

    if not re.search(r'[A-Z]', password):
        errors.append("Must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        errors.append("Must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        errors.append("Must contain at least one digit")

    if not re.search(SPECIAL_CHARACTERS, password):
        errors.append("Must contain at least one special character")

    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'score': calculate_password_score(password)
    }


def calculate_password_score(password: str) -> int:
    """
    Calculate a password strength score (0-100).

    Args:
        password: Password to score

    Returns:
        Score from 0 (weak) to 100 (strong)
    """
    score = 0

    # Length scoring (up to 30 points)
    score += min(len(password) * 2, 30)

    # Character variety (up to 40 points)
    if re.search(r'[a-z]', password):
        score += 10
    if re.search(r'[A-Z]', password):
        score += 10
    if re.search(r'\d', password):
        score += 10
    if re.search(SPECIAL_CHARACTERS, password):
        score += 10

    # Bonus for length (up to 20 points)
    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10

    # Penalty for common patterns
    if re.search(r'(.)\1{2,}', password):
        score -= 10
    if re.search(r'(012|123|234|345|456|567|678|789)', password):
        score -= 10
    if re.search(r'(abc|bcd|cde|def|efg)', password.lower()):
        score -= 10

    return max(0, min(100, score))


def validate_email(email: str) -> bool:
    """
    Validate an email address.

    Applies the RFC 5322 length limits on top of the pattern, rejects
    consecutive dots and requires a top-level domain of 2+ characters.

    Args:
        email: Address to validate

    Returns:
        True if the address is acceptable
    """
    if not email or not EMAIL_REGEX.match(email):
        return False
    if len(email) > EMAIL_MAX_LENGTH:
        return False

    local, _, domain = email.rpartition('@')
    if len(local) > EMAIL_LOCAL_MAX_LENGTH or len(domain) > EMAIL_DOMAIN_MAX_LENGTH:
        return False
    if '..' in email:
        return False

    tld = domain.split('.')[-1]
    return len(tld) >= 2


def validate_name(name: Optional[str], label: str = "Name") -> Optional[str]:
    """
    Trim an optional display name.

    Args:
        name: Raw value from the caller
        label: Field name used in error messages

    Returns:
        The trimmed name, or None if it is missing or blank

    Raises:
        TypeError: If the name is not a string
        ValueError: If the trimmed name exceeds NAME_MAX_LENGTH
    """
    if name is None:
        return None
    if not isinstance(name, str):
        raise TypeError(f"{label} must be text only")
    name = name.strip()
    if not name:
        return None
    if len(name) > NAME_MAX_LENGTH:
        raise ValueError(f"{label} cannot exceed {NAME_MAX_LENGTH} characters")
    return name


def generate_one_time_token() -> str:
    """Random URL-safe token for verification and reset links."""
    return secrets.token_urlsafe(ONE_TIME_TOKEN_BYTES)


def hash_verification_token(token: str, secret_key: bytes) -> str:
    """HMAC-SHA256 of an email verification token."""
    return hmac.new(secret_key, token.encode(), hashlib.sha256).hexdigest()


def hash_reset_token(token: str) -> str:
    """SHA-256 of a password reset token."""
    return hashlib.sha256(token.encode()).hexdigest()
