"""
Recovery Code Module

Single-use backup codes that substitute for a TOTP code.

- 10 codes of 8 upper-case hex characters, issued at enrollment
- Stored only as HMAC-SHA256 with a server-side pepper
- The plaintext set is returned to the caller once and never persisted
- Redeeming a code disables 2FA entirely and purges the remaining codes,
  forcing the user to enroll again

Unknown and already-used codes are rejected with the same error.
"""

import hashlib
import hmac
import secrets
from typing import List, Optional, Tuple

from ..errors import AuthenticationError
from ..storage.models import Account, RecoveryCode, TwoFactorDisabled, TwoFactorEnabled


RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_BYTES = 4   # 8 hex characters
INVALID_RECOVERY_CODE_MESSAGE = "Invalid recovery code"


def generate_recovery_code() -> str:
    """Generate one 8-character upper-case hex code."""
    return secrets.token_hex(RECOVERY_CODE_BYTES).upper()


def normalize_recovery_code(code: str) -> str:
    """Accept codes typed with spaces, hyphens or lower case."""
    return str(code or '').replace('-', '').replace(' ', '').strip().upper()


class RecoveryCodeManager:
    """
    Issues, hashes and redeems recovery codes.

    Example:
        >>> manager = RecoveryCodeManager(pepper)
        >>> plaintext, stored = manager.generate()
        >>> len(plaintext)
        10
    """

    def __init__(self, pepper: bytes, count: int = RECOVERY_CODE_COUNT):
        """
        Args:
            pepper: Server-side secret mixed into every code hash
            count: Number of codes per set
        """
        if not pepper:
            raise ValueError("Recovery code pepper must not be empty")
        self._pepper = pepper
        self._count = count

    def hash_code(self, code: str) -> str:
        """Keyed hash of a normalized code."""
        normalized = normalize_recovery_code(code)
        return hmac.new(self._pepper, normalized.encode(), hashlib.sha256).hexdigest()

    def generate(self) -> Tuple[List[str], List[RecoveryCode]]:
        """
        Generate a fresh set of codes.

        Returns:
            Tuple of (plaintext codes for the user, hashed entries to store)
        """
        plaintext = set()
        while len(plaintext) < self._count:
            plaintext.add(generate_recovery_code())
        codes = sorted(plaintext)
        return codes, [RecoveryCode(hash=self.hash_code(c)) for c in codes]

    def find_unused(self, state: TwoFactorEnabled, code: str) -> Optional[int]:
        """
        Locate an unused entry matching the code.

        Every entry is compared so the time taken does not depend on
        the position of the match.

        Returns:
            Index of the matching entry, or None
        """
        if not normalize_recovery_code(code):
            return None

        candidate = self.hash_code(code)
        found = None
        for index, entry in enumerate(state.recovery_codes):
            if hmac.compare_digest(candidate, entry.hash) and not entry.used and found is None:
                found = index
        return found

    def redeem(self, account: Account, code: str) -> None:
        """
        Redeem a code against an account, in place.

        Marks the entry used and replaces the two-factor state with
        TwoFactorDisabled, which drops every remaining code. Callers run
        this inside an atomic store update.

        Raises:
            AuthenticationError: No unused matching code (or 2FA not enabled)
        """
        state = account.two_factor
        if not isinstance(state, TwoFactorEnabled):
            raise AuthenticationError(INVALID_RECOVERY_CODE_MESSAGE)

        index = self.find_unused(state, code)
        if index is None:
            raise AuthenticationError(INVALID_RECOVERY_CODE_MESSAGE)

        state.recovery_codes[index].used = True
        account.two_factor = TwoFactorDisabled()

    @staticmethod
    def remaining(account: Account) -> int:
        """Number of unused codes on an account."""
        state = account.two_factor
        if not isinstance(state, TwoFactorEnabled):
            return 0
        return sum(1 for entry in state.recovery_codes if not entry.used)
