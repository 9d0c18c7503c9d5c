"""
Password History Guard

Prevents reuse of the current password and of the most recent superseded
ones (5 by default) on password change and reset.
"""

import logging

from ..errors import ConflictError
from ..storage.models import Account
from .devices import TrustedDeviceRegistry
from .registration import CredentialHasher

logger = logging.getLogger(__name__)


PASSWORD_HISTORY_SIZE = 5

SAME_AS_CURRENT_MESSAGE = "New password must be different from current password"
REUSED_PASSWORD_MESSAGE = "Cannot reuse any of your last {size} passwords"


class PasswordHistoryGuard:
    """
    Checks and records password rotations on an account.

    password_history is ordered oldest first; apply() evicts from the front.
    """

    def __init__(self, hasher: CredentialHasher, size: int = PASSWORD_HISTORY_SIZE):
        """
        Raises:
            ValueError: If size is below 1
        """
        if size < 1:
            raise ValueError("Password history size must be at least 1")
        self._hasher = hasher
        self._size = size

    def is_reused(self, account: Account, new_password: str) -> bool:
        """True if the password matches any remembered hash."""
        return any(
            self._hasher.verify_password(new_password, old_hash)
            for old_hash in account.password_history[-self._size:]
        )

    def ensure_not_reused(self, account: Account, new_password: str) -> None:
        """
        Reject the current password and anything still in history.

        Raises:
            ConflictError: If the password was used recently
        """
        if self._hasher.verify_password(new_password, account.password_hash):
            raise ConflictError(SAME_AS_CURRENT_MESSAGE)

        if self.is_reused(account, new_password):
            raise ConflictError(REUSED_PASSWORD_MESSAGE.format(size=self._size))

    def apply(self, account: Account, new_hash: str,
              devices: TrustedDeviceRegistry) -> None:
        """
        Replace the live hash, in place.

        The outgoing hash is pushed onto history, which is truncated to the
        most recent entries. Accounts with 2FA enabled also lose every
        trusted device.
        """
        account.password_history.append(account.password_hash)
        account.password_history = account.password_history[-self._size:]
        account.password_hash = new_hash

        if account.two_factor_enabled:
            devices.revoke_all(account)
