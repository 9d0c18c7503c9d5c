"""
Trusted Device Registry

Opaque bearer tokens that let a previously verified device skip the
second-factor challenge until they expire (30 days by default).

Tokens are reusable until expiry or revocation. With hash_tokens enabled
only a SHA-256 digest is kept on the account.
"""

import hashlib
import hmac
import logging
import secrets

from ..storage.models import Account, TrustedDevice

logger = logging.getLogger(__name__)


TRUSTED_DEVICE_TTL_SECONDS = 30 * 24 * 60 * 60
TOKEN_BYTES = 32  # 256 bits


class TrustedDeviceRegistry:
    """Issues, validates and revokes device-bypass tokens on accounts."""

    def __init__(self, ttl: float = TRUSTED_DEVICE_TTL_SECONDS,
                 hash_tokens: bool = False):
        self._ttl = ttl
        self._hash_tokens = hash_tokens

    def _stored_value(self, token: str) -> str:
        if self._hash_tokens:
            return hashlib.sha256(token.encode()).hexdigest()
        return token

    def issue(self, account: Account, now: float) -> str:
        """
        Add a new trusted device to the account, in place.

        Expired entries are pruned at the same time.

        Returns:
            The plaintext token to hand to the client
        """
        token = secrets.token_urlsafe(TOKEN_BYTES)
        account.trusted_devices = [d for d in account.trusted_devices if d.is_valid(now)]
        account.trusted_devices.append(
            TrustedDevice(token=self._stored_value(token), expires_at=now + self._ttl)
        )
        return token

    def is_trusted(self, account: Account, token: str, now: float) -> bool:
        """True if the token is on the account and has not expired."""
        if not token:
            return False
        stored = self._stored_value(token)
        trusted = False
        for device in account.trusted_devices:
            if hmac.compare_digest(device.token.encode(), stored.encode()) and device.is_valid(now):
                trusted = True
        return trusted

    def revoke(self, account: Account, token: str) -> bool:
        """Remove only the given token. Returns True if it was present."""
        if not token:
            return False
        stored = self._stored_value(token)
        before = len(account.trusted_devices)
        account.trusted_devices = [
            d for d in account.trusted_devices
            if not hmac.compare_digest(d.token.encode(), stored.encode())
        ]
        return len(account.trusted_devices) != before

    def revoke_all(self, account: Account) -> int:
        """Clear every trusted device. Returns how many were removed."""
        count = len(account.trusted_devices)
        account.trusted_devices = []
        if count:
            logger.info("Revoked %d trusted devices for account %s", count, account.id)
        return count

    @staticmethod
    def active_count(account: Account, now: float) -> int:
        return sum(1 for d in account.trusted_devices if d.is_valid(now))
