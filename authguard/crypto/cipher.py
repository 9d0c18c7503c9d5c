"""
Secret Cipher Module

AES-256-GCM authenticated encryption for TOTP secrets at rest.

Stored format:
    v1:<urlsafe-base64(nonce (12 bytes) | ciphertext | tag (16 bytes))>

Security features:
- Authenticated encryption: any tampering fails decryption
- Fresh random nonce per encryption, never reused
- Optional associated data binds a ciphertext to its owner, so a
  ciphertext copied onto another account does not decrypt
- The key is dedicated to this purpose and never used for hashing
"""

import base64
import binascii
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import InternalError

logger = logging.getLogger(__name__)


# Constants
AES_KEY_SIZE = 32       # 256 bits
NONCE_SIZE = 12         # 96 bits for GCM
TAG_SIZE = 16           # 128 bits for GCM
FORMAT_VERSION = "v1"


def generate_nonce() -> bytes:
    """
    Generate a random nonce for AES-GCM.

    Returns:
        12 random bytes
    """
    return secrets.token_bytes(NONCE_SIZE)


class SecretCipher:
    """
    AES-256-GCM cipher producing printable, versioned ciphertexts.

    Example:
        >>> cipher = SecretCipher(secrets.token_bytes(32))
        >>> token = cipher.encrypt("JBSWY3DPEHPK3PXP")
        >>> cipher.decrypt(token)
        'JBSWY3DPEHPK3PXP'
    """

    def __init__(self, key: bytes):
        """
        Initialize with encryption key.

        Args:
            key: 256-bit (32-byte) key

        Raises:
            ValueError: If the key has the wrong length
        """
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str,
                associated_data: Optional[bytes] = None) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Text to encrypt
            associated_data: Optional authenticated but not encrypted data

        Returns:
            Versioned ciphertext string
        """
        nonce = generate_nonce()
        # GCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode('utf-8'), associated_data)
        encoded = base64.urlsafe_b64encode(nonce + sealed).decode('ascii')
        return f"{FORMAT_VERSION}:{encoded}"

    def decrypt(self, token: str,
                associated_data: Optional[bytes] = None) -> str:
        """
        Decrypt and authenticate a ciphertext produced by encrypt().

        Args:
            token: Versioned ciphertext string
            associated_data: Must match the value given to encrypt()

        Returns:
            Decrypted plaintext

        Raises:
            InternalError: If the ciphertext is malformed or fails authentication
        """
        version, sep, encoded = (token or '').partition(':')
        if not sep or version != FORMAT_VERSION:
            logger.error("Refusing to decrypt ciphertext with unknown format")
            raise InternalError()

        try:
            raw = base64.urlsafe_b64decode(encoded.encode('ascii'))
        except (binascii.Error, ValueError):
            logger.error("Ciphertext is not valid base64")
            raise InternalError() from None

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            logger.error("Ciphertext is truncated")
            raise InternalError()

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, associated_data)
        except InvalidTag:
            logger.error("Ciphertext failed authentication")
            raise InternalError() from None

        return plaintext.decode('utf-8')
