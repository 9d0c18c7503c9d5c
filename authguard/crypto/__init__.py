# Crypto Module
"""
Symmetric encryption for secrets stored at rest (AES-256-GCM).
"""

from .cipher import SecretCipher, generate_nonce, AES_KEY_SIZE, NONCE_SIZE, TAG_SIZE

__all__ = [
    'SecretCipher',
    'generate_nonce',
    'AES_KEY_SIZE',
    'NONCE_SIZE',
    'TAG_SIZE',
]
