"""
Access token encryption.

Tokens (system users, queued requests, stored user auth) are kept as
base64(nonce + AES-GCM ciphertext). The 256-bit key is the SHA-256 digest
of ``settings.ENCRYPTION_KEY``.
"""

import base64
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings
from core.exceptions import ValidationError

NONCE_SIZE = 12


def _key(secret: Optional[str] = None) -> bytes:
    return hashlib.sha256((secret or settings.ENCRYPTION_KEY).encode()).digest()


def encrypt_token(token: str, secret: Optional[str] = None) -> str:
    aesgcm = AESGCM(_key(secret))
    nonce = os.urandom(NONCE_SIZE)
    encrypted = aesgcm.encrypt(nonce, token.encode(), None)
    return base64.b64encode(nonce + encrypted).decode()


def decrypt_token(encrypted_token: str, secret: Optional[str] = None) -> str:
    try:
        raw = base64.b64decode(encrypted_token)
        nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        return AESGCM(_key(secret)).decrypt(nonce, ciphertext, None).decode()
    except (InvalidTag, ValueError) as e:
        raise ValidationError(
            "Stored access token could not be decrypted",
            original_exception=e
        )


def mask_token(token: Optional[str]) -> Optional[str]:
    """Short, log-safe representation of a token."""
    if not token:
        return None
    return f"{token[:6]}...{token[-4:]}" if len(token) > 12 else "***"
