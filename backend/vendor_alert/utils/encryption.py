"""
Encryption utilities for stored Shopify access tokens.
Uses Fernet symmetric encryption from the cryptography package.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from vendor_alert.config import settings
from vendor_alert.errors import AuthError


def _build_fernet(secret: str) -> Fernet:
    # Any configured secret string is stretched into a valid 32-byte Fernet key
    digest = hashlib.sha256(f"{secret}:shopify".encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


_fernet = _build_fernet(settings.encryption_key)


def encrypt_token(token: str) -> str:
    """
    Encrypt an access token for storage.

    Args:
        token: Plain text token

    Returns:
        Encrypted token string
    """
    return _fernet.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt an access token from storage.

    Args:
        encrypted_token: Encrypted token string

    Returns:
        Plain text token

    Raises:
        AuthError: If the token was not produced with the current key
    """
    try:
        return _fernet.decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        raise AuthError("Stored access token could not be decrypted")


def mask_token(token: str) -> str:
    """Mask a token for log output."""
    if not token or len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


__all__ = [
    "encrypt_token",
    "decrypt_token",
    "mask_token",
]
