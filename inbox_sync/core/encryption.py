"""Encryption of OAuth tokens at rest.

``FERNET_KEY`` holds one or more comma-separated Fernet keys. The first key
encrypts; every key is tried on decrypt, so a new key can be prepended
before the old one is retired.
"""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from inbox_sync.core.config import settings

_keyring: MultiFernet | None = None


def get_keyring() -> MultiFernet:
    global _keyring
    if _keyring is None:
        keys = [key.strip() for key in settings.FERNET_KEY.split(",") if key.strip()]
        if not keys:
            raise RuntimeError(
                "FERNET_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _keyring = MultiFernet([Fernet(key.encode()) for key in keys])
    return _keyring


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_keyring().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_keyring().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")


def rotate_token(encrypted: str) -> str:
    """Re-encrypt a stored token under the current primary key."""
    if not encrypted:
        return ""
    try:
        return get_keyring().rotate(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")
