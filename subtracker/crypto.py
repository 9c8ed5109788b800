"""
Encryption of OAuth tokens at rest using Fernet (symmetric, from cryptography).

Tokens are encrypted before being stored on MailboxCredential and decrypted only
when needed for mailbox API calls. The key is read on every call so a missing
TOKEN_ENCRYPTION_KEY surfaces as ConfigurationError at the point of use.
"""
from cryptography.fernet import Fernet, InvalidToken

from subtracker.config import require_setting
from subtracker.errors import ConfigurationError

__all__ = ["InvalidToken", "decrypt", "encrypt"]


def _fernet() -> Fernet:
    key = require_setting("TOKEN_ENCRYPTION_KEY")
    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not a valid Fernet key") from e


def encrypt(value: str) -> str:
    """Encrypt a string (access_token or refresh_token) for storage."""
    return _fernet().encrypt(value.encode()).decode()


def decrypt(value: str | None) -> str | None:
    """
    Decrypt a stored token. Returns None if value is None (e.g. cleared access_token).
    Raises InvalidToken when the ciphertext was produced under another key.
    """
    if value is None:
        return None
    return _fernet().decrypt(value.encode()).decode()
