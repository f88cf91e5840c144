"""
Token encryption utilities for secure storage at rest.
"""
import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

from statementdesk.config import get_settings

logger = structlog.get_logger(__name__)

# Module-level cipher instance (initialized on first use)
_cipher: Fernet | None = None


def _get_cipher() -> Fernet:
    """Get or initialize the Fernet cipher."""
    global _cipher
    if _cipher is None:
        settings = get_settings()
        key = settings.token_encryption_key
        if not key:
            # Derive a stable 32-byte key from the application secret
            digest = hashlib.sha256(settings.secret_key.encode()).digest()
            key = base64.urlsafe_b64encode(digest).decode()
        _cipher = Fernet(key.encode() if isinstance(key, str) else key)
    return _cipher


def encrypt_token(plain_text: str | None) -> str | None:
    """
    Encrypt a token for secure storage.

    Args:
        plain_text: The plain text token to encrypt

    Returns:
        Fernet token as a string, or None if input is None
    """
    if plain_text is None:
        return None
    return _get_cipher().encrypt(plain_text.encode()).decode()


def decrypt_token(encrypted_text: str | None) -> str | None:
    """
    Decrypt a stored token.

    Raises:
        InvalidToken: If the value was not produced with the current key
    """
    if encrypted_text is None:
        return None
    try:
        return _get_cipher().decrypt(encrypted_text.encode()).decode()
    except InvalidToken:
        logger.error("token_decryption_failed")
        raise


def reset_cipher() -> None:
    """Reset the cipher instance (useful for testing)."""
    global _cipher
    _cipher = None
