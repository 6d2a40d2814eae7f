"""Fernet encrypt/decrypt for connector credentials.

Plaintext secrets only exist between ``decrypt_secret`` and the connector
call that needs them; they are never persisted, logged or returned.
"""
from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from dataprep.core.errors import InternalError
from dataprep.core.settings import get_settings


def generate_key() -> str:
    return Fernet.generate_key().decode()


def _get_fernet() -> Fernet:
    key = get_settings().encryption_key
    if not key:
        raise InternalError(
            "Credential encryption is not configured", code="ENCRYPTION_NOT_CONFIGURED"
        )
    return Fernet(key.encode())


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a connector secret. Returns a URL-safe base64 token string."""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_secret(token: str) -> str:
    """Decrypt a connector secret from its Fernet token."""
    try:
        return _get_fernet().decrypt(token.encode()).decode()
    except InvalidToken as err:
        raise InternalError(
            "Stored credential could not be decrypted", code="CREDENTIAL_DECRYPT_FAILED"
        ) from err
