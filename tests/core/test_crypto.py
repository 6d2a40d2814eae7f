"""Connector credential encryption."""
from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from dataprep.core.crypto import decrypt_secret, encrypt_secret, generate_key
from dataprep.core.errors import InternalError
from dataprep.core.settings import get_settings


def test_encrypt_never_returns_plaintext():
    token = encrypt_secret("tw-secret-key")
    assert "tw-secret-key" not in token
    assert decrypt_secret(token) == "tw-secret-key"


def test_missing_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("DATAPREP_ENCRYPTION_KEY")
    get_settings.cache_clear()
    with pytest.raises(InternalError) as exc_info:
        encrypt_secret("tw-secret-key")
    assert exc_info.value.code == "ENCRYPTION_NOT_CONFIGURED"


def test_token_from_another_key_fails():
    foreign = Fernet(generate_key().encode()).encrypt(b"x").decode()
    with pytest.raises(InternalError) as exc_info:
        decrypt_secret(foreign)
    assert exc_info.value.code == "CREDENTIAL_DECRYPT_FAILED"
