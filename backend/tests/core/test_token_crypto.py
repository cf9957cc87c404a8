from cryptography.fernet import Fernet
import pytest

from consultflow.core import crypto
from consultflow.core.config import Settings, settings


@pytest.fixture
def token_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(settings, "calendar_token_encryption_key", key)
    return key


def test_round_trip_with_key(token_key):
    token = crypto.encrypt_str("ya29.secret")

    assert token != "ya29.secret"
    assert Fernet(token_key.encode()).decrypt(token.encode()) == b"ya29.secret"
    assert crypto.decrypt_str(token) == "ya29.secret"
    assert crypto.encryption_available() is True


def test_passthrough_without_key(monkeypatch):
    monkeypatch.setattr(settings, "calendar_token_encryption_key", None)

    assert crypto.encrypt_str("ya29.secret") == "ya29.secret"
    assert crypto.decrypt_str("ya29.secret") == "ya29.secret"
    assert crypto.encryption_available() is False


def test_token_from_another_key_is_rejected(token_key):
    foreign = Fernet(Fernet.generate_key()).encrypt(b"ya29.secret").decode()

    with pytest.raises(ValueError, match="decrypt"):
        crypto.decrypt_str(foreign)


def test_malformed_key_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "calendar_token_encryption_key", "not-a-key")

    with pytest.raises(ValueError, match="CALENDAR_TOKEN_ENCRYPTION_KEY"):
        crypto.encrypt_str("ya29.secret")
    assert crypto.encryption_available() is False


@pytest.mark.parametrize("key", [None, "", "not-a-key", "c2hvcnQ="])
def test_key_validation_rejects_unusable_keys(key):
    with pytest.raises(RuntimeError, match="CALENDAR_TOKEN_ENCRYPTION_KEY"):
        crypto.validate_token_encryption_key(key)


def test_key_validation_accepts_fernet_key():
    crypto.validate_token_encryption_key(Fernet.generate_key().decode())


def test_production_settings_require_key():
    with pytest.raises(ValueError, match="CALENDAR_TOKEN_ENCRYPTION_KEY"):
        Settings(environment="production", calendar_token_encryption_key=None)
