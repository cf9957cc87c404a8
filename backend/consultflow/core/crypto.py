"""Fernet helpers for secrets stored at rest (Google OAuth tokens)."""

from __future__ import annotations

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings

logger = logging.getLogger(__name__)

_FERNET_INSTANCE: Optional[Fernet] = None
_FERNET_KEY: Optional[str] = None


def validate_token_encryption_key(key: str | None) -> None:
    """Raise RuntimeError when the configured key is missing or not a Fernet key."""

    if not key:
        raise RuntimeError("CALENDAR_TOKEN_ENCRYPTION_KEY must be configured when running in production.")

    try:
        decoded = base64.urlsafe_b64decode(key.encode("utf-8"))
    except ValueError as exc:
        raise RuntimeError("CALENDAR_TOKEN_ENCRYPTION_KEY is invalid (not urlsafe base64).") from exc

    if len(decoded) != 32:
        raise RuntimeError("CALENDAR_TOKEN_ENCRYPTION_KEY must decode to 32 bytes.")


def _fernet() -> Optional[Fernet]:
    """Memoized Fernet for the configured key; None when no key is set."""

    global _FERNET_INSTANCE, _FERNET_KEY

    key = settings.calendar_token_encryption_key
    if not key:
        return None

    if _FERNET_INSTANCE is not None and _FERNET_KEY == key:
        return _FERNET_INSTANCE

    try:
        _FERNET_INSTANCE = Fernet(key.encode("utf-8"))
        _FERNET_KEY = key
        return _FERNET_INSTANCE
    except ValueError as exc:
        raise ValueError("Invalid CALENDAR_TOKEN_ENCRYPTION_KEY; expected base64-encoded 32-byte key") from exc


def encrypt_str(plain: str) -> str:
    """Encrypt with Fernet when a key is configured; return ``plain`` otherwise."""

    cipher = _fernet()
    if cipher is None or plain == "":
        return plain
    return cipher.encrypt(plain.encode("utf-8")).decode("utf-8")


def decrypt_str(token: str) -> str:
    """Decrypt a Fernet token when a key is configured; return ``token`` otherwise."""

    cipher = _fernet()
    if cipher is None or token == "":
        return token

    try:
        return cipher.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Unable to decrypt stored calendar token") from exc


def encryption_available() -> bool:
    try:
        return _fernet() is not None
    except ValueError:
        return False


__all__ = ["encrypt_str", "decrypt_str", "encryption_available", "validate_token_encryption_key"]
