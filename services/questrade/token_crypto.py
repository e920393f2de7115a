"""Symmetric encryption for stored Questrade tokens (Fernet)."""
import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from services.questrade.errors import TokenDecryptionError
from services.questrade.questrade_config import TOKEN_ENCRYPTION_KEY


def _fernet(secret: str = TOKEN_ENCRYPTION_KEY) -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
    return Fernet(key)


def encrypt_token(plain: str) -> str:
    return _fernet().encrypt(plain.encode()).decode()


def decrypt_token(cipher: str) -> str:
    try:
        return _fernet().decrypt(cipher.encode()).decode()
    except (InvalidToken, ValueError) as exc:
        raise TokenDecryptionError("Stored token could not be decrypted") from exc
