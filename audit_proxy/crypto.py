"""
Symmetric encryption for data handed to operator notifications.

Fernet (AES-128-CBC + HMAC-SHA256) keyed by PBKDF2-HMAC-SHA256 over the
operator password and salt. Only someone holding the same secret can read
the credential or transcript back.
"""
import base64
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KDF_ITERATIONS = 100_000


class DecryptionError(Exception):
    pass


@lru_cache(maxsize=8)
def _fernet(password: str, salt: str) -> Fernet:
    if not password:
        raise ValueError("encryption password is not configured")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=KDF_ITERATIONS,
    )
    key = base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))
    return Fernet(key)


def encrypt_text(text: str, password: str, salt: str) -> str:
    return _fernet(password, salt).encrypt(text.encode("utf-8")).decode("ascii")


def decrypt_text(token: str, password: str, salt: str) -> str:
    try:
        return _fernet(password, salt).decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise DecryptionError("token cannot be decrypted with this secret") from e
