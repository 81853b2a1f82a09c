from __future__ import annotations
import base64
import os
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigError, CorruptStateError

MAGIC = b"ECDB1"
SALT_BYTES = 16
KDF_ITERATIONS = 100_000


class Encryptor(Protocol):
    def encrypt(self, plaintext: str) -> bytes: ...
    def decrypt(self, ciphertext: bytes) -> str: ...


class EncryptionService:
    """
    Fernet (AES-128-CBC + HMAC) encryption keyed by a passphrase.

    The Fernet key is derived with PBKDF2-HMAC-SHA256 from the passphrase
    and a random salt. Blobs are self-describing:
        ECDB1$<urlsafe-b64 salt>$<fernet token>
    so a file written by another service instance with the same passphrase
    still decrypts.
    """

    def __init__(self, secret: str, salt: Optional[bytes] = None) -> None:
        if not isinstance(secret, str) or not secret:
            raise ConfigError("secret key must be a non-empty string")
        self._secret = secret.encode("utf-8")
        self._salt = salt or os.urandom(SALT_BYTES)
        self._fernets: Dict[bytes, Fernet] = {}

    def _fernet(self, salt: bytes) -> Fernet:
        f = self._fernets.get(salt)
        if f is None:
            kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
            f = Fernet(base64.urlsafe_b64encode(kdf.derive(self._secret)))
            self._fernets[salt] = f
        return f

    def encrypt(self, plaintext: str) -> bytes:
        token = self._fernet(self._salt).encrypt(plaintext.encode("utf-8"))
        return b"$".join((MAGIC, base64.urlsafe_b64encode(self._salt), token))

    def decrypt(self, ciphertext: bytes) -> str:
        parts = ciphertext.strip().split(b"$")
        if len(parts) != 3 or parts[0] != MAGIC:
            raise CorruptStateError("not an encrypted database blob")
        try:
            salt = base64.urlsafe_b64decode(parts[1])
            return self._fernet(salt).decrypt(parts[2]).decode("utf-8")
        except (InvalidToken, ValueError) as e:
            raise CorruptStateError("decryption failed (wrong key or damaged file)") from e

    @staticmethod
    def looks_encrypted(data: bytes) -> bool:
        return data.startswith(MAGIC + b"$")
