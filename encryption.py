"""Password envelope for database snapshots.

Layout: ``MAGIC | salt (16) | iv (12) | AES-256-GCM ciphertext+tag``. The key
is derived with PBKDF2-HMAC-SHA256 over 100,000 iterations. A plain SQLite
image starts with ``SQLite format 3``, so the magic prefix is enough to tell
the two apart.
"""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"LEDGERENC1"
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32
PBKDF2_ITERATIONS = 100_000
# AES-GCM appends a 16 byte tag, even for an empty plaintext.
_MIN_LENGTH = len(MAGIC) + SALT_BYTES + IV_BYTES + 16


class DecryptionError(ValueError):
    def __init__(self) -> None:
        super().__init__("Incorrect password or corrupted data")


def derive_key(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS, KEY_BYTES
    )


def is_encrypted(blob: bytes) -> bool:
    return blob.startswith(MAGIC)


def encrypt_blob(data: bytes, password: str) -> bytes:
    if not password:
        raise ValueError("Password must not be empty")
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    ciphertext = AESGCM(derive_key(password, salt)).encrypt(iv, data, None)
    return MAGIC + salt + iv + ciphertext


def decrypt_blob(blob: bytes, password: str) -> bytes:
    # Every failure reports the same message so a wrong password is
    # indistinguishable from a tampered envelope.
    if not is_encrypted(blob) or len(blob) < _MIN_LENGTH or not password:
        raise DecryptionError()
    offset = len(MAGIC)
    salt = blob[offset : offset + SALT_BYTES]
    offset += SALT_BYTES
    iv = blob[offset : offset + IV_BYTES]
    offset += IV_BYTES
    try:
        return AESGCM(derive_key(password, salt)).decrypt(iv, blob[offset:], None)
    except InvalidTag as exc:
        raise DecryptionError() from exc
