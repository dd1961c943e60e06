import pytest

from database import LedgerStore
from encryption import (
    IV_BYTES,
    MAGIC,
    SALT_BYTES,
    DecryptionError,
    decrypt_blob,
    encrypt_blob,
    is_encrypted,
)


def test_round_trip_restores_exact_bytes() -> None:
    data = LedgerStore.create().to_bytes()
    blob = encrypt_blob(data, "correct horse")

    assert is_encrypted(blob)
    assert len(blob) == len(MAGIC) + SALT_BYTES + IV_BYTES + len(data) + 16
    assert decrypt_blob(blob, "correct horse") == data


def test_each_encryption_uses_fresh_salt_and_iv() -> None:
    first = encrypt_blob(b"ledger", "pw")
    second = encrypt_blob(b"ledger", "pw")
    assert first != second


def test_wrong_password_fails_generically() -> None:
    blob = encrypt_blob(b"ledger", "right")
    with pytest.raises(DecryptionError) as excinfo:
        decrypt_blob(blob, "wrong")
    assert str(excinfo.value) == "Incorrect password or corrupted data"


def test_tampered_or_truncated_envelopes_fail() -> None:
    blob = bytearray(encrypt_blob(b"ledger", "pw"))
    blob[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt_blob(bytes(blob), "pw")
    with pytest.raises(DecryptionError):
        decrypt_blob(MAGIC + b"short", "pw")


def test_plain_database_image_is_not_treated_as_encrypted() -> None:
    data = LedgerStore.create().to_bytes()
    assert data.startswith(b"SQLite format 3")
    assert not is_encrypted(data)
    with pytest.raises(DecryptionError):
        decrypt_blob(data, "pw")
