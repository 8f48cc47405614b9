"""
Unit tests for the cipher capability backends.
"""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError

from pii_rotation.core.database.encryption import (
    FernetCipher,
    KEY_HASH_PREFIX_LENGTH,
    PgcryptoCipher,
    as_bytes,
    build_cipher,
    hash_key,
    is_ciphertext,
)
from pii_rotation.core.errors import ConfigurationError, RowCryptoError
from pii_rotation.tests.factories import NEW_KEY, OLD_KEY, WRONG_KEY


class TestHashKey:

    def test_fixed_length_prefix(self):
        assert len(hash_key(OLD_KEY)) == KEY_HASH_PREFIX_LENGTH

    def test_deterministic_and_distinct(self):
        assert hash_key(OLD_KEY) == hash_key(OLD_KEY)
        assert hash_key(OLD_KEY) != hash_key(NEW_KEY)

    def test_never_contains_key(self):
        assert OLD_KEY not in hash_key(OLD_KEY)


class TestFernetCipher:

    def test_round_trip(self):
        cipher = FernetCipher()
        ciphertext = cipher.encrypt("alice@example.com", OLD_KEY)
        assert isinstance(ciphertext, bytes)
        assert b"alice" not in ciphertext
        assert cipher.decrypt(ciphertext, OLD_KEY) == "alice@example.com"

    def test_wrong_key_raises_row_crypto_error(self):
        cipher = FernetCipher()
        ciphertext = cipher.encrypt("alice@example.com", OLD_KEY)
        with pytest.raises(RowCryptoError) as exc_info:
            cipher.decrypt(ciphertext, WRONG_KEY)
        assert "alice" not in str(exc_info.value)
        assert WRONG_KEY not in str(exc_info.value)

    def test_corrupt_ciphertext(self):
        with pytest.raises(RowCryptoError):
            FernetCipher().decrypt(b"not-a-token", OLD_KEY)

    def test_accepts_memoryview(self):
        cipher = FernetCipher()
        ciphertext = cipher.encrypt("+1 555 0100", NEW_KEY)
        assert cipher.decrypt(memoryview(ciphertext), NEW_KEY) == "+1 555 0100"

    def test_unicode(self):
        cipher = FernetCipher()
        assert cipher.decrypt(cipher.encrypt("Zoë Müller", OLD_KEY), OLD_KEY) == "Zoë Müller"


class TestPgcryptoCipher:

    @pytest.fixture
    def engine(self):
        return MagicMock()

    def _conn(self, engine):
        return engine.connect.return_value.__enter__.return_value

    def test_decrypt_uses_own_connection(self, engine):
        self._conn(engine).execute.return_value.scalar.return_value = "bob@example.com"
        cipher = PgcryptoCipher(engine)

        assert cipher.decrypt(b"\xc3\x0d", OLD_KEY) == "bob@example.com"
        engine.connect.assert_called_once()
        statement, params = self._conn(engine).execute.call_args[0]
        assert "pgp_sym_decrypt" in str(statement)
        assert params == {"value": b"\xc3\x0d", "key": OLD_KEY}

    def test_decrypt_driver_error_becomes_row_crypto_error(self, engine):
        self._conn(engine).execute.side_effect = DBAPIError(
            "SELECT pgp_sym_decrypt", {"key": OLD_KEY}, Exception("Wrong key or corrupt data")
        )
        with pytest.raises(RowCryptoError) as exc_info:
            PgcryptoCipher(engine).decrypt(b"\xc3\x0d", OLD_KEY)
        assert OLD_KEY not in str(exc_info.value)

    def test_decrypt_empty_result(self, engine):
        self._conn(engine).execute.return_value.scalar.return_value = None
        with pytest.raises(RowCryptoError):
            PgcryptoCipher(engine).decrypt(b"\xc3\x0d", OLD_KEY)

    def test_decrypt_empty_plaintext(self, engine):
        self._conn(engine).execute.return_value.scalar.return_value = ""
        assert PgcryptoCipher(engine).decrypt(b"\xc3\x0d", OLD_KEY) == ""

    def test_encrypt_returns_bytes(self, engine):
        self._conn(engine).execute.return_value.scalar.return_value = memoryview(b"\xc3\x0d\x04")
        assert PgcryptoCipher(engine).encrypt("bob@example.com", NEW_KEY) == b"\xc3\x0d\x04"


class TestBuildCipher:

    def test_fernet(self):
        assert isinstance(build_cipher("fernet"), FernetCipher)

    def test_pgcrypto_requires_engine(self):
        with pytest.raises(ConfigurationError):
            build_cipher("pgcrypto")

    def test_pgcrypto(self):
        assert isinstance(build_cipher("PGCRYPTO", MagicMock()), PgcryptoCipher)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_cipher("rot13")


def test_as_bytes():
    assert as_bytes(memoryview(b"abc")) == b"abc"
    assert as_bytes(bytearray(b"abc")) == b"abc"


def test_as_bytes_rejects_text():
    with pytest.raises(RowCryptoError, match="Expected binary ciphertext"):
        as_bytes("gAAAAAB-token")


@pytest.mark.parametrize("value,expected", [
    (b"\x01", True),
    (memoryview(b"\x01"), True),
    (b"", False),
    (None, False),
    ("gAAAAAB-token", False),
])
def test_is_ciphertext(value, expected):
    assert is_ciphertext(value) is expected
