"""Unit tests for auth/passwords.py.

Covers:
- hash() produces a salted bcrypt digest that verify() accepts
- wrong passwords verify False, never raise
- the 72-byte bcrypt input limit
- corrupt stored digests surface as INTERNAL
"""

import pytest

from auth.errors import AuthError, ErrorKind
from auth.passwords import PasswordHasher


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


class TestHashAndVerify:
    def test_round_trip(self, hasher: PasswordHasher) -> None:
        digest = hasher.hash("s3cret!")
        assert hasher.verify("s3cret!", digest) is True

    def test_wrong_password_is_false(self, hasher: PasswordHasher) -> None:
        digest = hasher.hash("s3cret!")
        assert hasher.verify("S3cret!", digest) is False

    def test_same_password_hashes_differently(self, hasher: PasswordHasher) -> None:
        """Every digest carries its own salt."""
        assert hasher.hash("same") != hasher.hash("same")

    def test_digest_encodes_cost(self) -> None:
        digest = PasswordHasher(rounds=5).hash("pw")
        assert digest.startswith("$2b$05$")

    def test_unicode_password(self, hasher: PasswordHasher) -> None:
        digest = hasher.hash("pässwörd-🔑")
        assert hasher.verify("pässwörd-🔑", digest) is True
        assert hasher.verify("passwort-🔑", digest) is False


class TestLengthLimit:
    def test_72_bytes_is_accepted(self, hasher: PasswordHasher) -> None:
        password = "x" * 72
        assert hasher.verify(password, hasher.hash(password)) is True

    def test_hash_rejects_over_72_bytes(self, hasher: PasswordHasher) -> None:
        with pytest.raises(AuthError) as exc_info:
            hasher.hash("x" * 73)
        assert exc_info.value.kind is ErrorKind.INVALID_INPUT

    def test_multibyte_counts_bytes_not_chars(self, hasher: PasswordHasher) -> None:
        """25 three-byte characters are 75 bytes."""
        with pytest.raises(AuthError):
            hasher.hash("€" * 25)

    def test_verify_over_72_bytes_is_false(self, hasher: PasswordHasher) -> None:
        digest = hasher.hash("x" * 72)
        assert hasher.verify("x" * 73, digest) is False


class TestCorruptDigest:
    def test_malformed_digest_is_internal(self, hasher: PasswordHasher) -> None:
        with pytest.raises(AuthError) as exc_info:
            hasher.verify("pw", "not-a-bcrypt-digest")
        assert exc_info.value.kind is ErrorKind.INTERNAL

    def test_dummy_verify_returns_nothing(self, hasher: PasswordHasher) -> None:
        assert hasher.dummy_verify("anything") is None
