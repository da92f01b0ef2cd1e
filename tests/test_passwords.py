"""Tests for password policy, email rules and argon2id hashing."""

import pytest

from authcore.service.errors import ErrorKind, ValidationError
from authcore.service.passwords import (
    CredentialHasher,
    PasswordPolicy,
    is_valid_email,
    normalize_email,
    validate_email,
)


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=1024, parallelism=1)


class TestPasswordPolicy:
    """Length and character-class rules."""

    @pytest.mark.parametrize(
        "password",
        [
            "",
            "Ab1",
            "Abcdef1",  # seven characters
            "abcdefg1",  # no uppercase
            "ABCDEFG1",  # no lowercase
            "Abcdefgh",  # no digit
        ],
    )
    def test_rejects_weak_passwords(self, password):
        assert PasswordPolicy().check(password) is not None

    @pytest.mark.parametrize("password", ["Passw0rd", "Passw0rd!", "zZ9zzzzzzzzz"])
    def test_accepts_strong_passwords(self, password):
        assert PasswordPolicy().check(password) is None

    def test_length_message_mentions_minimum(self):
        assert PasswordPolicy().check("Ab1") == "Password must be at least 8 characters"

    def test_enforce_raises_validation_error_with_field(self):
        with pytest.raises(ValidationError) as exc_info:
            PasswordPolicy().enforce("short")

        assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR
        assert exc_info.value.detail == {"field": "password"}
        assert exc_info.value.status_code == 400


class TestEmailRules:
    """Normalization and format checks on addresses."""

    def test_normalize_trims_and_lowercases(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "email", ["alice", "alice@", "@example.com", "alice@example", "alice@example.c"]
    )
    def test_invalid_formats(self, email):
        assert not is_valid_email(email)

    def test_validate_returns_normalized(self):
        assert validate_email(" Bob.Smith+tag@Mail.Example.org") == "bob.smith+tag@mail.example.org"

    def test_validate_rejects_bad_address(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_email("not-an-email")
        assert exc_info.value.detail == {"field": "email"}


class TestCredentialHasher:
    """argon2id hashing and verification."""

    def test_round_trip(self, hasher):
        digest = hasher.hash("Passw0rd!")

        assert digest.startswith("$argon2id$")
        assert hasher.verify("Passw0rd!", digest)

    def test_wrong_password_fails(self, hasher):
        digest = hasher.hash("Passw0rd!")

        assert not hasher.verify("Passw0rd?", digest)
        assert not hasher.verify("", digest)

    def test_hash_is_salted(self, hasher):
        assert hasher.hash("Passw0rd!") != hasher.hash("Passw0rd!")

    def test_garbage_digest_does_not_raise(self, hasher):
        assert not hasher.verify("Passw0rd!", "not-a-hash")

    def test_needs_rehash_when_costs_change(self, hasher):
        digest = hasher.hash("Passw0rd!")
        stronger = CredentialHasher(time_cost=2, memory_cost=2048, parallelism=1)

        assert not hasher.needs_rehash(digest)
        assert stronger.needs_rehash(digest)
        assert stronger.verify("Passw0rd!", digest)
