"""Tests for single-use email verification and reset tokens."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.email_tokens import EmailTokenManager
from authcore.service.errors import InvalidTokenError
from authcore.service.tokens import SecretTokenCodec
from authcore.storage.models import EmailTokenKind, User

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        User(id="user-1", email="alice@example.com", password_hash="x")
    )


@pytest.fixture
def manager(memory_store):
    return EmailTokenManager(memory_store, SecretTokenCodec())


class TestEmailTokenManager:
    """Issue and consume."""

    def test_consume_returns_owner(self, manager, user):
        secret = manager.issue(user.id, EmailTokenKind.VERIFY, NOW)

        assert manager.consume(secret, EmailTokenKind.VERIFY, NOW) == user.id

    def test_second_consume_fails(self, manager, user):
        secret = manager.issue(user.id, EmailTokenKind.RESET, NOW)
        manager.consume(secret, EmailTokenKind.RESET, NOW)

        with pytest.raises(InvalidTokenError):
            manager.consume(secret, EmailTokenKind.RESET, NOW)

    def test_wrong_kind_fails_and_leaves_token_usable(self, manager, user):
        secret = manager.issue(user.id, EmailTokenKind.VERIFY, NOW)

        with pytest.raises(InvalidTokenError):
            manager.consume(secret, EmailTokenKind.RESET, NOW)
        assert manager.consume(secret, EmailTokenKind.VERIFY, NOW) == user.id

    def test_expires_after_one_hour(self, manager, user):
        secret = manager.issue(user.id, EmailTokenKind.VERIFY, NOW)

        with pytest.raises(InvalidTokenError):
            manager.consume(secret, EmailTokenKind.VERIFY, NOW + timedelta(hours=1, seconds=1))

    def test_unknown_and_empty_secrets(self, manager):
        with pytest.raises(InvalidTokenError):
            manager.consume("unknown", EmailTokenKind.VERIFY, NOW)
        with pytest.raises(InvalidTokenError):
            manager.consume("", EmailTokenKind.VERIFY, NOW)

    def test_stored_record_is_hashed(self, manager, memory_store, user):
        secret = manager.issue(user.id, EmailTokenKind.VERIFY, NOW)

        record = memory_store.email_tokens[SecretTokenCodec.fingerprint(secret)]
        assert record.expires_at == NOW + timedelta(hours=1)
        assert not record.used
        assert secret not in memory_store.email_tokens

    def test_concurrent_consume_succeeds_once(self, manager, user):
        secret = manager.issue(user.id, EmailTokenKind.RESET, NOW)
        barrier = threading.Barrier(6)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                outcomes.append(manager.consume(secret, EmailTokenKind.RESET, NOW))
            except InvalidTokenError:
                outcomes.append(None)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(user.id) == 1
        assert outcomes.count(None) == 5


class TestPurgeExpired:
    """Removing email tokens past their expiry."""

    def test_only_expired_tokens_are_deleted(self, manager, memory_store, user):
        manager.issue(user.id, EmailTokenKind.VERIFY, NOW - timedelta(hours=2))
        live = manager.issue(user.id, EmailTokenKind.RESET, NOW)

        assert manager.purge_expired(NOW) == 1

        assert len(memory_store.email_tokens) == 1
        assert manager.consume(live, EmailTokenKind.RESET, NOW) == user.id
