from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.service.tokens import SecretTokenCodec
from authcore.storage.models import EmailToken, EmailTokenKind, new_id

logger = get_logger(__name__)


class EmailTokenStore(Protocol):
    def create_email_token(self, token: EmailToken) -> None: ...

    def consume_email_token(
        self, token_hash: str, kind: EmailTokenKind, now: datetime
    ) -> Optional[EmailToken]:
        """Atomically flip ``used`` on an unused, unexpired token and return it."""
        ...

    def delete_expired_email_tokens(self, now: datetime) -> int: ...


class EmailTokenManager:
    """Single-use, short-lived tokens for email verification and password reset."""

    def __init__(
        self,
        store: EmailTokenStore,
        codec: SecretTokenCodec,
        *,
        ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = ttl

    def issue(self, user_id: str, kind: EmailTokenKind, now: datetime) -> str:
        secret = self.codec.new_secret()
        record = EmailToken(
            id=new_id(),
            user_id=user_id,
            token_hash=self.codec.fingerprint(secret),
            kind=EmailTokenKind(kind),
            expires_at=now + self.ttl,
            used=False,
        )
        self.store.create_email_token(record)
        logger.info(
            "email_token_issued", user_id=user_id, token_kind=record.kind.value
        )
        return secret

    def consume(self, secret: str, kind: EmailTokenKind, now: datetime) -> str:
        """Return the owning user id, or raise ``InvalidTokenError``.

        Unknown, already used, expired and wrong-kind tokens are indistinguishable.
        """
        if not secret:
            raise InvalidTokenError()
        record = self.store.consume_email_token(
            self.codec.fingerprint(secret), EmailTokenKind(kind), now
        )
        if record is None:
            logger.warning(
                "email_token_rejected", token_kind=EmailTokenKind(kind).value
            )
            raise InvalidTokenError()
        logger.info(
            "email_token_consumed", user_id=record.user_id, token_kind=record.kind.value
        )
        return record.user_id

    def purge_expired(self, now: datetime) -> int:
        deleted = self.store.delete_expired_email_tokens(now)
        logger.info("email_tokens_purged", count=deleted)
        return deleted
