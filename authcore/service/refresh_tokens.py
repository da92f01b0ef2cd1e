from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError, TokenRevokedError
from authcore.service.tokens import SecretTokenCodec
from authcore.storage.models import RefreshToken, new_id

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, token_id: str, successor: RefreshToken) -> bool:
        """Revoke ``token_id`` and insert ``successor`` iff the token was still unrevoked."""
        ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


class RefreshTokenManager:
    """Issues, rotates and revokes long-lived refresh tokens.

    Only the SHA-256 fingerprint of a secret is persisted. Each rotation
    revokes the presented token and creates exactly one successor through the
    store's conditional update, so a secret can be exchanged at most once.
    Presenting a token that is already revoked is treated as theft and every
    session of its owner is revoked.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        codec: SecretTokenCodec,
        *,
        ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.codec = codec
        self.ttl = ttl

    def _new_record(
        self,
        user_id: str,
        now: datetime,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> Tuple[str, RefreshToken]:
        secret = self.codec.new_secret()
        record = RefreshToken(
            id=new_id(),
            user_id=user_id,
            token_hash=self.codec.fingerprint(secret),
            issued_at=now,
            expires_at=now + self.ttl,
            revoked=False,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        return secret, record

    def issue(
        self,
        user_id: str,
        now: datetime,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, RefreshToken]:
        secret, record = self._new_record(user_id, now, ip_addr, user_agent)
        self.store.create_refresh_token(record)
        logger.debug("refresh_token_issued", user_id=user_id, token_id=record.id)
        return secret, record

    def rotate(
        self,
        secret: str,
        now: datetime,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, RefreshToken]:
        if not secret:
            raise InvalidTokenError()
        record = self.store.get_refresh_token_by_hash(self.codec.fingerprint(secret))
        if record is None:
            raise InvalidTokenError()
        if record.revoked:
            revoked = self.store.revoke_user_refresh_tokens(record.user_id)
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=record.user_id,
                token_id=record.id,
                sessions_revoked=revoked,
                ip_addr=ip_addr,
            )
            raise TokenRevokedError()
        if now > record.expires_at:
            raise InvalidTokenError()

        new_secret, successor = self._new_record(record.user_id, now, ip_addr, user_agent)
        if not self.store.rotate_refresh_token(record.id, successor):
            # Lost the conditional update to a concurrent rotation of the same secret
            logger.warning(
                "refresh_token_rotation_conflict",
                user_id=record.user_id,
                token_id=record.id,
            )
            raise TokenRevokedError()
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            token_id=record.id,
            successor_id=successor.id,
        )
        return new_secret, successor

    def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def active_sessions(self, user_id: str, now: datetime) -> List[RefreshToken]:
        return [
            token
            for token in self.store.list_user_refresh_tokens(user_id)
            if not token.revoked and token.expires_at >= now
        ]

    def purge_expired(self, now: datetime) -> int:
        """Delete tokens past their expiry; revoked but unexpired ones stay for reuse detection."""
        deleted = self.store.delete_expired_refresh_tokens(now)
        logger.info("refresh_tokens_purged", count=deleted)
        return deleted
