from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.audit import AuditSink
from authcore.service.clock import Clock, SystemClock
from authcore.service.credentials import CredentialService
from authcore.service.email import EmailDispatcher, SmtpEmailSender
from authcore.service.email_tokens import EmailTokenManager
from authcore.service.lockout import LockoutPolicy
from authcore.service.passwords import CredentialHasher, PasswordPolicy
from authcore.service.rbac import RoleService
from authcore.service.refresh_tokens import RefreshTokenManager
from authcore.service.tokens import AccessTokenIssuer, SecretTokenCodec
from authcore.service.users import UserService
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires the store and every credential component from one ``Settings``."""

    def __init__(
        self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None
    ) -> None:
        self.settings = settings or get_settings()
        self.clock: Clock = clock or SystemClock()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_init_started", store_type=store_type)

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        settings = self.settings
        codec = SecretTokenCodec()
        self.hasher = CredentialHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.password_policy = PasswordPolicy()
        self.access_tokens = AccessTokenIssuer(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )
        self.refresh_tokens = RefreshTokenManager(
            self.store, codec, ttl=timedelta(days=settings.refresh_token_ttl_days)
        )
        self.email_tokens = EmailTokenManager(
            self.store, codec, ttl=timedelta(minutes=settings.email_token_ttl_minutes)
        )
        self.lockout = LockoutPolicy(
            threshold=settings.max_failed_logins,
            lock_duration=timedelta(minutes=settings.lock_duration_minutes),
        )
        self.audit = AuditSink(self.store)
        self.email_sender = SmtpEmailSender(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.email_dispatcher = EmailDispatcher(
            self.email_sender,
            max_queue_size=settings.email_queue_size,
            max_retries=settings.email_max_retries,
            retry_delay=settings.email_retry_delay_seconds,
        )

        self.credentials = CredentialService(
            self.store,
            settings,
            clock=self.clock,
            hasher=self.hasher,
            password_policy=self.password_policy,
            access_tokens=self.access_tokens,
            refresh_tokens=self.refresh_tokens,
            email_tokens=self.email_tokens,
            lockout=self.lockout,
            audit=self.audit,
            email_dispatcher=self.email_dispatcher,
        )
        self.users = UserService(
            self.store,
            self.hasher,
            password_policy=self.password_policy,
            refresh_tokens=self.refresh_tokens,
            clock=self.clock,
        )
        self.roles = RoleService(self.store)
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            smtp_configured=self.email_sender.is_configured,
        )

    async def start(self) -> None:
        await self.email_dispatcher.start()

    def cleanup_expired_tokens(self) -> dict:
        """Delete expired refresh and email tokens; meant for a periodic job."""
        now = self.clock.now()
        counts = {
            "refresh_tokens": self.refresh_tokens.purge_expired(now),
            "email_tokens": self.email_tokens.purge_expired(now),
        }
        logger.info("expired_tokens_cleaned", **counts)
        return counts

    async def stop(self) -> None:
        await self.email_dispatcher.stop()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
