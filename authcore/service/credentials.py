from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol, Tuple

from authcore.config import Settings
from authcore.logging import get_logger, hash_email
from authcore.service.audit import AuditSink, AuditStore
from authcore.service.clock import Clock, SystemClock
from authcore.service.email import (
    EmailDispatcher,
    password_reset_email,
    verification_email,
)
from authcore.service.email_tokens import EmailTokenManager, EmailTokenStore
from authcore.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    DuplicateEmailError,
    InvalidCredentialsError,
    RoleNotFoundError,
    UserNotFoundError,
    UserNotVerifiedError,
)
from authcore.service.lockout import LockoutPolicy, LockoutState
from authcore.service.passwords import (
    CredentialHasher,
    PasswordPolicy,
    normalize_email,
    validate_email,
)
from authcore.service.rbac import RoleStore, authorize
from authcore.service.refresh_tokens import RefreshTokenManager, RefreshTokenStore
from authcore.service.tokens import AccessClaims, AccessTokenIssuer, SecretTokenCodec
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    AuditEventKind,
    EmailTokenKind,
    User,
    new_id,
)

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def update_auth_state(
        self,
        user_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        last_login_at: Optional[datetime] = None,
    ) -> None: ...

    def set_user_verified(self, user_id: str, now: datetime) -> None: ...

    def update_password_hash(
        self, user_id: str, password_hash: str, now: datetime
    ) -> None: ...

    def list_users(
        self, page: int, per_page: int, search: Optional[str] = None
    ) -> Tuple[List[User], int]: ...

    def delete_user(self, user_id: str) -> bool: ...


class CredentialStore(
    UserStore, RoleStore, RefreshTokenStore, EmailTokenStore, AuditStore, Protocol
):
    """Everything the credential lifecycle persists."""


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class CredentialService:
    """Registration, login, session refresh and password lifecycle.

    Collaborators default to instances built from ``settings``; tests and the
    runtime may inject their own.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[CredentialHasher] = None,
        password_policy: Optional[PasswordPolicy] = None,
        access_tokens: Optional[AccessTokenIssuer] = None,
        refresh_tokens: Optional[RefreshTokenManager] = None,
        email_tokens: Optional[EmailTokenManager] = None,
        lockout: Optional[LockoutPolicy] = None,
        audit: Optional[AuditSink] = None,
        email_dispatcher: Optional[EmailDispatcher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.hasher = hasher or CredentialHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.password_policy = password_policy or PasswordPolicy()
        codec = SecretTokenCodec()
        self.access_tokens = access_tokens or AccessTokenIssuer(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        )
        self.refresh_tokens = refresh_tokens or RefreshTokenManager(
            store, codec, ttl=timedelta(days=settings.refresh_token_ttl_days)
        )
        self.email_tokens = email_tokens or EmailTokenManager(
            store, codec, ttl=timedelta(minutes=settings.email_token_ttl_minutes)
        )
        self.lockout = lockout or LockoutPolicy(
            threshold=settings.max_failed_logins,
            lock_duration=timedelta(minutes=settings.lock_duration_minutes),
        )
        self.audit = audit or AuditSink(store)
        self.email_dispatcher = email_dispatcher
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock.now()

    def _email_ttl_minutes(self) -> int:
        return int(self.email_tokens.ttl.total_seconds() // 60)

    def _dispatch_email(self, message) -> None:
        if self.email_dispatcher is None:
            self.logger.warning("email_dispatch_unavailable", subject=message.subject)
            return
        self.email_dispatcher.submit(message)

    def _role_names(self, user_id: str) -> List[str]:
        return [role.name for role in self.store.roles_for_user(user_id)]

    def _issue_pair(
        self,
        user: User,
        now: datetime,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> TokenPair:
        access = self.access_tokens.issue(user.id, user.email, self._role_names(user.id), now)
        refresh, _ = self.refresh_tokens.issue(
            user.id, now, ip_addr=ip_addr, user_agent=user_agent
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.access_tokens.ttl_seconds,
        )

    async def register(
        self,
        email: str,
        password: str,
        display_name: str = "",
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        email = validate_email(email)
        self.password_policy.enforce(password)
        if self.store.get_user_by_email(email) is not None:
            raise DuplicateEmailError()

        now = self._now()
        user = User(
            id=new_id(),
            email=email,
            password_hash=self.hasher.hash(password),
            display_name=display_name.strip(),
            is_active=True,
            is_verified=False,
            created_at=now,
            updated_at=now,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same address
            raise DuplicateEmailError()

        try:
            default_role = self.store.get_role_by_name(self.settings.default_role)
            if default_role is not None:
                self.store.assign_role(user.id, default_role.id, user.id, now)
            else:
                self.logger.warning("default_role_missing", role=self.settings.default_role)
        except Exception as exc:
            self.logger.warning(
                "default_role_assign_failed",
                user_id=user.id,
                role=self.settings.default_role,
                error=str(exc),
            )

        token = self.email_tokens.issue(user.id, EmailTokenKind.VERIFY, now)
        self._dispatch_email(
            verification_email(
                user.email,
                user.display_name,
                token,
                self.settings.app_base_url,
                self._email_ttl_minutes(),
            )
        )
        self.audit.record(
            AuditEventKind.REGISTER,
            user.id,
            {"email_hash": hash_email(user.email)},
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def verify_email(
        self,
        token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        now = self._now()
        user_id = self.email_tokens.consume(token, EmailTokenKind.VERIFY, now)
        self.store.set_user_verified(user_id, now)
        self.audit.record(
            AuditEventKind.EMAIL_VERIFIED,
            user_id,
            None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        self.logger.info("email_verified", user_id=user_id)
        return user_id

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            self.logger.info("login_unknown_email", email_hash=hash_email(normalize_email(email)))
            raise InvalidCredentialsError()

        if self.lockout.is_locked(user, now):
            self.audit.record(
                AuditEventKind.LOGIN_FAILED,
                user.id,
                {"reason": "account_locked"},
                ip_addr=ip_addr,
                user_agent=user_agent,
                now=now,
            )
            raise AccountLockedError(
                detail={"locked_until": user.locked_until.isoformat()}
            )

        if not self.hasher.verify(password, user.password_hash):
            state = self.lockout.register_failure(user, now)
            self._save_lockout(user.id, state)
            if state.locked:
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_login_count=state.failed_login_count,
                    locked_until=state.locked_until.isoformat(),
                )
            self.audit.record(
                AuditEventKind.LOGIN_FAILED,
                user.id,
                {"reason": "invalid_password"},
                ip_addr=ip_addr,
                user_agent=user_agent,
                now=now,
            )
            raise InvalidCredentialsError()

        if not user.is_verified:
            raise UserNotVerifiedError()
        if not user.is_active:
            raise AccountDisabledError()

        self._save_lockout(user.id, self.lockout.register_success(), last_login_at=now)
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_password_hash(user.id, self.hasher.hash(password), now)
            self.logger.info("password_rehashed", user_id=user.id)

        pair = self._issue_pair(user, now, ip_addr=ip_addr, user_agent=user_agent)
        self.audit.record(
            AuditEventKind.LOGIN_SUCCESS,
            user.id,
            None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        self.logger.info("login_success", user_id=user.id)
        return pair

    def _save_lockout(
        self,
        user_id: str,
        state: LockoutState,
        *,
        last_login_at: Optional[datetime] = None,
    ) -> None:
        self.store.update_auth_state(
            user_id,
            failed_login_count=state.failed_login_count,
            locked_until=state.locked_until,
            last_login_at=last_login_at,
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        new_secret, record = self.refresh_tokens.rotate(
            refresh_token, now, ip_addr=ip_addr, user_agent=user_agent
        )
        user = self.store.get_user(record.user_id)
        if user is None:
            self.refresh_tokens.revoke_all(record.user_id)
            raise UserNotFoundError()
        if not user.is_active:
            self.refresh_tokens.revoke_all(user.id)
            raise AccountDisabledError()
        # Roles are re-read so grants made since login show up in the new token
        access = self.access_tokens.issue(user.id, user.email, self._role_names(user.id), now)
        return TokenPair(
            access_token=access,
            refresh_token=new_secret,
            expires_in=self.access_tokens.ttl_seconds,
        )

    async def logout(
        self,
        user_id: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        now = self._now()
        revoked = self.refresh_tokens.revoke_all(user_id)
        self.audit.record(
            AuditEventKind.LOGOUT,
            user_id,
            None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        return revoked

    async def forgot_password(
        self,
        email: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Queue a reset email when the account exists; always looks successful."""
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(normalized))
            return
        now = self._now()
        token = self.email_tokens.issue(user.id, EmailTokenKind.RESET, now)
        self._dispatch_email(
            password_reset_email(
                user.email,
                user.display_name,
                token,
                self.settings.app_base_url,
                self._email_ttl_minutes(),
            )
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.password_policy.enforce(new_password)
        now = self._now()
        user_id = self.email_tokens.consume(token, EmailTokenKind.RESET, now)
        self.store.update_password_hash(user_id, self.hasher.hash(new_password), now)
        self.refresh_tokens.revoke_all(user_id)
        self.audit.record(
            AuditEventKind.PASSWORD_RESET,
            user_id,
            None,
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        self.logger.info("password_reset_completed", user_id=user_id)

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        if not self.hasher.verify(old_password, user.password_hash):
            raise InvalidCredentialsError()
        self.password_policy.enforce(new_password)
        now = self._now()
        self.store.update_password_hash(user_id, self.hasher.hash(new_password), now)
        revoked = 0
        if self.settings.revoke_sessions_on_password_change:
            revoked = self.refresh_tokens.revoke_all(user_id)
        self.audit.record(
            AuditEventKind.PASSWORD_CHANGE,
            user_id,
            {"sessions_revoked": revoked},
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    async def assign_role(
        self,
        user_id: str,
        role_id: int,
        *,
        assigned_by: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._require_user_and_role(user_id, role_id)
        now = self._now()
        self.store.assign_role(user_id, role_id, assigned_by, now)
        self.audit.record(
            AuditEventKind.ROLE_CHANGE,
            user_id,
            {"action": "assign", "role_id": role_id, "assigned_by": assigned_by},
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )

    async def unassign_role(
        self,
        user_id: str,
        role_id: int,
        *,
        removed_by: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._require_user_and_role(user_id, role_id)
        now = self._now()
        self.store.unassign_role(user_id, role_id)
        self.audit.record(
            AuditEventKind.ROLE_CHANGE,
            user_id,
            {"action": "unassign", "role_id": role_id, "removed_by": removed_by},
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )

    def _require_user_and_role(self, user_id: str, role_id: int) -> None:
        if self.store.get_user(user_id) is None:
            raise UserNotFoundError()
        if self.store.get_role(role_id) is None:
            raise RoleNotFoundError()

    def validate_access_token(self, token: str) -> AccessClaims:
        return self.access_tokens.validate(token, self._now())

    @staticmethod
    def authorize(granted: Iterable[str], required: Iterable[str]) -> bool:
        return authorize(granted, required)
