from __future__ import annotations

from typing import Iterable, Optional

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.service.credentials import CredentialStore
from authcore.service.errors import (
    DuplicateEmailError,
    RoleNotFoundError,
    UserNotFoundError,
)
from authcore.service.passwords import CredentialHasher, PasswordPolicy, validate_email
from authcore.service.refresh_tokens import RefreshTokenManager
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Page, User, UserWithRoles, new_id, normalize_paging

logger = get_logger(__name__)


class UserService:
    """Account administration for operators.

    Accounts created here skip email verification. Deactivating an account
    revokes its refresh tokens so no new access token can be minted.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: CredentialHasher,
        *,
        password_policy: Optional[PasswordPolicy] = None,
        refresh_tokens: Optional[RefreshTokenManager] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.password_policy = password_policy or PasswordPolicy()
        self.refresh_tokens = refresh_tokens
        self.clock: Clock = clock or SystemClock()

    def get_user(self, user_id: str) -> UserWithRoles:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        return UserWithRoles(user=user, roles=self.store.roles_for_user(user_id))

    def list_users(
        self,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        search: Optional[str] = None,
    ) -> Page[User]:
        page, per_page = normalize_paging(page, per_page)
        search = search.strip() if search else None
        users, total = self.store.list_users(page, per_page, search or None)
        return Page(items=users, page=page, per_page=per_page, total=total)

    def create_user(
        self,
        email: str,
        password: str,
        display_name: str = "",
        role_ids: Iterable[int] = (),
        *,
        created_by: Optional[str] = None,
    ) -> UserWithRoles:
        email = validate_email(email)
        self.password_policy.enforce(password)
        role_ids = list(dict.fromkeys(role_ids))
        for role_id in role_ids:
            if self.store.get_role(role_id) is None:
                raise RoleNotFoundError(detail={"role_id": role_id})
        if self.store.get_user_by_email(email) is not None:
            raise DuplicateEmailError()

        now = self.clock.now()
        user = User(
            id=new_id(),
            email=email,
            password_hash=self.hasher.hash(password),
            display_name=display_name.strip(),
            is_active=True,
            is_verified=True,
            created_at=now,
            updated_at=now,
        )
        try:
            user = self.store.create_user(user)
        except ConstraintViolation:
            raise DuplicateEmailError()
        for role_id in role_ids:
            self.store.assign_role(user.id, role_id, created_by, now)
        logger.info(
            "user_created_by_admin",
            user_id=user.id,
            created_by=created_by,
            role_ids=role_ids,
        )
        return UserWithRoles(user=user, roles=self.store.roles_for_user(user.id))

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()

        if email is not None:
            email = validate_email(email)
            if email != user.email:
                existing = self.store.get_user_by_email(email)
                if existing is not None and existing.id != user_id:
                    raise DuplicateEmailError()
                user.email = email
        if display_name is not None:
            user.display_name = display_name.strip()
        deactivated = is_active is False and user.is_active
        if is_active is not None:
            user.is_active = is_active
        user.updated_at = self.clock.now()

        try:
            user = self.store.update_user(user)
        except ConstraintViolation:
            raise DuplicateEmailError()
        if deactivated and self.refresh_tokens is not None:
            self.refresh_tokens.revoke_all(user_id)
        logger.info("user_updated", user_id=user_id, deactivated=deactivated)
        return user

    def delete_user(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise UserNotFoundError()
        logger.info("user_deleted", user_id=user_id)
