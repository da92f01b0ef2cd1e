"""Flow tests for the credential service.

Tests for:
- Registration and email verification
- Login, lockout and enumeration resistance
- Refresh rotation and logout
- Password reset and password change
- Role assignment
"""

from datetime import timedelta

import pytest

from authcore.service.audit import AuditSink
from authcore.service.credentials import CredentialService
from authcore.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    DuplicateEmailError,
    ErrorKind,
    InvalidCredentialsError,
    InvalidTokenError,
    RoleNotFoundError,
    TokenRevokedError,
    UserNotFoundError,
    UserNotVerifiedError,
    ValidationError,
)
from authcore.service.tokens import ExpiredTokenError
from authcore.storage.models import AuditEventKind, AuditQuery

EMAIL = "alice@example.com"
PASSWORD = "Passw0rd!"


async def _verified_user(service, outbox, email=EMAIL, password=PASSWORD):
    user = await service.register(email, password, "Alice")
    await service.verify_email(outbox.last_token())
    return user


def _audit_kinds(store, user_id):
    events, _ = store.list_audit_events(AuditQuery(user_id=user_id, per_page=100))
    return [event.kind for event in reversed(events)]


class TestEndToEnd:
    """Register, verify, login and refresh."""

    async def test_full_flow(self, service, outbox, memory_store):
        user = await service.register(EMAIL, PASSWORD, "Alice", ip_addr="10.0.0.1")
        assert not memory_store.get_user(user.id).is_verified

        verified_id = await service.verify_email(outbox.last_token())
        assert verified_id == user.id

        pair = await service.login(EMAIL, PASSWORD, user_agent="pytest")
        assert pair.expires_in == 900
        assert pair.token_type == "bearer"
        assert pair.as_dict()["expires_in"] == 900

        claims = service.validate_access_token(pair.access_token)
        assert claims.sub == user.id
        assert claims.email == EMAIL
        assert claims.roles == ["user"]

        refreshed = await service.refresh(pair.refresh_token)
        assert refreshed.refresh_token != pair.refresh_token

        with pytest.raises(TokenRevokedError):
            await service.refresh(pair.refresh_token)

        assert _audit_kinds(memory_store, user.id) == [
            AuditEventKind.REGISTER,
            AuditEventKind.EMAIL_VERIFIED,
            AuditEventKind.LOGIN_SUCCESS,
        ]


class TestRegister:
    """Account creation."""

    async def test_sends_verification_email(self, service, outbox):
        await service.register(EMAIL, PASSWORD, "Alice")

        assert len(outbox.messages) == 1
        assert outbox.messages[0].to == EMAIL
        assert outbox.messages[0].subject == "Verify Your Email Address"

    async def test_email_is_normalized(self, service, memory_store):
        user = await service.register("  Alice@Example.com ", PASSWORD)

        assert user.email == EMAIL
        assert memory_store.get_user_by_email(EMAIL).id == user.id

    async def test_duplicate_email_is_case_insensitive(self, service):
        await service.register(EMAIL, PASSWORD)

        with pytest.raises(DuplicateEmailError) as exc_info:
            await service.register("ALICE@example.com", PASSWORD)
        assert exc_info.value.kind is ErrorKind.DUPLICATE_EMAIL

    async def test_rejects_invalid_input(self, service, memory_store):
        with pytest.raises(ValidationError):
            await service.register("not-an-email", PASSWORD)
        with pytest.raises(ValidationError):
            await service.register(EMAIL, "password")
        assert memory_store.get_user_by_email(EMAIL) is None

    async def test_missing_default_role_is_tolerated(self, memory_store, settings, clock, outbox):
        service = CredentialService(
            memory_store,
            settings.model_copy(update={"default_role": "member"}),
            clock=clock,
            email_dispatcher=outbox,
        )

        user = await service.register(EMAIL, PASSWORD)

        assert memory_store.roles_for_user(user.id) == []

    async def test_role_assignment_failure_still_sends_verification(
        self, memory_store, settings, clock, outbox, monkeypatch
    ):
        def broken_assign(*args, **kwargs):
            raise RuntimeError("user_role table unavailable")

        monkeypatch.setattr(memory_store, "assign_role", broken_assign)
        service = CredentialService(
            memory_store, settings, clock=clock, email_dispatcher=outbox
        )

        user = await service.register(EMAIL, PASSWORD)

        assert memory_store.roles_for_user(user.id) == []
        assert len(outbox.messages) == 1
        assert await service.verify_email(outbox.last_token()) == user.id
        assert AuditEventKind.REGISTER in _audit_kinds(memory_store, user.id)

    async def test_works_without_dispatcher(self, memory_store, settings, clock):
        service = CredentialService(memory_store, settings, clock=clock)

        user = await service.register(EMAIL, PASSWORD)

        assert user.email == EMAIL


class TestVerifyEmail:
    """Verification tokens."""

    async def test_token_is_single_use(self, service, outbox):
        await service.register(EMAIL, PASSWORD)
        token = outbox.last_token()
        await service.verify_email(token)

        with pytest.raises(InvalidTokenError):
            await service.verify_email(token)

    async def test_token_expires(self, service, outbox, clock):
        await service.register(EMAIL, PASSWORD)
        clock.advance(hours=1, seconds=1)

        with pytest.raises(InvalidTokenError):
            await service.verify_email(outbox.last_token())


class TestLogin:
    """Credential checks and lockout."""

    async def test_unverified_user(self, service):
        await service.register(EMAIL, PASSWORD)

        with pytest.raises(UserNotVerifiedError) as exc_info:
            await service.login(EMAIL, PASSWORD)
        assert exc_info.value.status_code == 403

    async def test_unknown_email_and_wrong_password_look_alike(self, service, outbox):
        await _verified_user(service, outbox)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await service.login(EMAIL, "Wrong-Passw0rd")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_lockout_after_five_failures(self, service, outbox, memory_store, clock):
        user = await _verified_user(service, outbox)

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await service.login(EMAIL, "Wrong-Passw0rd")
        locked = memory_store.get_user(user.id)
        assert locked.failed_login_count == 5
        assert locked.locked_until == clock.now() + timedelta(minutes=15)

        clock.advance(minutes=5)
        with pytest.raises(AccountLockedError) as exc_info:
            await service.login(EMAIL, PASSWORD)
        assert exc_info.value.kind is ErrorKind.ACCOUNT_LOCKED
        assert memory_store.get_user(user.id).failed_login_count == 5

        clock.advance(minutes=10)
        pair = await service.login(EMAIL, PASSWORD)
        assert pair.access_token
        after = memory_store.get_user(user.id)
        assert after.failed_login_count == 0
        assert after.locked_until is None
        assert after.last_login_at == clock.now()

    async def test_failed_logins_are_audited(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)

        with pytest.raises(InvalidCredentialsError):
            await service.login(EMAIL, "Wrong-Passw0rd")

        events, _ = memory_store.list_audit_events(
            AuditQuery(user_id=user.id, kind=AuditEventKind.LOGIN_FAILED)
        )
        assert events[0].payload == {"reason": "invalid_password"}

    async def test_deactivated_account(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        stored = memory_store.get_user(user.id)
        stored.is_active = False
        memory_store.update_user(stored)

        with pytest.raises(AccountDisabledError):
            await service.login(EMAIL, PASSWORD)

    async def test_audit_failure_does_not_block_login(self, memory_store, settings, clock, outbox):
        class BrokenAuditStore:
            def append_audit_event(self, event):
                raise RuntimeError("audit table unavailable")

            def list_audit_events(self, query):
                return [], 0

        service = CredentialService(
            memory_store,
            settings,
            clock=clock,
            email_dispatcher=outbox,
            audit=AuditSink(BrokenAuditStore()),
        )
        await _verified_user(service, outbox)

        assert (await service.login(EMAIL, PASSWORD)).access_token


class TestRefresh:
    """Rotation, reuse detection and role refresh."""

    async def test_reuse_revokes_all_sessions(self, service, outbox):
        await _verified_user(service, outbox)
        laptop = await service.login(EMAIL, PASSWORD)
        phone = await service.login(EMAIL, PASSWORD)

        await service.refresh(laptop.refresh_token)
        with pytest.raises(TokenRevokedError):
            await service.refresh(laptop.refresh_token)
        with pytest.raises(TokenRevokedError):
            await service.refresh(phone.refresh_token)

    async def test_new_access_token_carries_current_roles(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)
        admin = memory_store.get_role_by_name("admin")

        await service.assign_role(user.id, admin.id, assigned_by="root")
        refreshed = await service.refresh(pair.refresh_token)

        assert service.validate_access_token(refreshed.access_token).roles == ["admin", "user"]

    async def test_unknown_token(self, service):
        with pytest.raises(InvalidTokenError):
            await service.refresh("made-up")

    async def test_deactivated_user_cannot_refresh(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)
        stored = memory_store.get_user(user.id)
        stored.is_active = False
        memory_store.update_user(stored)

        with pytest.raises(AccountDisabledError):
            await service.refresh(pair.refresh_token)

    async def test_access_token_expires(self, service, outbox, clock):
        await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)
        clock.advance(minutes=15)

        with pytest.raises(ExpiredTokenError):
            service.validate_access_token(pair.access_token)


class TestLogout:
    """Session revocation."""

    async def test_logout_revokes_refresh_tokens(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)

        assert await service.logout(user.id) == 1

        with pytest.raises(TokenRevokedError):
            await service.refresh(pair.refresh_token)
        # Access tokens stay valid until they expire
        assert service.validate_access_token(pair.access_token).sub == user.id
        assert _audit_kinds(memory_store, user.id)[-1] is AuditEventKind.LOGOUT


class TestPasswordReset:
    """Forgot and reset password."""

    async def test_unknown_email_looks_successful(self, service, outbox):
        assert await service.forgot_password("nobody@example.com") is None
        assert outbox.messages == []

    async def test_reset_flow(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        old_pair = await service.login(EMAIL, PASSWORD)

        assert await service.forgot_password(EMAIL.upper()) is None
        assert outbox.messages[-1].subject == "Password Reset Request"
        token = outbox.last_token()

        await service.reset_password(token, "N3w-Password")

        with pytest.raises(TokenRevokedError):
            await service.refresh(old_pair.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await service.login(EMAIL, PASSWORD)
        assert (await service.login(EMAIL, "N3w-Password")).access_token
        with pytest.raises(InvalidTokenError):
            await service.reset_password(token, "An0ther-Password")
        assert AuditEventKind.PASSWORD_RESET in _audit_kinds(memory_store, user.id)

    async def test_weak_password_keeps_token_usable(self, service, outbox):
        await _verified_user(service, outbox)
        await service.forgot_password(EMAIL)
        token = outbox.last_token()

        with pytest.raises(ValidationError):
            await service.reset_password(token, "weak")
        await service.reset_password(token, "N3w-Password")

    async def test_verify_token_cannot_reset(self, service, outbox):
        await service.register(EMAIL, PASSWORD)

        with pytest.raises(InvalidTokenError):
            await service.reset_password(outbox.last_token(), "N3w-Password")


class TestChangePassword:
    """Authenticated password change."""

    async def test_wrong_old_password(self, service, outbox):
        user = await _verified_user(service, outbox)

        with pytest.raises(InvalidCredentialsError):
            await service.change_password(user.id, "Wrong-Passw0rd", "N3w-Password")

    async def test_weak_new_password(self, service, outbox):
        user = await _verified_user(service, outbox)

        with pytest.raises(ValidationError):
            await service.change_password(user.id, PASSWORD, "weak")

    async def test_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.change_password("missing", PASSWORD, "N3w-Password")

    async def test_change_revokes_sessions_by_default(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)

        await service.change_password(user.id, PASSWORD, "N3w-Password")

        with pytest.raises(TokenRevokedError):
            await service.refresh(pair.refresh_token)
        assert (await service.login(EMAIL, "N3w-Password")).access_token
        events, _ = memory_store.list_audit_events(
            AuditQuery(user_id=user.id, kind=AuditEventKind.PASSWORD_CHANGE)
        )
        assert events[0].payload == {"sessions_revoked": 1}

    async def test_sessions_kept_when_configured(self, memory_store, settings, clock, outbox):
        service = CredentialService(
            memory_store,
            settings.model_copy(update={"revoke_sessions_on_password_change": False}),
            clock=clock,
            email_dispatcher=outbox,
        )
        user = await _verified_user(service, outbox)
        pair = await service.login(EMAIL, PASSWORD)

        await service.change_password(user.id, PASSWORD, "N3w-Password")

        assert (await service.refresh(pair.refresh_token)).access_token


class TestRoleAssignment:
    """Assign and unassign roles."""

    async def test_assign_and_unassign(self, service, outbox, memory_store):
        user = await _verified_user(service, outbox)
        admin = memory_store.get_role_by_name("admin")

        await service.assign_role(user.id, admin.id, assigned_by="root")
        await service.assign_role(user.id, admin.id, assigned_by="root")
        assert [r.name for r in memory_store.roles_for_user(user.id)] == ["admin", "user"]

        await service.unassign_role(user.id, admin.id, removed_by="root")
        assert [r.name for r in memory_store.roles_for_user(user.id)] == ["user"]

        events, _ = memory_store.list_audit_events(
            AuditQuery(user_id=user.id, kind=AuditEventKind.ROLE_CHANGE)
        )
        payloads = [event.payload for event in reversed(events)]
        assert payloads[0] == {"action": "assign", "role_id": admin.id, "assigned_by": "root"}
        assert payloads[-1] == {"action": "unassign", "role_id": admin.id, "removed_by": "root"}

    async def test_unknown_role(self, service, outbox):
        user = await _verified_user(service, outbox)

        with pytest.raises(RoleNotFoundError):
            await service.assign_role(user.id, 999)

    async def test_unknown_user(self, service, memory_store):
        with pytest.raises(UserNotFoundError):
            await service.unassign_role("missing", memory_store.get_role_by_name("user").id)


class TestAuthorize:
    """Role checks on validated claims."""

    async def test_authorize_claims(self, service, outbox):
        await _verified_user(service, outbox)
        claims = service.validate_access_token((await service.login(EMAIL, PASSWORD)).access_token)

        assert service.authorize(claims.roles, ["admin", "user"])
        assert not service.authorize(claims.roles, ["admin"])
