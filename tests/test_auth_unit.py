"""Unit tests for the authentication engine.

Tests for:
- Login state machine and account lockout
- Token issuance and refresh rotation
- Logout and explicit revocation
- Access token validation and introspection
"""

from datetime import timedelta

import pytest

from idvault.service.errors import (
    AccountDisabled,
    AccountLocked,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidRefreshToken,
    TokenNotFound,
)
from idvault.service.runtime import Runtime
from idvault.service.tokens import REFRESH
from idvault.storage.models import Role, new_id

from conftest import GOOD_PASSWORD, make_settings


async def _login(auth_service, identifier="alice", password=GOOD_PASSWORD):
    result = await auth_service.login(identifier, password)
    assert result.status == "authenticated"
    return result.tokens


class TestLogin:
    """Tests for credential verification."""

    async def test_login_issues_token_pair(self, auth_service, test_account):
        tokens = await _login(auth_service)

        assert tokens.token_type == "Bearer"
        assert tokens.expires_in == 900
        assert tokens.access_token != tokens.refresh_token
        assert await auth_service.validate_access_token(tokens.access_token)
        assert tokens.to_dict()["token_type"] == "Bearer"

    async def test_login_by_email(self, auth_service, test_account):
        tokens = await _login(auth_service, identifier="ALICE@example.com")

        ctx = await auth_service.authenticate(tokens.access_token)
        assert ctx.account_id == test_account.id
        assert ctx.username == "alice"

    async def test_login_records_session_and_refresh(self, auth_service, memory_store, test_account):
        tokens = await _login(auth_service)

        access_jti = auth_service.codec.extract_id(tokens.access_token)
        refresh_jti = auth_service.codec.extract_id(tokens.refresh_token)
        session = memory_store.get_session_by_access_jti(access_jti)
        record = memory_store.get_refresh_by_jti(refresh_jti)
        assert session.account_id == test_account.id
        assert record.session_id == session.id
        assert record.token_hash != tokens.refresh_token
        assert len(record.token_hash) == 64

    async def test_unknown_account(self, auth_service):
        with pytest.raises(InvalidCredentials):
            await auth_service.login("nobody", GOOD_PASSWORD)

    async def test_wrong_password_increments_counter(self, auth_service, memory_store, test_account):
        with pytest.raises(InvalidCredentials):
            await auth_service.login("alice", "wrong")

        assert memory_store.get_account(test_account.id).failed_attempts == 1

    async def test_success_resets_counter(self, auth_service, memory_store, test_account):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice", "wrong")

        await _login(auth_service)

        account = memory_store.get_account(test_account.id)
        assert account.failed_attempts == 0
        assert account.last_login_at is not None

    async def test_disabled_account_checked_before_password(self, auth_service, memory_store, test_account):
        test_account.enabled = False
        memory_store.save_account(test_account)

        with pytest.raises(AccountDisabled):
            await auth_service.login("alice", "wrong")

        assert memory_store.get_account(test_account.id).failed_attempts == 0

    async def test_administrative_lock_never_expires(self, auth_service, memory_store, clock, test_account):
        memory_store.lock_account(test_account.id)

        clock.advance(days=365)

        with pytest.raises(AccountLocked):
            await auth_service.login("alice", GOOD_PASSWORD)


class TestLockout:
    """Tests for the failed-attempt lockout policy."""

    async def test_locks_after_max_attempts(self, auth_service, memory_store, test_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice", "wrong")

        account = memory_store.get_account(test_account.id)
        assert account.locked
        assert account.failed_attempts == 5

        with pytest.raises(AccountLocked):
            await auth_service.login("alice", GOOD_PASSWORD)

    async def test_lock_expires_and_counter_resets(self, auth_service, memory_store, clock, test_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice", "wrong")

        clock.advance(minutes=14, seconds=59)
        with pytest.raises(AccountLocked):
            await auth_service.login("alice", GOOD_PASSWORD)

        clock.advance(seconds=2)
        await _login(auth_service)
        account = memory_store.get_account(test_account.id)
        assert not account.locked
        assert account.locked_until is None
        assert account.failed_attempts == 0

    async def test_expired_lock_restarts_count(self, auth_service, memory_store, clock, test_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice", "wrong")
        clock.advance(minutes=16)

        with pytest.raises(InvalidCredentials):
            await auth_service.login("alice", "wrong")

        account = memory_store.get_account(test_account.id)
        assert account.failed_attempts == 1
        assert not account.locked

    async def test_custom_threshold(self, tmp_path, memory_store, clock, hasher, notifier, test_account):
        settings = make_settings(tmp_path, lockout_max_attempts=2, lockout_duration_minutes=1)
        runtime = Runtime(settings, store=memory_store, clock=clock, hasher=hasher, notifier=notifier)

        for _ in range(2):
            with pytest.raises(InvalidCredentials):
                await runtime.auth.login("alice", "wrong")

        with pytest.raises(AccountLocked):
            await runtime.auth.login("alice", GOOD_PASSWORD)
        clock.advance(minutes=1, seconds=1)
        assert (await runtime.auth.login("alice", GOOD_PASSWORD)).tokens is not None


class TestRefresh:
    """Tests for refresh token rotation."""

    async def test_rotation_replaces_both_tokens(self, auth_service, test_account):
        first = await _login(auth_service)

        second = await auth_service.refresh(first.refresh_token)

        codec = auth_service.codec
        assert codec.extract_id(second.access_token) != codec.extract_id(first.access_token)
        assert codec.extract_id(second.refresh_token) != codec.extract_id(first.refresh_token)
        assert await auth_service.validate_access_token(second.access_token)

    async def test_previous_access_token_stays_valid_until_expiry(self, auth_service, clock, test_account):
        first = await _login(auth_service)

        await auth_service.refresh(first.refresh_token)

        assert await auth_service.validate_access_token(first.access_token)
        clock.advance(minutes=15)
        assert not await auth_service.validate_access_token(first.access_token)

    async def test_strict_rotation_rejects_reuse(self, auth_service, memory_store, test_account):
        first = await _login(auth_service)
        await auth_service.refresh(first.refresh_token)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(first.refresh_token)

        record = memory_store.get_refresh_by_jti(auth_service.codec.extract_id(first.refresh_token))
        assert record.revoked
        assert record.last_used_at is not None

    async def test_non_strict_rotation_allows_reuse(self, tmp_path, memory_store, clock, hasher, notifier, test_account):
        settings = make_settings(tmp_path, strict_refresh_rotation=False)
        runtime = Runtime(settings, store=memory_store, clock=clock, hasher=hasher, notifier=notifier)
        first = await _login(runtime.auth)

        await runtime.auth.refresh(first.refresh_token)
        clock.advance(seconds=5)
        again = await runtime.auth.refresh(first.refresh_token)

        record = memory_store.get_refresh_by_jti(runtime.codec.extract_id(first.refresh_token))
        assert not record.revoked
        assert record.last_used_at == clock()
        assert await runtime.auth.validate_access_token(again.access_token)

    async def test_expired_refresh_token(self, auth_service, clock, test_account):
        tokens = await _login(auth_service)

        clock.advance(days=7)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens.refresh_token)

    async def test_access_token_is_not_a_refresh_token(self, auth_service, test_account):
        tokens = await _login(auth_service)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens.access_token)

    async def test_unrecorded_refresh_token(self, auth_service, test_account):
        stray = auth_service.codec.issue(test_account.id, REFRESH, timedelta(days=1)).token

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(stray)

    async def test_refresh_after_account_disabled(self, auth_service, memory_store, test_account):
        tokens = await _login(auth_service)
        account = memory_store.get_account(test_account.id)
        account.enabled = False
        memory_store.save_account(account)

        with pytest.raises(AccountDisabled):
            await auth_service.refresh(tokens.refresh_token)

    async def test_refresh_picks_up_new_roles(self, auth_service, memory_store, test_account):
        tokens = await _login(auth_service)
        memory_store.create_role(Role(id=new_id(), name="auditor"))
        memory_store.assign_role(test_account.id, "auditor")

        before = await auth_service.authenticate(tokens.access_token)
        rotated = await auth_service.refresh(tokens.refresh_token)
        after = await auth_service.authenticate(rotated.access_token)

        assert before.roles == []
        assert after.roles == ["auditor"]


class TestLogout:
    """Tests for logout and revocation."""

    async def test_logout_revokes_session_and_refresh(self, auth_service, test_account):
        tokens = await _login(auth_service)

        await auth_service.logout(tokens.access_token, tokens.refresh_token)

        assert not await auth_service.validate_access_token(tokens.access_token)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens.refresh_token)

    async def test_access_only_logout_also_kills_linked_refresh(self, auth_service, test_account):
        tokens = await _login(auth_service)

        await auth_service.logout(tokens.access_token)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens.refresh_token)

    async def test_logout_is_idempotent(self, auth_service, memory_store, test_account):
        tokens = await _login(auth_service)
        await auth_service.logout(tokens.access_token, tokens.refresh_token)
        session = memory_store.get_session_by_access_jti(
            auth_service.codec.extract_id(tokens.access_token)
        )

        await auth_service.logout(tokens.access_token, tokens.refresh_token)

        again = memory_store.get_session(session.id)
        assert again.revoked_at == session.revoked_at

    async def test_logout_with_garbage(self, auth_service):
        with pytest.raises(InvalidAccessToken):
            await auth_service.logout("garbage")

    async def test_logout_leaves_other_sessions(self, auth_service, test_account):
        laptop = await _login(auth_service)
        phone = await _login(auth_service)

        await auth_service.logout(laptop.access_token)

        assert await auth_service.validate_access_token(phone.access_token)

    async def test_revoke_session_by_id(self, auth_service, test_account):
        tokens = await _login(auth_service)
        ctx = await auth_service.authenticate(tokens.access_token)

        assert await auth_service.revoke_session(ctx.session_id)
        assert not await auth_service.validate_access_token(tokens.access_token)
        assert not await auth_service.revoke_session(new_id())

    async def test_revoke_refresh_token(self, auth_service, test_account):
        tokens = await _login(auth_service)

        await auth_service.revoke_refresh_token(tokens.refresh_token)
        await auth_service.revoke_refresh_token(tokens.refresh_token)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens.refresh_token)
        assert await auth_service.validate_access_token(tokens.access_token)

    async def test_revoke_unknown_refresh_token(self, auth_service, test_account):
        stray = auth_service.codec.issue(test_account.id, REFRESH, timedelta(days=1)).token

        with pytest.raises(TokenNotFound):
            await auth_service.revoke_refresh_token(stray)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.revoke_refresh_token("garbage")

    async def test_revoke_all_sessions(self, auth_service, test_account):
        first = await _login(auth_service)
        second = await _login(auth_service)

        assert await auth_service.revoke_all_sessions(test_account.id) == 4

        assert not await auth_service.validate_access_token(first.access_token)
        assert not await auth_service.validate_access_token(second.access_token)

    async def test_list_sessions(self, auth_service, clock, test_account):
        first = await _login(auth_service)
        clock.advance(seconds=10)
        second = await _login(auth_service)

        sessions = await auth_service.list_sessions(test_account.id)
        assert len(sessions) == 2
        assert sessions[0].created_at > sessions[1].created_at

        await auth_service.logout(second.access_token)
        remaining = await auth_service.list_sessions(test_account.id)
        assert [s.access_jti for s in remaining] == [auth_service.codec.extract_id(first.access_token)]


class TestValidation:
    """Tests for access token validation and introspection."""

    async def test_validate_rejects_garbage_without_raising(self, auth_service):
        assert not await auth_service.validate_access_token("garbage")
        assert not await auth_service.validate_access_token("")

    async def test_non_ascii_signature_is_rejected_everywhere(self, auth_service, test_account):
        tokens = await _login(auth_service)
        head, body, _ = tokens.access_token.split(".")
        forged = f"{head}.{body}.ééé"
        refresh_head, refresh_body, _ = tokens.refresh_token.split(".")

        assert not await auth_service.validate_access_token(forged)
        assert await auth_service.authenticate(forged) is None
        assert await auth_service.introspect(forged) == {"active": False}
        with pytest.raises(InvalidAccessToken):
            await auth_service.logout(forged)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(f"{refresh_head}.{refresh_body}.é")
        assert await auth_service.validate_access_token(tokens.access_token)

    async def test_refresh_token_is_not_an_access_token(self, auth_service, test_account):
        tokens = await _login(auth_service)

        assert not await auth_service.validate_access_token(tokens.refresh_token)

    async def test_validate_after_expiry(self, auth_service, clock, test_account):
        tokens = await _login(auth_service)

        clock.advance(minutes=15)

        assert not await auth_service.validate_access_token(tokens.access_token)
        assert await auth_service.authenticate(tokens.access_token) is None

    async def test_introspect_active_token(self, auth_service, memory_store, test_account):
        memory_store.create_role(Role(id=new_id(), name="admin"))
        memory_store.create_role(Role(id=new_id(), name="user"))
        memory_store.assign_role(test_account.id, "user")
        memory_store.assign_role(test_account.id, "admin")
        tokens = await _login(auth_service)

        info = await auth_service.introspect(tokens.access_token)

        assert info["active"] is True
        assert info["sub"] == test_account.id
        assert info["username"] == "alice"
        assert info["scope"] == "admin user"
        assert info["exp"] - info["iat"] == 900

    async def test_introspect_revoked_token(self, auth_service, test_account):
        tokens = await _login(auth_service)
        await auth_service.logout(tokens.access_token)

        assert await auth_service.introspect(tokens.access_token) == {"active": False}

    async def test_role_snapshot_is_fixed_at_issuance(self, auth_service, memory_store, test_account):
        memory_store.create_role(Role(id=new_id(), name="admin"))
        memory_store.assign_role(test_account.id, "admin")
        tokens = await _login(auth_service)

        memory_store.remove_role(test_account.id, "admin")

        ctx = await auth_service.authenticate(tokens.access_token)
        assert ctx.roles == ["admin"]


class TestUserInfo:
    async def test_profile_for_live_token(self, auth_service, memory_store, test_account):
        account = memory_store.get_account(test_account.id)
        account.first_name = "Alice"
        account.last_name = "Liddell"
        memory_store.save_account(account)
        memory_store.create_role(Role(id=new_id(), name="user"))
        memory_store.assign_role(test_account.id, "user")
        tokens = await _login(auth_service)

        info = await auth_service.user_info(tokens.access_token)

        assert info == {
            "sub": test_account.id,
            "preferred_username": "alice",
            "email": "alice@example.com",
            "given_name": "Alice",
            "family_name": "Liddell",
            "name": "Alice Liddell",
            "roles": ["user"],
        }

    async def test_name_falls_back_to_username(self, auth_service, test_account):
        tokens = await _login(auth_service)

        info = await auth_service.user_info(tokens.access_token)

        assert info["name"] == "alice"
        assert info["given_name"] is None

    async def test_no_profile_for_dead_tokens(self, auth_service, test_account):
        tokens = await _login(auth_service)

        assert await auth_service.user_info("garbage") is None
        assert await auth_service.user_info(tokens.refresh_token) is None
        await auth_service.logout(tokens.access_token)
        assert await auth_service.user_info(tokens.access_token) is None


class TestEndToEnd:
    async def test_lockout_then_full_session_lifecycle(self, auth_service, clock, test_account):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth_service.login("alice", "wrong")
        with pytest.raises(AccountLocked):
            await auth_service.login("alice", GOOD_PASSWORD)

        clock.advance(minutes=15, seconds=1)
        tokens = await _login(auth_service)
        rotated = await auth_service.refresh(tokens.refresh_token)
        await auth_service.logout(rotated.access_token, rotated.refresh_token)

        assert not await auth_service.validate_access_token(rotated.access_token)
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(rotated.refresh_token)
