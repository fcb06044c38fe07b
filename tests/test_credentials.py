"""Tests for the credential store: accounts, confirmation and password resets."""

import json

import pytest

from wikiauth.service import passwords
from wikiauth.service.credentials import CredentialStore
from wikiauth.service.errors import ConflictError, NotFoundError, TransientStoreError
from wikiauth.service.passwords import legacy_hash_password
from wikiauth.service.permissions import Role
from wikiauth.storage.errors import StoreUnavailableError
from wikiauth.storage.kv import Namespace
from wikiauth.storage.models import UserRecord


@pytest.fixture
def users(store):
    return Namespace(store, "users")


@pytest.fixture
def credentials(users, settings, clock):
    return CredentialStore(users, settings, clock=clock)


class TestCreateUser:
    async def test_creates_unconfirmed_user_with_token(self, credentials, users, settings):
        user, token = await credentials.create_user("alice", "Alice", "Alice@Example.com", "abc12345")
        assert user.email == "alice@example.com"
        assert user.role == "viewer" and user.access_level == 1
        assert not user.email_confirmed
        assert token and len(token) == 64
        assert user.password_hash.startswith("v2:")
        assert await users.get("email:alice@example.com") == "alice"
        assert await users.get(f"confirm:{token}") == "alice"
        assert users.store.ttl(f"users:confirm:{token}") == settings.confirm_token_ttl_hours * 3600

    async def test_confirmed_user_has_no_token(self, credentials):
        user, token = await credentials.create_user(
            "root", "Root", "root@example.com", "abc12345", role=Role.ADMIN, confirmed=True
        )
        assert token is None
        assert user.email_confirmed
        assert user.access_level == 10

    async def test_duplicate_email_conflicts(self, credentials):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        with pytest.raises(ConflictError) as excinfo:
            await credentials.create_user("alice2", "Alice", "ALICE@example.com", "abc12345")
        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username_conflicts(self, credentials):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        with pytest.raises(ConflictError) as excinfo:
            await credentials.create_user("alice", "Alice", "other@example.com", "abc12345")
        assert excinfo.value.detail == {"field": "username"}


class TestValidateCredentials:
    async def test_valid_and_invalid_password(self, credentials):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        assert (await credentials.validate_credentials("alice@example.com", "abc12345")).id == "alice"
        assert await credentials.validate_credentials("alice@example.com", "wrong1234") is None

    async def test_unknown_email_returns_none(self, credentials):
        assert await credentials.validate_credentials("ghost@example.com", "abc12345") is None

    async def test_legacy_hash_upgraded_on_success(self, credentials, users, settings):
        legacy = UserRecord(
            id="old",
            email="old@example.com",
            password_hash=legacy_hash_password("abc12345", salt=settings.legacy_password_salt),
            name="Old",
            email_confirmed=True,
        )
        await users.put_json("user:old", legacy.to_dict())
        await users.put("email:old@example.com", "old")

        user = await credentials.validate_credentials("old@example.com", "abc12345")
        assert user is not None
        stored = json.loads(await users.get("user:old"))
        assert stored["password_hash"].startswith(f"v2:{settings.pbkdf2_iterations}:")
        # The upgraded hash still verifies
        assert await credentials.validate_credentials("old@example.com", "abc12345") is not None

    async def test_failed_upgrade_still_logs_in(self, credentials, users, settings, monkeypatch):
        legacy = UserRecord(
            id="old",
            email="old@example.com",
            password_hash=legacy_hash_password("abc12345", salt=settings.legacy_password_salt),
            name="Old",
        )
        await users.put_json("user:old", legacy.to_dict())
        await users.put("email:old@example.com", "old")

        async def failing_save(user):
            raise StoreUnavailableError("down", operation="put")

        monkeypatch.setattr(credentials, "_save", failing_save)
        user = await credentials.validate_credentials("old@example.com", "abc12345")
        assert user is not None
        assert user.password_hash == legacy.password_hash

    async def test_failures_cost_one_derivation_on_every_path(self, credentials, users, settings, monkeypatch):
        """Unknown email and a wrong password on a legacy hash do the same V2 work."""
        legacy = UserRecord(
            id="old",
            email="old@example.com",
            password_hash=legacy_hash_password("abc12345", salt=settings.legacy_password_salt),
            name="Old",
        )
        await users.put_json("user:old", legacy.to_dict())
        await users.put("email:old@example.com", "old")
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")

        calls = []
        original = passwords._pbkdf2

        def counting(password, salt, iterations):
            calls.append(iterations)
            return original(password, salt, iterations)

        monkeypatch.setattr(passwords, "_pbkdf2", counting)

        for email in ("ghost@example.com", "old@example.com", "alice@example.com"):
            calls.clear()
            assert await credentials.validate_credentials(email, "wrong1234") is None
            assert calls == [settings.pbkdf2_iterations], email

    async def test_store_outage_is_transient(self, credentials, users, monkeypatch):
        async def failing_get(key):
            raise StoreUnavailableError("down", operation="get")

        monkeypatch.setattr(users, "get", failing_get)
        with pytest.raises(TransientStoreError):
            await credentials.validate_credentials("alice@example.com", "abc12345")


class TestConfirmEmail:
    async def test_confirm_consumes_token(self, credentials, users):
        _, token = await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        user = await credentials.confirm_email(token)
        assert user.email_confirmed
        assert user.confirm_token is None
        assert await users.get(f"confirm:{token}") is None
        assert await credentials.confirm_email(token) is None

    async def test_unknown_token(self, credentials):
        assert await credentials.confirm_email("deadbeef") is None
        assert await credentials.confirm_email("") is None

    async def test_expired_token(self, credentials, clock):
        _, token = await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        clock.advance(hours=25)
        assert await credentials.confirm_email(token) is None
        assert not (await credentials.get_user("alice")).email_confirmed


class TestProfileAndAdmin:
    async def test_update_profile_and_role(self, credentials):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        user = await credentials.update_profile("alice", name="Alice B", bio="hello")
        assert (user.name, user.bio) == ("Alice B", "hello")
        user = await credentials.update_role("alice", Role.EDITOR)
        assert (user.role, user.access_level) == ("editor", 5)

    async def test_update_missing_user(self, credentials):
        with pytest.raises(NotFoundError):
            await credentials.update_profile("ghost", name="x")

    async def test_set_email_confirmed_clears_token(self, credentials, users):
        _, token = await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        user = await credentials.set_email_confirmed("alice", True)
        assert user.email_confirmed and user.confirm_token is None
        assert await users.get(f"confirm:{token}") is None

    async def test_delete_user_removes_index(self, credentials, users):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345")
        assert await credentials.delete_user("alice")
        assert await users.get("email:alice@example.com") is None
        assert await credentials.get_user("alice") is None
        assert not await credentials.delete_user("alice")

    async def test_list_users_sorted_by_creation(self, credentials, clock):
        await credentials.create_user("zed", "Zed", "zed@example.com", "abc12345")
        clock.advance(seconds=1)
        await credentials.create_user("amy", "Amy", "amy@example.com", "abc12345")
        assert [u.id for u in await credentials.list_users()] == ["zed", "amy"]


class TestPasswordReset:
    async def test_reset_is_single_use(self, credentials):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345", confirmed=True)
        _, token = await credentials.create_password_reset("alice@example.com")
        assert await credentials.consume_password_reset(token, "newpass99") is not None
        assert await credentials.consume_password_reset(token, "another99") is None
        assert await credentials.validate_credentials("alice@example.com", "newpass99") is not None
        assert await credentials.validate_credentials("alice@example.com", "abc12345") is None

    async def test_unknown_email_produces_no_token(self, credentials):
        assert await credentials.create_password_reset("ghost@example.com") is None

    async def test_expired_reset_token(self, credentials, clock):
        await credentials.create_user("alice", "Alice", "alice@example.com", "abc12345", confirmed=True)
        _, token = await credentials.create_password_reset("alice@example.com")
        clock.advance(minutes=61)
        assert await credentials.consume_password_reset(token, "newpass99") is None
