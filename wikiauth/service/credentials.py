from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from wikiauth.config import Settings
from wikiauth.logging import get_logger, hash_identifier
from wikiauth.service.errors import ConflictError, NotFoundError, translate_store_errors
from wikiauth.service.passwords import (
    dummy_verify,
    hash_password,
    is_full_strength,
    needs_upgrade,
    verify_password,
)
from wikiauth.service.permissions import Role
from wikiauth.storage.errors import StoreUnavailableError
from wikiauth.storage.kv import Namespace
from wikiauth.storage.models import PasswordResetRecord, UserRecord, utcnow

logger = get_logger(__name__)


def _user_key(user_id: str) -> str:
    return f"user:{user_id}"


def _email_key(email: str) -> str:
    return f"email:{email.lower()}"


class CredentialStore:
    """User records, the email index and the confirmation/reset token flows.

    Registration writes are not transactional: the primary record is written
    before the email index and removed after it, so a partial failure leaves
    at worst an orphaned user record, never an index entry pointing nowhere.
    """

    def __init__(
        self,
        users: Namespace,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _load(self, user_id: str) -> Optional[UserRecord]:
        data = await self.users.get_json(_user_key(user_id))
        if data is None:
            return None
        try:
            return UserRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            self.logger.warning("user_record_corrupt", user_id=user_id)
            return None

    async def _save(self, user: UserRecord) -> None:
        await self.users.put_json(_user_key(user.id), user.to_dict())

    async def _require(self, user_id: str) -> UserRecord:
        user = await self._load(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    @translate_store_errors
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        return await self._load(user_id)

    @translate_store_errors
    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        user_id = await self.users.get(_email_key(email))
        if not user_id:
            return None
        return await self._load(user_id)

    @translate_store_errors
    async def list_users(self) -> List[UserRecord]:
        users: List[UserRecord] = []
        for key in await self.users.list_keys("user:"):
            user = await self._load(key[len("user:"):])
            if user is not None:
                users.append(user)
        return sorted(users, key=lambda u: u.created_at)

    @translate_store_errors
    async def create_user(
        self,
        username: str,
        name: str,
        email: str,
        password: str,
        *,
        role: Role = Role.VIEWER,
        confirmed: bool = False,
    ) -> Tuple[UserRecord, Optional[str]]:
        email = email.strip().lower()
        if await self.users.get(_email_key(email)):
            raise ConflictError("email already registered", detail={"field": "email"})
        if await self.users.get(_user_key(username)):
            raise ConflictError("username already taken", detail={"field": "username"})

        now = self._now()
        token: Optional[str] = None
        confirm_expires: Optional[datetime] = None
        if not confirmed:
            token = secrets.token_hex(32)
            confirm_expires = now + timedelta(hours=self.settings.confirm_token_ttl_hours)

        user = UserRecord(
            id=username,
            email=email,
            password_hash=hash_password(password, iterations=self.settings.pbkdf2_iterations),
            name=name,
            role=role.value,
            access_level=role.level,
            created_at=now,
            email_confirmed=confirmed,
            confirm_token=token,
            confirm_expires=confirm_expires,
        )
        await self._save(user)
        await self.users.put(_email_key(email), user.id)
        if token is not None:
            await self.users.put(
                f"confirm:{token}",
                user.id,
                ttl_seconds=self.settings.confirm_token_ttl_hours * 3600,
            )
        self.logger.info(
            "user_created",
            user_id=user.id,
            role=user.role,
            email_hash=hash_identifier(email),
            confirmed=confirmed,
        )
        return user, token

    @translate_store_errors
    async def validate_credentials(self, email: str, password: str) -> Optional[UserRecord]:
        """Return the user when ``password`` matches, else ``None``.

        Unknown emails and misses against legacy or weaker hashes still pay for
        one full V2 derivation. A matching legacy hash is rewritten as V2; failure
        to persist the upgrade does not fail the login.
        """
        user_id = await self.users.get(_email_key(email.strip()))
        user = await self._load(user_id) if user_id else None
        if user is None:
            dummy_verify(password, iterations=self.settings.pbkdf2_iterations)
            return None
        if not verify_password(
            password, user.password_hash, legacy_salt=self.settings.legacy_password_salt
        ):
            if not is_full_strength(user.password_hash, iterations=self.settings.pbkdf2_iterations):
                # Every rejected login costs one full V2 derivation
                dummy_verify(password, iterations=self.settings.pbkdf2_iterations)
            return None
        if needs_upgrade(user.password_hash, iterations=self.settings.pbkdf2_iterations):
            await self._upgrade_hash(user, password)
        return user

    async def _upgrade_hash(self, user: UserRecord, password: str) -> None:
        previous = user.password_hash
        user.password_hash = hash_password(password, iterations=self.settings.pbkdf2_iterations)
        try:
            await self._save(user)
        except StoreUnavailableError as exc:
            user.password_hash = previous
            self.logger.warning(
                "password_hash_upgrade_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
            )
            return
        self.logger.info("password_hash_upgraded", user_id=user.id)

    @translate_store_errors
    async def confirm_email(self, token: str) -> Optional[UserRecord]:
        if not token:
            return None
        user_id = await self.users.get(f"confirm:{token}")
        if not user_id:
            self.logger.warning("email_confirm_invalid_token", token_prefix=token[:8])
            return None
        user = await self._load(user_id)
        if user is None or user.confirm_token != token:
            self.logger.warning("email_confirm_token_mismatch", user_id=user_id)
            return None
        if user.confirm_expires is not None and user.confirm_expires < self._now():
            self.logger.info("email_confirm_token_expired", user_id=user_id)
            return None
        user.email_confirmed = True
        user.confirm_token = None
        user.confirm_expires = None
        await self._save(user)
        await self.users.delete(f"confirm:{token}")
        self.logger.info("email_confirmed", user_id=user.id)
        return user

    @translate_store_errors
    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> UserRecord:
        user = await self._require(user_id)
        if name is not None:
            user.name = name
        if bio is not None:
            user.bio = bio
        if avatar is not None:
            user.avatar = avatar
        await self._save(user)
        return user

    @translate_store_errors
    async def update_role(self, user_id: str, role: Role) -> UserRecord:
        user = await self._require(user_id)
        user.role = role.value
        user.access_level = role.level
        await self._save(user)
        self.logger.info("user_role_updated", user_id=user.id, role=user.role)
        return user

    @translate_store_errors
    async def set_email_confirmed(self, user_id: str, confirmed: bool) -> UserRecord:
        user = await self._require(user_id)
        user.email_confirmed = confirmed
        if confirmed and user.confirm_token:
            await self.users.delete(f"confirm:{user.confirm_token}")
            user.confirm_token = None
            user.confirm_expires = None
        await self._save(user)
        return user

    @translate_store_errors
    async def set_password(self, user_id: str, password: str) -> UserRecord:
        user = await self._require(user_id)
        user.password_hash = hash_password(password, iterations=self.settings.pbkdf2_iterations)
        await self._save(user)
        self.logger.info("password_changed", user_id=user.id)
        return user

    @translate_store_errors
    async def delete_user(self, user_id: str) -> bool:
        user = await self._load(user_id)
        if user is None:
            return False
        await self.users.delete(_email_key(user.email))
        await self.users.delete(_user_key(user.id))
        if user.confirm_token:
            await self.users.delete(f"confirm:{user.confirm_token}")
        self.logger.info("user_deleted", user_id=user.id)
        return True

    @translate_store_errors
    async def create_password_reset(self, email: str) -> Optional[Tuple[UserRecord, str]]:
        user_id = await self.users.get(_email_key(email.strip()))
        user = await self._load(user_id) if user_id else None
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return None
        now = self._now()
        ttl = timedelta(minutes=self.settings.reset_token_ttl_minutes)
        token = secrets.token_hex(32)
        record = PasswordResetRecord(
            user_id=user.id, email=user.email, created_at=now, expires_at=now + ttl
        )
        await self.users.put_json(
            f"reset:{token}", record.to_dict(), ttl_seconds=int(ttl.total_seconds())
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return user, token

    @translate_store_errors
    async def consume_password_reset(self, token: str, new_password: str) -> Optional[UserRecord]:
        if not token:
            return None
        data = await self.users.get_json(f"reset:{token}")
        if data is None:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            return None
        try:
            record = PasswordResetRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            await self.users.delete(f"reset:{token}")
            return None
        if record.expires_at < self._now():
            await self.users.delete(f"reset:{token}")
            return None
        user = await self._load(record.user_id)
        if user is None:
            await self.users.delete(f"reset:{token}")
            self.logger.warning("password_reset_user_missing", user_id=record.user_id)
            return None
        user.password_hash = hash_password(new_password, iterations=self.settings.pbkdf2_iterations)
        await self._save(user)
        await self.users.delete(f"reset:{token}")
        self.logger.info("password_reset_completed", user_id=user.id)
        return user


__all__ = ["CredentialStore"]
