from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from wikiauth.config import Settings
from wikiauth.logging import get_logger, hash_identifier
from wikiauth.service.credentials import CredentialStore
from wikiauth.service.csrf import ClientContext, CSRFService
from wikiauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from wikiauth.service.permissions import Operation, Role, require_permission
from wikiauth.service.rate_limit import Action, RateLimiter
from wikiauth.service.sessions import SessionManager
from wikiauth.service.turnstile import TurnstileVerifier
from wikiauth.service.validation import (
    bot_signal,
    is_valid_username,
    validate_email,
    validate_password,
    validate_registration,
)
from wikiauth.storage.models import UserRecord, utcnow

logger = get_logger(__name__)

REGISTRATION_MESSAGE = "Registration successful. Check your email to confirm your account."
RESET_REQUESTED_MESSAGE = (
    "If an account exists with that email, you will receive a password reset link."
)
INVALID_CREDENTIALS = "Invalid email or password"
NEEDS_CONFIRMATION = "Please confirm your email address before logging in. Check your inbox."


@dataclass
class LoginResult:
    user: UserRecord
    session_token: str
    expires_at: datetime


@dataclass
class RegistrationOutcome:
    """What a registration attempt produced.

    ``user`` and ``confirm_token`` are ``None`` for decoy outcomes (bot
    heuristics, already-registered email) which must look identical to a
    real registration from the outside.
    """

    message: str
    user: Optional[UserRecord] = None
    confirm_token: Optional[str] = None


class AuthService:
    """Login, registration and account flows over the auth components.

    Login runs CSRF, lockout and rate-limit checks strictly before any
    password hashing work.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionManager,
        csrf: CSRFService,
        rate_limiter: RateLimiter,
        turnstile: TurnstileVerifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.turnstile = turnstile
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def issue_csrf_token(self, context: ClientContext) -> str:
        return self.csrf.issue(context)

    def _require_csrf(self, token: Optional[str], context: ClientContext) -> None:
        if not self.settings.csrf_enabled:
            return
        if not token:
            raise ForbiddenError("CSRF token required")
        result = self.csrf.validate(token, context)
        if not result.valid:
            self.logger.warning(
                "csrf_validation_failed",
                reason=result.error,
                ip_hash=hash_identifier(context.ip),
            )
            raise ForbiddenError("Invalid CSRF token", detail={"reason": result.error})

    async def login(
        self,
        email: str,
        password: str,
        context: ClientContext,
        *,
        csrf_token: Optional[str] = None,
    ) -> LoginResult:
        if not email or not password:
            raise ValidationError("Email and password required")
        email = email.strip().lower()

        self._require_csrf(csrf_token, context)

        lockout = await self.rate_limiter.check_lockout(email)
        if lockout.locked:
            raise AccountLockedError(
                lockout.reason or "Account locked",
                retry_after=lockout.retry_after(self._now()),
                detail={"until": lockout.until.isoformat() if lockout.until else None},
            )

        limit = await self.rate_limiter.check_limit(Action.LOGIN, context.ip, email)
        if not limit.allowed:
            raise RateLimitedError(limit.reason or "Too many attempts", retry_after=limit.retry_after or 1)

        user = await self.credentials.validate_credentials(email, password)
        if user is None:
            await self.rate_limiter.record(Action.LOGIN, context.ip, email, success=False)
            self.logger.info("login_failed", email_hash=hash_identifier(email))
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not user.email_confirmed:
            # Unconfirmed accounts count toward lockout like a wrong password
            await self.rate_limiter.record(Action.LOGIN, context.ip, email, success=False)
            self.logger.info("login_unconfirmed", user_id=user.id)
            raise AuthenticationError(NEEDS_CONFIRMATION, detail={"needs_confirmation": True})

        await self.rate_limiter.record(Action.LOGIN, context.ip, email, success=True)
        token, expires_at = await self.sessions.create_session(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, session_token=token, expires_at=expires_at)

    async def register(
        self,
        *,
        username: str,
        name: str,
        email: str,
        password: str,
        context: ClientContext,
        csrf_token: Optional[str] = None,
        turnstile_token: Optional[str] = None,
        hp_field: Optional[str] = None,
        form_timestamp: Optional[str] = None,
    ) -> RegistrationOutcome:
        signal = bot_signal(
            hp_field,
            form_timestamp,
            now=self._now(),
            min_seconds=self.settings.min_form_seconds,
        )
        if signal:
            self.logger.warning("registration_bot_detected", signal=signal, ip_hash=hash_identifier(context.ip))
            return RegistrationOutcome(REGISTRATION_MESSAGE)

        limit = await self.rate_limiter.check_limit(Action.REGISTER, context.ip)
        if not limit.allowed:
            raise RateLimitedError(limit.reason or "Too many attempts", retry_after=limit.retry_after or 1)

        self._require_csrf(csrf_token, context)

        captcha = await self.turnstile.verify(turnstile_token, context.ip)
        if not captcha.success:
            raise ValidationError(captcha.error or "CAPTCHA verification failed", detail={"field": "turnstile_token"})

        normalized_email = validate_registration(username, name, email, password)

        if await self.credentials.get_user_by_email(normalized_email) is not None:
            # Same response as a fresh sign-up so the address is not disclosed
            await self.rate_limiter.record(Action.REGISTER, context.ip, success=True)
            self.logger.info("registration_existing_email", email_hash=hash_identifier(normalized_email))
            return RegistrationOutcome(REGISTRATION_MESSAGE)

        try:
            user, token = await self.credentials.create_user(username, name, normalized_email, password)
        except ConflictError as exc:
            if exc.detail.get("field") == "email":
                # Lost a race with a concurrent sign-up for the same address
                return RegistrationOutcome(REGISTRATION_MESSAGE)
            raise
        await self.rate_limiter.record(Action.REGISTER, context.ip, success=True)
        return RegistrationOutcome(REGISTRATION_MESSAGE, user=user, confirm_token=token)

    async def logout(self, session_token: Optional[str]) -> None:
        if session_token:
            await self.sessions.delete_session(session_token)

    async def confirm_email(self, token: Optional[str]) -> UserRecord:
        if not token:
            raise ValidationError("Confirmation token required", detail={"field": "token"})
        user = await self.credentials.confirm_email(token)
        if user is None:
            raise ValidationError("Invalid or expired confirmation token", detail={"field": "token"})
        return user

    async def forgot_password(self, email: str) -> Optional[str]:
        """Start a reset for ``email``; returns the reset token for the mailer, if any.

        Callers must respond identically whether or not a token was produced.
        """
        normalized = validate_email(email)
        created = await self.credentials.create_password_reset(normalized)
        if created is None:
            return None
        _, token = created
        return token

    async def reset_password(
        self,
        token: Optional[str],
        password: Optional[str],
        context: ClientContext,
        *,
        csrf_token: Optional[str] = None,
    ) -> UserRecord:
        if not token or not password:
            raise ValidationError("Token and password are required")
        self._require_csrf(csrf_token, context)
        validate_password(password)
        user = await self.credentials.consume_password_reset(token, password)
        if user is None:
            raise ValidationError("Invalid or expired reset token", detail={"field": "token"})
        return user

    async def update_profile(
        self,
        user: UserRecord,
        *,
        name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> UserRecord:
        if name is not None and not name.strip():
            raise ValidationError("Name cannot be empty", detail={"field": "name"})
        return await self.credentials.update_profile(user.id, name=name, bio=bio, avatar=avatar)

    async def export_account(self, user: UserRecord) -> dict:
        """Portable copy of the caller's own profile; never includes the password hash."""
        self.logger.info("account_exported", user_id=user.id)
        return {"export_date": self._now().isoformat(), "user": user.public_dict()}

    async def delete_account(self, user: UserRecord, session_token: Optional[str]) -> None:
        await self.credentials.delete_user(user.id)
        if session_token:
            await self.sessions.delete_session(session_token)
        self.logger.info("account_deleted", user_id=user.id)

    # Administration

    async def list_users(self, actor: Optional[UserRecord]) -> List[UserRecord]:
        require_permission(Operation.MANAGE_USERS, actor)
        return await self.credentials.list_users()

    async def get_user(self, actor: Optional[UserRecord], user_id: str) -> UserRecord:
        require_permission(Operation.MANAGE_USERS, actor)
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    async def admin_create_user(
        self,
        actor: Optional[UserRecord],
        *,
        username: str,
        name: str,
        email: str,
        password: str,
        role: str = Role.VIEWER.value,
    ) -> UserRecord:
        require_permission(Operation.MANAGE_USERS, actor)
        if not username or not name or not email or not password:
            raise ValidationError("Missing required fields (username, email, password, name)")
        normalized = validate_email(email)
        if not is_valid_username(username):
            raise ValidationError(
                "Invalid username. Use 3-20 alphanumeric characters or underscores.",
                detail={"field": "username"},
            )
        parsed_role = self._parse_role(role)
        user, _ = await self.credentials.create_user(
            username, name, normalized, password, role=parsed_role, confirmed=True
        )
        self.logger.info("admin_user_created", actor_id=actor.id if actor else None, user_id=user.id)
        return user

    async def admin_update_user(
        self,
        actor: Optional[UserRecord],
        user_id: str,
        *,
        name: Optional[str] = None,
        bio: Optional[str] = None,
        role: Optional[str] = None,
        email_confirmed: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> UserRecord:
        require_permission(Operation.MANAGE_USERS, actor)
        parsed_role = self._parse_role(role) if role is not None else None
        if actor is not None and actor.id == user_id and parsed_role not in (None, Role.ADMIN):
            raise ValidationError("Cannot demote yourself from admin", detail={"field": "role"})
        user = await self.get_user(actor, user_id)
        if name is not None or bio is not None:
            user = await self.credentials.update_profile(user.id, name=name, bio=bio)
        if parsed_role is not None:
            user = await self.credentials.update_role(user.id, parsed_role)
        if email_confirmed is not None:
            user = await self.credentials.set_email_confirmed(user.id, email_confirmed)
        if password:
            validate_password(password)
            user = await self.credentials.set_password(user.id, password)
        self.logger.info("admin_user_updated", actor_id=actor.id if actor else None, user_id=user.id)
        return user

    async def admin_delete_user(self, actor: Optional[UserRecord], user_id: str) -> None:
        require_permission(Operation.MANAGE_USERS, actor)
        if actor is not None and actor.id == user_id:
            raise ValidationError("Cannot delete yourself")
        if not await self.credentials.delete_user(user_id):
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info("admin_user_deleted", actor_id=actor.id if actor else None, user_id=user_id)

    @staticmethod
    def _parse_role(role: str) -> Role:
        try:
            return Role.parse(role)
        except ValueError:
            raise ValidationError(
                "Invalid role. Must be one of: admin, editor, contributor, viewer",
                detail={"field": "role"},
            ) from None


__all__ = [
    "AuthService",
    "LoginResult",
    "RegistrationOutcome",
    "REGISTRATION_MESSAGE",
    "RESET_REQUESTED_MESSAGE",
]
