from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from wikiauth.config import Settings
from wikiauth.logging import get_logger
from wikiauth.service.credentials import CredentialStore
from wikiauth.service.errors import translate_store_errors
from wikiauth.storage.kv import Namespace
from wikiauth.storage.models import SessionRecord, UserRecord, utcnow

logger = get_logger(__name__)

SESSION_TOKEN_BYTES = 32


def _session_key(token: str) -> str:
    return f"session:{token}"


class SessionManager:
    """Opaque bearer sessions kept in the sessions namespace.

    A session is active from creation until either its ``expires_at`` passes
    (the store TTL removes it at the same moment) or it is deleted on logout.
    """

    def __init__(
        self,
        sessions: Namespace,
        settings: Settings,
        *,
        credentials: Optional[CredentialStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sessions = sessions
        self.settings = settings
        self.credentials = credentials
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @property
    def lifetime(self) -> timedelta:
        return timedelta(hours=self.settings.session_ttl_hours)

    @translate_store_errors
    async def create_session(self, user_id: str) -> Tuple[str, datetime]:
        token = secrets.token_hex(SESSION_TOKEN_BYTES)
        now = self._now()
        record = SessionRecord(user_id=user_id, created_at=now, expires_at=now + self.lifetime)
        await self.sessions.put_json(
            _session_key(token),
            record.to_dict(),
            ttl_seconds=int(self.lifetime.total_seconds()),
        )
        logger.info("session_created", user_id=user_id, token_prefix=token[:8])
        return token, record.expires_at

    @translate_store_errors
    async def get_session(self, token: str) -> Optional[SessionRecord]:
        if not token:
            return None
        data = await self.sessions.get_json(_session_key(token))
        if data is None:
            return None
        try:
            record = SessionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt", token_prefix=token[:8])
            await self.sessions.delete(_session_key(token))
            return None
        if record.expires_at < self._now():
            await self.sessions.delete(_session_key(token))
            return None
        return record

    @translate_store_errors
    async def delete_session(self, token: str) -> None:
        if not token:
            return
        await self.sessions.delete(_session_key(token))
        logger.info("session_deleted", token_prefix=token[:8])

    async def resolve_user(self, token: Optional[str]) -> Optional[UserRecord]:
        if not token or self.credentials is None:
            return None
        session = await self.get_session(token)
        if session is None:
            return None
        return await self.credentials.get_user(session.user_id)

    def session_cookie_params(self, token: str, expires_at: datetime) -> Dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``."""
        return {
            "key": self.settings.session_cookie_name,
            "value": token,
            "expires": expires_at,
            "path": "/",
            "httponly": True,
            "secure": True,
            "samesite": "strict",
        }

    def logout_cookie_params(self) -> Dict[str, Any]:
        return {
            "key": self.settings.session_cookie_name,
            "path": "/",
            "httponly": True,
            "secure": True,
            "samesite": "strict",
        }

    def parse_session_cookie(self, header: Optional[str]) -> Optional[str]:
        """Extract the session token from a raw ``Cookie`` header."""
        if not header:
            return None
        prefix = f"{self.settings.session_cookie_name}="
        for part in header.split(";"):
            part = part.strip()
            if part.startswith(prefix):
                return part[len(prefix):] or None
        return None


__all__ = ["SessionManager", "SESSION_TOKEN_BYTES"]
