from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class UserRecord:
    id: str
    email: str
    password_hash: str
    name: str
    role: str = "viewer"
    access_level: int = 1
    avatar: Optional[str] = None
    bio: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    email_confirmed: bool = False
    confirm_token: Optional[str] = None
    confirm_expires: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "name": self.name,
            "role": self.role,
            "access_level": self.access_level,
            "avatar": self.avatar,
            "bio": self.bio,
            "created_at": _iso(self.created_at),
            "email_confirmed": self.email_confirmed,
            "confirm_token": self.confirm_token,
            "confirm_expires": _iso(self.confirm_expires),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        return cls(
            id=str(data["id"]),
            email=str(data["email"]),
            password_hash=str(data["password_hash"]),
            name=str(data.get("name") or data["id"]),
            role=str(data.get("role") or "viewer"),
            access_level=int(data.get("access_level") or 1),
            avatar=data.get("avatar"),
            bio=data.get("bio"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            email_confirmed=bool(data.get("email_confirmed", False)),
            confirm_token=data.get("confirm_token"),
            confirm_expires=_parse_dt(data.get("confirm_expires")),
        )

    def public_dict(self) -> Dict[str, Any]:
        """User fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "access_level": self.access_level,
            "avatar": self.avatar,
            "bio": self.bio,
            "created_at": _iso(self.created_at),
            "email_confirmed": self.email_confirmed,
        }


@dataclass
class SessionRecord:
    user_id: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        created_at = _parse_dt(data["created_at"])
        expires_at = _parse_dt(data["expires_at"])
        if created_at is None or expires_at is None:
            raise ValueError("session record missing timestamps")
        return cls(user_id=str(data["user_id"]), created_at=created_at, expires_at=expires_at)


@dataclass
class RateEntry:
    count: int
    window_start: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "window_start": _iso(self.window_start)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateEntry":
        return cls(
            count=int(data["count"]),
            window_start=_parse_dt(data["window_start"]) or utcnow(),
        )


@dataclass
class FailedAttempts:
    attempts: int
    last_attempt: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"attempts": self.attempts, "last_attempt": _iso(self.last_attempt)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedAttempts":
        return cls(
            attempts=int(data["attempts"]),
            last_attempt=_parse_dt(data["last_attempt"]) or utcnow(),
        )


@dataclass
class LockoutRecord:
    until: datetime
    reason: str
    attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return {"until": _iso(self.until), "reason": self.reason, "attempts": self.attempts}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockoutRecord":
        until = _parse_dt(data["until"])
        if until is None:
            raise ValueError("lockout record missing expiry")
        return cls(until=until, reason=str(data.get("reason", "")), attempts=int(data.get("attempts", 0)))


@dataclass
class PasswordResetRecord:
    user_id: str
    email: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PasswordResetRecord":
        created_at = _parse_dt(data["created_at"])
        expires_at = _parse_dt(data["expires_at"])
        if created_at is None or expires_at is None:
            raise ValueError("reset record missing timestamps")
        return cls(
            user_id=str(data["user_id"]),
            email=str(data["email"]),
            created_at=created_at,
            expires_at=expires_at,
        )


__all__ = [
    "utcnow",
    "UserRecord",
    "SessionRecord",
    "RateEntry",
    "FailedAttempts",
    "LockoutRecord",
    "PasswordResetRecord",
]
