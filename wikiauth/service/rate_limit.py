from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from wikiauth.config import Settings
from wikiauth.logging import get_logger, hash_identifier
from wikiauth.service.errors import translate_store_errors
from wikiauth.storage.kv import Namespace
from wikiauth.storage.models import FailedAttempts, LockoutRecord, RateEntry, utcnow

logger = get_logger(__name__)


class Action(str, Enum):
    LOGIN = "login"
    REGISTER = "register"


@dataclass(frozen=True)
class Limit:
    max: int
    window_seconds: int

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    @property
    def ttl_seconds(self) -> int:
        # Counters outlive their window so an expired window can still be observed and reset
        return math.ceil(self.window_seconds * 1.5)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class LockoutResult:
    locked: bool
    until: Optional[datetime] = None
    reason: Optional[str] = None

    def retry_after(self, now: datetime) -> int:
        if self.until is None:
            return 0
        return max(1, math.ceil((self.until - now).total_seconds()))


def rate_limit_headers(retry_after: Optional[int], *, now: Optional[datetime] = None) -> Dict[str, str]:
    """``Retry-After`` and ``X-RateLimit-Reset`` headers for a denied request."""
    if not retry_after:
        return {}
    current = now or utcnow()
    return {
        "Retry-After": str(retry_after),
        "X-RateLimit-Reset": str(math.ceil(current.timestamp()) + retry_after),
    }


class RateLimiter:
    """Fixed-window counters per IP, per email and globally, plus account lockout.

    Counters are read-modify-write across separate store calls. Concurrent
    requests can undercount; this is accepted since no cross-key atomicity
    is available.
    """

    def __init__(
        self,
        store: Namespace,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def limits_for(self, action: Action) -> Dict[str, Limit]:
        s = self.settings
        if Action(action) is Action.LOGIN:
            return {
                "ip": Limit(s.login_ip_max, s.login_ip_window_seconds),
                "email": Limit(s.login_email_max, s.login_email_window_seconds),
            }
        return {
            "ip": Limit(s.register_ip_max, s.register_ip_window_seconds),
            "global": Limit(s.register_global_max, s.register_global_window_seconds),
        }

    async def _entry(self, key: str, limit: Limit) -> RateEntry:
        now = self._now()
        data = await self.store.get_json(key)
        entry: Optional[RateEntry] = None
        if data is not None:
            try:
                entry = RateEntry.from_dict(data)
            except (KeyError, TypeError, ValueError):
                entry = None
        if entry is None or now - entry.window_start > limit.window:
            return RateEntry(count=0, window_start=now)
        return entry

    async def _increment(self, key: str, limit: Limit) -> RateEntry:
        entry = await self._entry(key, limit)
        entry.count += 1
        await self.store.put_json(key, entry.to_dict(), ttl_seconds=limit.ttl_seconds)
        return entry

    def _retry_after(self, entry: RateEntry, limit: Limit) -> int:
        remaining = (entry.window_start + limit.window - self._now()).total_seconds()
        return max(1, math.ceil(remaining))

    @translate_store_errors
    async def check_limit(
        self, action: Action, ip: str, email: Optional[str] = None
    ) -> RateLimitResult:
        action = Action(action)
        limits = self.limits_for(action)

        ip_limit = limits["ip"]
        ip_entry = await self._entry(f"rate:{action.value}:ip:{ip}", ip_limit)
        if ip_entry.count >= ip_limit.max:
            retry_after = self._retry_after(ip_entry, ip_limit)
            logger.warning("rate_limited", action=action.value, dimension="ip", ip_hash=hash_identifier(ip))
            return RateLimitResult(
                False,
                retry_after,
                f"Too many {action.value} attempts from this IP. "
                f"Try again in {math.ceil(retry_after / 60)} minutes.",
            )

        if action is Action.LOGIN and email:
            email_limit = limits["email"]
            email_entry = await self._entry(f"rate:login:email:{email.lower()}", email_limit)
            if email_entry.count >= email_limit.max:
                retry_after = self._retry_after(email_entry, email_limit)
                logger.warning(
                    "rate_limited", action=action.value, dimension="email", email_hash=hash_identifier(email)
                )
                return RateLimitResult(
                    False,
                    retry_after,
                    "Too many login attempts for this account. "
                    f"Try again in {math.ceil(retry_after / 60)} minutes.",
                )

        if action is Action.REGISTER:
            global_limit = limits["global"]
            global_entry = await self._entry("rate:register:daily", global_limit)
            if global_entry.count >= global_limit.max:
                logger.warning("rate_limited", action=action.value, dimension="global")
                return RateLimitResult(
                    False,
                    self._retry_after(global_entry, global_limit),
                    "Registration temporarily unavailable. Please try again later.",
                )

        return RateLimitResult(True)

    @translate_store_errors
    async def record(
        self,
        action: Action,
        ip: str,
        email: Optional[str] = None,
        *,
        success: bool,
    ) -> None:
        action = Action(action)
        limits = self.limits_for(action)

        await self._increment(f"rate:{action.value}:ip:{ip}", limits["ip"])

        if action is Action.LOGIN and email:
            if success:
                await self.store.delete(f"failed:{email.lower()}")
            else:
                await self._increment(f"rate:login:email:{email.lower()}", limits["email"])
                await self._track_failure(email)

        if action is Action.REGISTER:
            await self._increment("rate:register:daily", limits["global"])

    async def _track_failure(self, email: str) -> None:
        failed_key = f"failed:{email.lower()}"
        now = self._now()
        attempts = 1
        data = await self.store.get_json(failed_key)
        if data is not None:
            try:
                attempts = FailedAttempts.from_dict(data).attempts + 1
            except (KeyError, TypeError, ValueError):
                attempts = 1
        await self.store.put_json(
            failed_key,
            FailedAttempts(attempts=attempts, last_attempt=now).to_dict(),
            ttl_seconds=self.settings.failed_attempts_ttl_seconds,
        )
        if attempts < self.settings.lockout_max_attempts:
            return

        lockout = LockoutRecord(
            until=now + timedelta(seconds=self.settings.lockout_duration_seconds),
            reason="Too many failed login attempts",
            attempts=attempts,
        )
        await self.store.put_json(
            f"lockout:{email.lower()}",
            lockout.to_dict(),
            ttl_seconds=self.settings.lockout_duration_seconds,
        )
        await self.store.delete(failed_key)
        logger.warning("account_locked", email_hash=hash_identifier(email), attempts=attempts)

    @translate_store_errors
    async def check_lockout(self, email: str) -> LockoutResult:
        lockout_key = f"lockout:{email.lower()}"
        data = await self.store.get_json(lockout_key)
        if data is None:
            return LockoutResult(False)
        try:
            lockout = LockoutRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            await self.store.delete(lockout_key)
            return LockoutResult(False)
        now = self._now()
        if now >= lockout.until:
            await self.store.delete(lockout_key)
            return LockoutResult(False)
        minutes = math.ceil((lockout.until - now).total_seconds() / 60)
        return LockoutResult(
            True,
            lockout.until,
            f"Account locked due to too many failed attempts. Try again in {minutes} minutes.",
        )


__all__ = [
    "Action",
    "Limit",
    "RateLimitResult",
    "LockoutResult",
    "RateLimiter",
    "rate_limit_headers",
]
