from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from wikiauth.config import Settings
from wikiauth.logging import get_logger
from wikiauth.storage.models import utcnow

logger = get_logger(__name__)

KEY_SALT = b"csrf-salt-wikiauth"
KEY_ITERATIONS = 10_000
IV_BYTES = 12
MAX_USER_AGENT = 200
UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClientContext:
    """Request attributes a CSRF token is bound to."""

    ip: str
    country: str
    user_agent: str

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], client_host: Optional[str] = None
    ) -> "ClientContext":
        ip = headers.get("cf-connecting-ip") or headers.get("CF-Connecting-IP")
        if not ip:
            forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
            if forwarded:
                ip = forwarded.split(",")[0].strip()
        country = headers.get("cf-ipcountry") or headers.get("CF-IPCountry")
        user_agent = headers.get("user-agent") or headers.get("User-Agent")
        return cls(
            ip=ip or client_host or UNKNOWN,
            country=country or UNKNOWN,
            user_agent=user_agent or UNKNOWN,
        )


@dataclass(frozen=True)
class CSRFResult:
    valid: bool
    error: Optional[str] = None


def derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KEY_SALT,
        iterations=KEY_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


class CSRFService:
    """Stateless CSRF tokens: the client context sealed with AES-256-GCM.

    Nothing is stored server-side; a token is valid for whoever presents it
    from the same IP, country and user agent until it expires.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._aead = AESGCM(derive_key(settings.csrf_secret))

    def issue(self, context: ClientContext) -> str:
        expires = self._clock() + timedelta(seconds=self.settings.csrf_token_ttl_seconds)
        payload = {
            "ip": context.ip,
            "country": context.country,
            "ua": context.user_agent[:MAX_USER_AGENT],
            "exp": int(expires.timestamp() * 1000),
        }
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, json.dumps(payload).encode("utf-8"), None)
        return f"{iv.hex()}:{ciphertext.hex()}"

    def validate(self, token: Optional[str], context: ClientContext) -> CSRFResult:
        """Check ``token`` against ``context``; never raises."""
        parts = (token or "").split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return CSRFResult(False, "Invalid token format")
        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            if len(iv) != IV_BYTES:
                raise ValueError("bad iv length")
            payload = json.loads(self._aead.decrypt(iv, ciphertext, None))
            exp = int(payload["exp"])
            ip = payload["ip"]
            country = payload.get("country") or ""
            ua = payload["ua"]
        except (ValueError, KeyError, TypeError, InvalidTag) as exc:
            logger.info("csrf_token_undecodable", error_type=type(exc).__name__)
            return CSRFResult(False, "Token validation failed")

        now_ms = int(self._clock().timestamp() * 1000)
        if now_ms > exp:
            return CSRFResult(False, "Token expired")
        if ip != context.ip:
            return CSRFResult(False, "IP mismatch")
        if country and context.country and country != context.country:
            return CSRFResult(False, "Country mismatch")
        if ua != context.user_agent[:MAX_USER_AGENT]:
            return CSRFResult(False, "User agent mismatch")
        return CSRFResult(True)


__all__ = ["ClientContext", "CSRFResult", "CSRFService", "derive_key"]
