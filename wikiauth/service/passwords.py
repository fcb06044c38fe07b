from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from wikiauth.config import get_settings

MODERN_PREFIX = "v2"
SALT_BYTES = 16
KEY_BYTES = 32


@dataclass(frozen=True)
class LegacyHash:
    """V1 hash: unprefixed SHA-256 hex of ``password + static salt``."""

    digest: str

    def encode(self) -> str:
        return self.digest


@dataclass(frozen=True)
class ModernHash:
    """V2 hash: ``v2:{iterations}:{salt_hex}:{hash_hex}`` using PBKDF2-HMAC-SHA256."""

    iterations: int
    salt: bytes
    digest: bytes

    def encode(self) -> str:
        return f"{MODERN_PREFIX}:{self.iterations}:{self.salt.hex()}:{self.digest.hex()}"


PasswordHash = Union[LegacyHash, ModernHash]


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def _legacy_digest(password: str, salt: str) -> str:
    return hashlib.sha256((password + salt).encode("utf-8")).hexdigest()


def parse_password_hash(stored: str) -> PasswordHash:
    """Detect the hash variant of a stored string.

    Raises ``ValueError`` for anything that is neither a well-formed V2 string
    nor a 64-character hex digest.
    """
    if stored.startswith(f"{MODERN_PREFIX}:"):
        parts = stored.split(":")
        if len(parts) != 4:
            raise ValueError("malformed v2 password hash")
        _, iterations, salt_hex, hash_hex = parts
        try:
            parsed = ModernHash(int(iterations), bytes.fromhex(salt_hex), bytes.fromhex(hash_hex))
        except ValueError as exc:
            raise ValueError("malformed v2 password hash") from exc
        if parsed.iterations <= 0 or not parsed.salt or not parsed.digest:
            raise ValueError("malformed v2 password hash")
        return parsed
    if len(stored) == 64:
        try:
            bytes.fromhex(stored)
        except ValueError as exc:
            raise ValueError("malformed legacy password hash") from exc
        return LegacyHash(stored.lower())
    raise ValueError("unrecognised password hash format")


def hash_password(password: str, *, iterations: int | None = None) -> str:
    """Hash ``password`` with the current (V2) scheme."""
    rounds = iterations or get_settings().pbkdf2_iterations
    salt = os.urandom(SALT_BYTES)
    return ModernHash(rounds, salt, _pbkdf2(password, salt, rounds)).encode()


def legacy_hash_password(password: str, *, salt: str | None = None) -> str:
    """Produce a V1 hash; only used to seed legacy fixtures and migrations."""
    return _legacy_digest(password, salt if salt is not None else get_settings().legacy_password_salt)


def verify_password(password: str, stored: str, *, legacy_salt: str | None = None) -> bool:
    """Constant-time comparison against either hash variant; malformed hashes never match."""
    try:
        parsed = parse_password_hash(stored)
    except ValueError:
        return False
    if isinstance(parsed, LegacyHash):
        salt = legacy_salt if legacy_salt is not None else get_settings().legacy_password_salt
        candidate = _legacy_digest(password, salt)
        return hmac.compare_digest(candidate, parsed.digest)
    candidate_bytes = _pbkdf2(password, parsed.salt, parsed.iterations)
    return hmac.compare_digest(candidate_bytes, parsed.digest)


def needs_upgrade(stored: str, *, iterations: int | None = None) -> bool:
    try:
        parsed = parse_password_hash(stored)
    except ValueError:
        return False
    if isinstance(parsed, LegacyHash):
        return True
    return parsed.iterations < (iterations or get_settings().pbkdf2_iterations)


def is_full_strength(stored: str, *, iterations: int | None = None) -> bool:
    """True when verifying ``stored`` already costs a current-strength V2 derivation."""
    try:
        parsed = parse_password_hash(stored)
    except ValueError:
        return False
    if isinstance(parsed, LegacyHash):
        return False
    return parsed.iterations >= (iterations or get_settings().pbkdf2_iterations)


def dummy_verify(password: str, *, iterations: int | None = None) -> None:
    """Spend the same work as a V2 verification so unknown users are not distinguishable by timing."""
    _pbkdf2(password, b"\x00" * SALT_BYTES, iterations or get_settings().pbkdf2_iterations)


__all__ = [
    "LegacyHash",
    "ModernHash",
    "PasswordHash",
    "parse_password_hash",
    "hash_password",
    "legacy_hash_password",
    "verify_password",
    "needs_upgrade",
    "is_full_strength",
    "dummy_verify",
]
