"""Tests for password hash parsing, verification and upgrade detection."""

import hashlib

import pytest

from wikiauth.service.passwords import (
    LegacyHash,
    ModernHash,
    dummy_verify,
    hash_password,
    is_full_strength,
    legacy_hash_password,
    needs_upgrade,
    parse_password_hash,
    verify_password,
)


class TestHashFormat:
    def test_modern_hash_layout(self):
        stored = hash_password("abc12345", iterations=1000)
        prefix, iterations, salt_hex, hash_hex = stored.split(":")
        assert prefix == "v2"
        assert iterations == "1000"
        assert len(bytes.fromhex(salt_hex)) == 16
        assert len(bytes.fromhex(hash_hex)) == 32

    def test_salt_is_random(self):
        assert hash_password("abc12345", iterations=1000) != hash_password("abc12345", iterations=1000)

    def test_default_iterations_come_from_settings(self, settings):
        stored = hash_password("abc12345")
        assert stored.split(":")[1] == str(settings.pbkdf2_iterations)

    def test_parse_modern(self):
        parsed = parse_password_hash(hash_password("abc12345", iterations=1000))
        assert isinstance(parsed, ModernHash)
        assert parsed.iterations == 1000

    def test_parse_legacy(self):
        digest = hashlib.sha256(b"abc12345wiki_salt_2024").hexdigest()
        parsed = parse_password_hash(digest)
        assert parsed == LegacyHash(digest)

    @pytest.mark.parametrize(
        "stored",
        ["", "plain", "v2:abc:00:00", "v2:1000:zz:00", "v2:1000:00", "g" * 64, "v2:0:00:00"],
    )
    def test_parse_rejects_malformed(self, stored):
        with pytest.raises(ValueError):
            parse_password_hash(stored)


class TestVerify:
    def test_modern_roundtrip(self):
        stored = hash_password("abc12345", iterations=1000)
        assert verify_password("abc12345", stored)
        assert not verify_password("abc12346", stored)

    def test_legacy_matches_static_salt(self):
        stored = hashlib.sha256(b"abc12345wiki_salt_2024").hexdigest()
        assert verify_password("abc12345", stored, legacy_salt="wiki_salt_2024")
        assert not verify_password("wrong1234", stored, legacy_salt="wiki_salt_2024")

    def test_legacy_salt_override(self):
        stored = legacy_hash_password("abc12345", salt="other")
        assert verify_password("abc12345", stored, legacy_salt="other")
        assert not verify_password("abc12345", stored, legacy_salt="wiki_salt_2024")

    def test_malformed_hash_never_matches(self):
        assert not verify_password("anything1", "not-a-hash")
        assert not verify_password("", "")

    def test_dummy_verify_returns_nothing(self):
        assert dummy_verify("abc12345", iterations=1000) is None


class TestNeedsUpgrade:
    def test_legacy_always_upgrades(self):
        assert needs_upgrade(legacy_hash_password("abc12345", salt="s"), iterations=1000)

    def test_current_modern_hash_is_kept(self):
        assert not needs_upgrade(hash_password("abc12345", iterations=1000), iterations=1000)

    def test_weaker_modern_hash_upgrades(self):
        assert needs_upgrade(hash_password("abc12345", iterations=1000), iterations=2000)

    def test_malformed_is_not_upgraded(self):
        assert not needs_upgrade("junk", iterations=1000)

    def test_full_strength_only_for_current_modern_hashes(self):
        assert is_full_strength(hash_password("abc12345", iterations=1000), iterations=1000)
        assert not is_full_strength(hash_password("abc12345", iterations=1000), iterations=2000)
        assert not is_full_strength(legacy_hash_password("abc12345", salt="s"), iterations=1000)
        assert not is_full_strength("junk", iterations=1000)
