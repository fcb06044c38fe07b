"""Tests for logging helpers."""

from wikiauth.logging import (
    _redact_pii,
    get_correlation_id,
    hash_identifier,
    sanitize_error_message,
    set_correlation_id,
)


def test_hash_identifier_is_case_insensitive():
    assert hash_identifier("Alice@Example.com") == hash_identifier("alice@example.com")
    assert len(hash_identifier("1.2.3.4")) == 16


def test_redaction_keeps_hashed_fields():
    event = _redact_pii(None, "info", {"email": "alice@example.com", "email_hash": "abcdef0123"})
    assert event["email"] == "al***om"
    assert event["email_hash"] == "abcdef0123"


def test_sanitize_error_message():
    cleaned = sanitize_error_message("Error 111 connecting to redis://:pw@cache:6379. Connection refused.")
    assert "pw@cache" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
