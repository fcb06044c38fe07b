from __future__ import annotations

import re
from datetime import datetime
from typing import Optional, Union

from wikiauth.service.errors import ValidationError

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8

# Disposable mailbox providers refused at registration
BLOCKED_EMAIL_DOMAINS = frozenset(
    {
        "tempmail.com",
        "temp-mail.org",
        "guerrillamail.com",
        "guerrillamail.org",
        "guerrillamail.net",
        "10minutemail.com",
        "10minutemail.net",
        "mailinator.com",
        "maildrop.cc",
        "throwaway.email",
        "throwawaymail.com",
        "fakeinbox.com",
        "trashmail.com",
        "trashmail.net",
        "getnada.com",
        "sharklasers.com",
        "spam4.me",
        "spambox.us",
        "yopmail.com",
        "yopmail.fr",
        "discard.email",
        "mailnesia.com",
        "tempail.com",
        "tempr.email",
        "emailondeck.com",
        "mohmal.com",
        "gmailnator.com",
        "tempinbox.com",
        "spamgourmet.com",
        "mintemail.com",
        "mytemp.email",
        "mailcatch.com",
        "getairmail.com",
        "inboxkitten.com",
        "dropmail.me",
        "temp-mail.io",
        "temp-mail.ru",
        "tmpmail.org",
        "tmpmail.net",
        "fake-box.com",
        "mailsac.com",
    }
)


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username or ""))


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def is_valid_password(password: str) -> bool:
    password = password or ""
    return (
        len(password) >= MIN_PASSWORD_LENGTH
        and re.search(r"[a-zA-Z]", password) is not None
        and re.search(r"[0-9]", password) is not None
    )


def is_disposable_email(email: str) -> bool:
    _, _, domain = (email or "").partition("@")
    return bool(domain) and domain.lower() in BLOCKED_EMAIL_DOMAINS


def validate_email(email: str) -> str:
    if not email or not is_valid_email(email):
        raise ValidationError("Invalid email format", detail={"field": "email"})
    return email.strip().lower()


def validate_password(password: str) -> None:
    if not is_valid_password(password):
        raise ValidationError(
            "Invalid password. Must be at least 8 characters with letters and numbers.",
            detail={"field": "password"},
        )


def validate_registration(username: str, name: str, email: str, password: str) -> str:
    """Validate sign-up fields in display order; returns the normalised email."""
    if not username or not name or not email or not password:
        raise ValidationError("All fields are required (username, name, email, password)")
    if not is_valid_username(username):
        raise ValidationError(
            "Invalid username. Use 3-20 alphanumeric characters or underscores, no spaces.",
            detail={"field": "username"},
        )
    normalized = validate_email(email)
    if is_disposable_email(normalized):
        raise ValidationError(
            "Disposable email addresses are not allowed. Please use a permanent email.",
            detail={"field": "email"},
        )
    validate_password(password)
    return normalized


def bot_signal(
    hp_field: Optional[str],
    form_timestamp: Optional[Union[int, str]],
    *,
    now: datetime,
    min_seconds: float,
) -> Optional[str]:
    """Name the heuristic a registration submission tripped, if any.

    ``form_timestamp`` is the epoch milliseconds at which the form was
    rendered; unparseable values are ignored rather than treated as bots.
    """
    if hp_field:
        return "honeypot"
    if form_timestamp in (None, ""):
        return None
    try:
        loaded_ms = int(form_timestamp)
    except (TypeError, ValueError):
        return None
    elapsed_ms = now.timestamp() * 1000 - loaded_ms
    if elapsed_ms < min_seconds * 1000:
        return "form_timing"
    return None


__all__ = [
    "BLOCKED_EMAIL_DOMAINS",
    "is_valid_username",
    "is_valid_email",
    "is_valid_password",
    "is_disposable_email",
    "validate_email",
    "validate_password",
    "validate_registration",
    "bot_signal",
]
