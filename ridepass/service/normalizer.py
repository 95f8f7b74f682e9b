"""Canonical lookup keys for phone numbers and email addresses.

Phones are rewritten to international form (``+2519XXXXXXXX``); national
(``09…``/``07…``), bare subscriber (``9…``/``7…``) and country-code-without-plus
(``2519…``) inputs all collapse to the same key. Emails are lower-cased.
Every function here is pure and idempotent.
"""

from __future__ import annotations

import re

from ridepass.service.errors import InvalidInput

DEFAULT_COUNTRY_CODE = "251"

# Mobile subscriber numbers start with 9 (Ethio telecom) or 7 (Safaricom)
_SUBSCRIBER_PREFIXES = ("9", "7")
_NON_DIAL_CHARS = re.compile(r"[^0-9+]")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_IDENTIFIER_LENGTH = 254


def is_email(raw: str) -> bool:
    return "@" in raw


def normalize(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Rewrite ``raw`` into its canonical form without validating it."""
    if is_email(raw):
        return raw.strip().lower()

    cleaned = _NON_DIAL_CHARS.sub("", raw)
    if cleaned.startswith("0") and cleaned[1:2] in _SUBSCRIBER_PREFIXES:
        return f"+{country_code}{cleaned[1:]}"
    if cleaned[:1] in _SUBSCRIBER_PREFIXES:
        return f"+{country_code}{cleaned}"
    if cleaned.startswith(country_code):
        return f"+{cleaned}"
    return cleaned


def _phone_pattern(country_code: str) -> re.Pattern[str]:
    prefixes = "".join(_SUBSCRIBER_PREFIXES)
    return re.compile(rf"^\+{re.escape(country_code)}[{prefixes}]\d{{8}}$")


def canonicalize(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize and reject anything that is neither a mobile number nor an email."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidInput("identifier is required", detail={"field": "identifier"})
    if len(raw) > _MAX_IDENTIFIER_LENGTH:
        raise InvalidInput("identifier is too long", detail={"field": "identifier"})

    canonical = normalize(raw, country_code=country_code)
    if is_email(canonical):
        if not _EMAIL_RE.match(canonical):
            raise InvalidInput("invalid email address", detail={"field": "identifier"})
        return canonical
    if not _phone_pattern(country_code).match(canonical):
        raise InvalidInput("invalid phone number", detail={"field": "identifier"})
    return canonical


def mask_identifier(identifier: str) -> str:
    """Shorten an identifier for log lines: ``+2519****44`` / ``ab***@example.com``."""
    if is_email(identifier):
        local, _, domain = identifier.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(identifier) <= 6:
        return "***"
    return f"{identifier[:5]}****{identifier[-2:]}"
