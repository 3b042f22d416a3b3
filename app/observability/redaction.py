"""Helpers that keep personal data out of structured log records."""

from __future__ import annotations


def mask_email(email: str | None) -> str:
    """Keep the first character and the domain: ``b***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"
