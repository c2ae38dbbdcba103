from __future__ import annotations

import re

SECRET_PATTERN = re.compile(r"(sk-[A-Za-z0-9_-]{6,})")
QUERY_KEY_PATTERN = re.compile(r"(api_key=)[^&\s]+")


def redact_secrets(text: str) -> str:
    """Redact API keys or similar secrets from a string."""

    text = SECRET_PATTERN.sub("sk-***", text)
    return QUERY_KEY_PATTERN.sub(r"\1***", text)


def sanitize_text(text: str, max_length: int) -> str:
    """Trim and clamp user-provided text to a safe length."""

    cleaned = text.strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned
