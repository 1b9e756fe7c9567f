"""Sanitization helpers for autotune diagnostics persisted in DB."""

from __future__ import annotations

import re
from collections.abc import Callable

DEFAULT_MAX_DIAGNOSTIC_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(api[_-]?secret|access[_-]?token|nightscout[_-]?token)\b\s*[:=]\s*\S+"),
        lambda match: f"{match.group(1)}=[redacted]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|secret|api-secret)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_diagnostic(text: str, *, max_chars: int = DEFAULT_MAX_DIAGNOSTIC_CHARS) -> str:
    """Redact credentials and keep the tail of the text, where tool errors end up."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[-max_chars:]
