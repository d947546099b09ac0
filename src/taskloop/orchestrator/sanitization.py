"""Redaction for worker output copied into the progress log."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_NOTES_CHARS = 1_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b[a-z0-9_]*(api_key|apikey|secret|token|password)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def sanitize_notes(text: str, *, max_chars: int = _MAX_NOTES_CHARS) -> str:
    """Redact obvious secrets and keep the tail of long output.

    The end of a worker's output usually holds its summary, so truncation
    keeps the last ``max_chars`` characters.
    """

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return "..." + redacted[-max_chars:]
