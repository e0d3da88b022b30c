"""Secret stripping for log records, fault journal entries and displays.

Plugins routinely log provider configuration, so anything that leaves the
process (log files, the fault journal, CLI tables) goes through here first.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

# Each pattern: (name, compiled regex)
_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("ANTHROPIC_KEY", re.compile(r"sk-ant-[A-Za-z0-9\-]{20,}")),
    ("OPENAI_KEY", re.compile(r"sk-[A-Za-z0-9]{20,}")),
    ("AWS_KEY", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("GITHUB_TOKEN", re.compile(r"ghp_[A-Za-z0-9]{36,}")),
    ("GITHUB_PAT", re.compile(r"github_pat_[A-Za-z0-9]{20,}")),
    ("BEARER_TOKEN", re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)),
    (
        "PRIVATE_KEY",
        re.compile(
            r"-----BEGIN (?:RSA |EC |DSA )?PRIVATE KEY-----[\s\S]*?"
            r"-----END (?:RSA |EC |DSA )?PRIVATE KEY-----"
        ),
    ),
]

# Mapping keys whose values are masked wholesale, whatever they look like.
_SECRET_KEY_RE = re.compile(r"(token|secret|password|api_?key)", re.IGNORECASE)

MASK = "[REDACTED]"


def redact(text: str) -> str:
    """Replace sensitive patterns in *text* with redaction markers.

    Args:
        text: The input string to sanitise.

    Returns:
        A copy of *text* with each secret replaced by
        ``[REDACTED:PATTERN_NAME]``.
    """
    for name, pattern in _PATTERNS:
        text = pattern.sub(f"[REDACTED:{name}]", text)
    return text


def redact_mapping(data: Any) -> Any:
    """Return a copy of *data* with secret-looking keys masked.

    Nested mappings and lists are walked; string leaves also go through
    :func:`redact`. Empty values are left alone so "unset" stays visible.
    """
    if isinstance(data, Mapping):
        result: dict[Any, Any] = {}
        for key, value in data.items():
            if isinstance(key, str) and _SECRET_KEY_RE.search(key) and value:
                result[key] = MASK
            else:
                result[key] = redact_mapping(value)
        return result
    if isinstance(data, (list, tuple)):
        return [redact_mapping(item) for item in data]
    if isinstance(data, str):
        return redact(data)
    return data


class RedactingFilter(logging.Filter):
    """Logging filter that rewrites each record's message through ``redact``."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True
