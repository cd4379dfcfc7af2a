"""
Best-effort PII redaction applied to extracted text before it leaves the
service.

Patterns run in the order of REDACTION_PATTERNS, each over the output of the
previous one, and every match is replaced (not only the first). Phone numbers
go last: a name value stops at the first digit, and digits glued to it only
become a standalone run once the name is masked. The marker itself never
matches any pattern, so redacting twice gives the same result as redacting
once.
"""

from __future__ import annotations

import re
from typing import Any, List, NamedTuple, Pattern

REDACTED = "[REDACTED]"


class RedactionRule(NamedTuple):
    name: str
    pattern: Pattern[str]
    replacement: str


REDACTION_PATTERNS: List[RedactionRule] = [
    RedactionRule(
        "email",
        re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}"),
        REDACTED,
    ),
    # "Name: John Doe", "Patient Name - Jane", ... The label is kept.
    RedactionRule(
        "name_label",
        re.compile(
            r"\b(?P<label>(?:patient|full)[ \t]+name|name|patient)[ \t]*[:\-][ \t]*[A-Za-z][A-Za-z ,.'\-]*",
            re.IGNORECASE,
        ),
        rf"\g<label>: {REDACTED}",
    ),
    # Optional "+", a 1-4 digit prefix, then 2-4 digit groups with optional
    # space/dot/dash separators and an optional parenthesised area code.
    RedactionRule(
        "phone",
        re.compile(r"(?<![\w+])\+?\d{1,4}[ \t.\-]?\(?\d{2,4}\)?[ \t.\-]?\d{2,4}[ \t.\-]?\d{2,4}(?!\w)"),
        REDACTED,
    ),
]


def redact(text: Any) -> str:
    """
    Mask sensitive spans in ``text``.

    Never raises: ``None`` becomes an empty string and other non-string
    input is converted with ``str``.
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)

    for rule in REDACTION_PATTERNS:
        text = rule.pattern.sub(rule.replacement, text)
    return text
