"""Deterministic keyword priority scoring.

Priority runs from 1 (minimal) to 5 (critical). Buckets are checked from
most to least urgent, so an urgent keyword anywhere in the text always
wins over lower-tier matches.
"""
import re

DEFAULT_PRIORITY = 3

PRIORITY_BUCKETS: list[tuple[int, tuple[str, ...]]] = [
    (5, (
        "urgent", "asap", "emergency", "critical", "immediately", "right away",
        "as soon as possible", "911", "help now", "production issue", "time-sensitive",
    )),
    (4, ("important", "deadline", "today", "blocking", "escalate", "soon", "priority")),
    (2, ("fyi", "no rush", "whenever", "low priority", "newsletter", "no hurry")),
]

_BUCKET_PATTERNS: list[tuple[int, re.Pattern]] = [
    (priority, re.compile(r"(?<![\w-])(" + "|".join(re.escape(k) for k in keywords) + r")(?![\w-])", re.I))
    for priority, keywords in PRIORITY_BUCKETS
]


def detect_priority(text: str | None) -> int:
    """Score text by the highest-priority keyword bucket it matches.

    Args:
        text: Raw inbound content.

    Returns:
        The bucket priority, or ``DEFAULT_PRIORITY`` when nothing matches.
    """
    if not text:
        return DEFAULT_PRIORITY
    for priority, pattern in _BUCKET_PATTERNS:
        if pattern.search(text):
            return priority
    return DEFAULT_PRIORITY


def matched_keywords(text: str | None) -> dict[int, list[str]]:
    """Return the keywords found in each bucket, for logging and metadata."""
    found: dict[int, list[str]] = {}
    if not text:
        return found
    for priority, pattern in _BUCKET_PATTERNS:
        hits = sorted({m.group(1).lower() for m in pattern.finditer(text)})
        if hits:
            found[priority] = hits
    return found


def combine_priority(*candidates: int | None) -> int:
    """Highest of the given priorities, clamped to 1-5."""
    values = [c for c in candidates if c is not None]
    if not values:
        return DEFAULT_PRIORITY
    return max(1, min(5, max(values)))
