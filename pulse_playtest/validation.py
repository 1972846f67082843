"""Degenerate narrator output detection.

Some models occasionally emit empty replies, changelog or code artefacts, or
get stuck repeating one line. Such output is rejected and regenerated.
"""

from __future__ import annotations

from collections import Counter

CHANGELOG_PATTERNS = ("fixed a bug", "## 1.0", "## 0.", "changelog", "release notes")

# A line longer than this repeated this many times is a loop, not prose
REPEAT_MIN_LENGTH = 20
REPEAT_LIMIT = 4


def degenerate_reason(text: str) -> str | None:
    """Return why `text` is unusable as narration, or None if it is fine."""
    stripped = text.strip()
    if not stripped:
        return "empty output"

    lower = stripped.lower()
    for pattern in CHANGELOG_PATTERNS:
        if pattern in lower:
            return f"changelog artefact {pattern!r}"
    if "```" in stripped:
        return "code artefact"

    lines = Counter(
        line.strip() for line in stripped.splitlines()
        if len(line.strip()) > REPEAT_MIN_LENGTH
    )
    for line, count in lines.items():
        if count >= REPEAT_LIMIT:
            return f"line repeated {count} times"
    return None


def is_degenerate(text: str) -> bool:
    return degenerate_reason(text) is not None
