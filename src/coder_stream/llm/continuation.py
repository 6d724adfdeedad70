"""Heuristics for detecting truncated model output.

Both functions are pure and total.  The result is a hint: it reduces
visible truncation in practice but is not a correctness guarantee.
"""

from __future__ import annotations

import re

CODE_CONTINUATION_PROMPT = "Please continue the code from where you left off."
RESUME_CONTINUATION_PROMPT = "Continue from where you left off."
DEFAULT_CONTINUATION_PROMPT = "Please continue."

DEFAULT_LENGTH_THRESHOLD = 15000
DEFAULT_BRACKET_THRESHOLD = 3

_FENCE = "```"

_TRUNCATION_MARKERS = (
    re.compile(r"\[\.\.\.$"),
    re.compile(r"\(cont(?:inued|'d)?\)$", re.IGNORECASE),
    re.compile(r"…$"),
    re.compile(r"\.{3,}$"),
)

_OPEN_TAG_AT_END = re.compile(r"<[a-zA-Z][^>]*$")
_OPEN_BRACE_AT_END = re.compile(r"\{[^}]*$")

_BRACKET_PAIRS = (("{", "}"), ("(", ")"), ("[", "]"))

# Any of these anywhere near the end means a long response probably finished
_PLAUSIBLE_ENDINGS = (
    re.compile(r"\n```\s*$"),
    re.compile(r"\n\n(?:Hope|I hope|This|That|Let me know|Feel free|Happy to help)", re.IGNORECASE),
    re.compile(r"[.!?]\s*$"),
    re.compile(r"export\s+default\s+"),
    re.compile(r"\);?\s*$"),
    re.compile(r"\}\s*$"),
)


def _has_open_fence(text: str) -> bool:
    return text.count(_FENCE) % 2 != 0


def _ends_with_truncation_marker(text: str) -> bool:
    return any(p.search(text) for p in _TRUNCATION_MARKERS)


def _max_bracket_imbalance(text: str) -> int:
    return max(abs(text.count(o) - text.count(c)) for o, c in _BRACKET_PAIRS)


def is_incomplete(
    text: str,
    length_threshold: int = DEFAULT_LENGTH_THRESHOLD,
    bracket_threshold: int = DEFAULT_BRACKET_THRESHOLD,
) -> bool:
    """Return True if *text* looks cut off and should be continued.

    Checks run cheapest first and the first hit wins: unbalanced code
    fences, trailing truncation markers, an unterminated tag, bracket
    imbalance above *bracket_threshold*, and finally a missing plausible
    ending on responses longer than *length_threshold*.
    """
    trimmed = text.strip()
    if not trimmed:
        return False

    if _has_open_fence(trimmed):
        return True

    if _ends_with_truncation_marker(trimmed):
        return True

    if _OPEN_TAG_AT_END.search(trimmed):
        return True

    if _max_bracket_imbalance(trimmed) > bracket_threshold:
        return True

    if len(trimmed) > length_threshold:
        if not any(p.search(trimmed) for p in _PLAUSIBLE_ENDINGS):
            return True

    return False


def continuation_prompt(text: str) -> str:
    """Return the user message that asks the model to carry on."""
    trimmed = text.strip()

    if _has_open_fence(trimmed):
        return CODE_CONTINUATION_PROMPT

    if _OPEN_TAG_AT_END.search(trimmed) or _OPEN_BRACE_AT_END.search(trimmed):
        return RESUME_CONTINUATION_PROMPT

    return DEFAULT_CONTINUATION_PROMPT
