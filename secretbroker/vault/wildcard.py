"""Wildcard name matching used to filter secret enumerations."""

import re
from functools import lru_cache

ESCAPE_CHAR = "`"


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """
    Translate a wildcard pattern into an anchored, case-insensitive regex.

    Supported syntax:
        *       any run of characters, including none
        ?       exactly one character
        [abc]   one character from the set
        [a-z]   one character from the range
        [!a]    one character not in the set
        `x      the literal character x
    An unterminated set is matched literally.
    """
    parts = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == ESCAPE_CHAR and i < n:
            parts.append(re.escape(pattern[i]))
            i += 1
        elif c == "*":
            if not parts or parts[-1] != ".*":
                parts.append(".*")
        elif c == "?":
            parts.append(".")
        elif c == "[":
            end = pattern.find("]", i + 1 if i < n and pattern[i] in "!]" else i)
            if end == -1:
                parts.append(re.escape(c))
                continue
            body = pattern[i:end]
            i = end + 1
            negate = body.startswith("!")
            if negate:
                body = body[1:]
            body = body.replace("\\", "\\\\").replace("^", "\\^").replace("[", "\\[")
            parts.append(f"[{'^' if negate else ''}{body}]")
        else:
            parts.append(re.escape(c))
    try:
        return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)
    except re.error:
        # e.g. a reversed range such as [z-a]
        return re.compile(re.escape(pattern), re.IGNORECASE | re.DOTALL)


def matches(name: str, pattern: str) -> bool:
    """Check whether a secret name matches a wildcard pattern."""
    if not pattern or pattern == "*":
        return True
    return compile_pattern(pattern).fullmatch(name) is not None


def filter_names(items, pattern: str, key=lambda item: item):
    """Return the items whose key matches the pattern, order preserved."""
    return [item for item in items if matches(key(item), pattern)]
