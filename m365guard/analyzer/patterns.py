"""Safe regex and substring matching used by every analyzer stage.

Rule documents are written with JavaScript-style flag strings ("i", "gi",
"m"). Flags are mapped onto ``regex`` flags; unknown letters such as "g"
and "u" have no Python counterpart and are ignored. A missing or empty
flag string means case-insensitive matching.

Patterns come from a remote document, so matching goes through the
``regex`` package, whose ``timeout`` bounds a single search. A bad pattern
never raises from the match helpers: the first time it fails to compile it
is logged and from then on treated as non-matching. A search that runs out
of time raises ``PatternTimeoutError``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable, Optional

import regex

from ..errors import PatternError, PatternTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_FLAGS = "i"

_FLAG_MAP = {
    "i": regex.IGNORECASE,
    "m": regex.MULTILINE,
    "s": regex.DOTALL,
}


def _re_flags(flags: Optional[str]) -> int:
    value = 0
    for letter in (flags or DEFAULT_FLAGS).lower():
        value |= _FLAG_MAP.get(letter, 0)
    return value


def compile_pattern(pattern: str, flags: Optional[str] = None) -> regex.Pattern:
    """Compile a rule pattern, raising ``PatternError`` when it is invalid."""
    if not isinstance(pattern, str) or not pattern:
        raise PatternError(str(pattern), "empty or non-string pattern")
    try:
        return regex.compile(pattern, _re_flags(flags))
    except regex.error as exc:
        raise PatternError(pattern, str(exc)) from exc


@lru_cache(maxsize=4096)
def _cached(pattern: str, flags: str) -> Optional[regex.Pattern]:
    try:
        return compile_pattern(pattern, flags)
    except PatternError as exc:
        logger.warning("Skipping invalid pattern: %s", exc)
        return None


def get_pattern(pattern, flags: Optional[str] = None) -> Optional[regex.Pattern]:
    """Return the compiled pattern, or None when it cannot be compiled."""
    if not isinstance(pattern, str) or not pattern:
        return None
    return _cached(pattern, flags or DEFAULT_FLAGS)


def search(
    text: Optional[str],
    pattern,
    flags: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[regex.Match]:
    """Return the first match of ``pattern`` in ``text``, or None.

    With ``timeout`` (seconds) a search that takes longer raises
    ``PatternTimeoutError``.
    """
    if not text:
        return None
    compiled = get_pattern(pattern, flags)
    if compiled is None:
        return None
    if timeout is not None and timeout <= 0:
        raise PatternTimeoutError(pattern, timeout)
    try:
        return compiled.search(text, timeout=timeout)
    except TimeoutError as exc:
        raise PatternTimeoutError(pattern, timeout) from exc


def matches(
    text: Optional[str],
    pattern,
    flags: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bool:
    """True when ``pattern`` matches anywhere in ``text``."""
    return search(text, pattern, flags, timeout) is not None


def matches_any(text: Optional[str], patterns: Iterable, flags: Optional[str] = None) -> bool:
    """True when any of ``patterns`` matches ``text``."""
    if not text:
        return False
    return any(matches(text, pattern, flags) for pattern in patterns or ())


def count_matches(text: Optional[str], patterns: Iterable, flags: Optional[str] = None) -> int:
    """Number of distinct ``patterns`` that match ``text``."""
    if not text:
        return 0
    return sum(1 for pattern in patterns or () if matches(text, pattern, flags))


def contains_any(text: Optional[str], substrings: Iterable[str]) -> bool:
    """Case-insensitive substring test."""
    if not text:
        return False
    lowered = text.lower()
    return any(s and s.lower() in lowered for s in substrings or ())


def validate_pattern(pattern, flags: Optional[str] = None) -> Optional[str]:
    """Return an error message for an invalid pattern, or None."""
    try:
        compile_pattern(pattern, flags)
    except PatternError as exc:
        return exc.reason
    return None
