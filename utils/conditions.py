"""
Shared match evaluator — used by both keyword rules and spam filters.

Evaluates KeywordMatch / PatternMatch / ExactMatch specs against a
visitor message. Text is normalised to lower case before matching.
"""
from __future__ import annotations

import re
from typing import Any, Callable

from models.schemas import ExactMatch, KeywordMatch, MatchSpec, PatternMatch


_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


def compile_pattern(pattern: str, flags: str = "i") -> re.Pattern:
    bits = 0
    for ch in flags:
        bits |= _REGEX_FLAGS.get(ch, 0)
    return re.compile(pattern, bits)


def _match_keywords(text: str, match: KeywordMatch) -> bool:
    found = (kw.lower() in text for kw in match.keywords)
    return all(found) if match.all else any(found)


def _match_pattern(text: str, match: PatternMatch) -> bool:
    try:
        return bool(compile_pattern(match.pattern, match.flags).search(text))
    except re.error:
        return False


def _match_exact(text: str, match: ExactMatch) -> bool:
    return text == match.value.lower()


MATCHERS: dict[str, Callable[[str, Any], bool]] = {
    "keywords": _match_keywords,
    "pattern": _match_pattern,
    "exact": _match_exact,
}


def normalise(text: str) -> str:
    return text.strip().lower()


def evaluate_match(match: MatchSpec, text: str) -> bool:
    """Evaluate a single match spec against already-normalised text."""
    fn = MATCHERS.get(match.type)
    if fn is None:
        return False
    return fn(text, match)
