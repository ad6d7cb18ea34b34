"""String helpers for command normalization and fuzzy matching."""

import re
from typing import List

_WHITESPACE = re.compile(r"\s+")
_TOKEN = re.compile(r"[a-z0-9]+")


def normalize_text(text: str) -> str:
    """Trim and collapse internal whitespace. Case is preserved."""
    return _WHITESPACE.sub(" ", text or "").strip()


def tokenize(text: str) -> List[str]:
    """Lower-case word tokens, digits kept."""
    return _TOKEN.findall((text or "").lower())


def levenshtein_distance(s1: str, s2: str) -> int:
    """Compute Levenshtein distance between two strings"""
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))

    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def similarity(s1: str, s2: str) -> float:
    """
    Edit-distance similarity normalized by the longer string.

    Returns 1.0 for identical strings (including two empty strings) and
    0.0 when every character must change.
    """
    longer = max(len(s1), len(s2))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(s1, s2)) / longer
