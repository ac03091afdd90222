"""Tokenization and string similarity used by indexing and querying."""

import re
from typing import List

STOP_WORDS = frozenset(
    {
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "from", "up", "about", "into", "through", "during", "before", "after", "above",
        "below", "between", "among", "this", "that", "these", "those", "is", "are", "was",
        "were", "been", "be", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "can", "shall",
    }
)

_PUNCTUATION = re.compile(r"[^\w\s]")


def extract_terms(text: str, min_length: int = 3) -> List[str]:
    """Lowercase *text*, strip punctuation and split into index terms.

    Terms shorter than *min_length* and stop words are dropped. Order and
    duplicates are preserved; callers that need a set build one.
    """
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    return [
        term
        for term in cleaned.split()
        if len(term) >= min_length and term not in STOP_WORDS
    ]


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity in [0, 1]: 1 - distance / len(longer)."""
    longer = a if len(a) > len(b) else b
    if not longer:
        return 1.0
    return (len(longer) - levenshtein_distance(a, b)) / len(longer)
