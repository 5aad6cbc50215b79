import re
from typing import Set

_WORD_SPLIT = re.compile(r"[^0-9a-z]+")


def trigrams(text: str) -> Set[str]:
    """
    Trigram set of ``text`` the way PostgreSQL's pg_trgm builds it: each
    lower-cased alphanumeric word is padded with two blanks in front and one
    behind before slicing.
    """
    grams: Set[str] = set()
    for word in _WORD_SPLIT.split(text.lower()):
        if not word:
            continue
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return grams


def trigram_similarity(left: str, right: str) -> float:
    """Shared trigrams over all trigrams (0.0 .. 1.0)."""
    a, b = trigrams(left), trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)
