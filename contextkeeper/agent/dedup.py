"""Semantic deduplication for accumulated context entries.

Pure text similarity: no state, no I/O. Two entries are duplicates when
any of three tiers matches, checked in order:

1. normalized exact match
2. keyword Jaccard overlap (only when the keyword union has >= 3 members)
3. word-boundary substring containment of the shorter normalized text
"""

import re
from collections.abc import Iterable

STOP_WORDS = frozenset({
    # English
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "to", "and", "or", "in", "for", "with", "that", "this", "of",
    "i", "we", "it", "he", "she", "they", "you", "my", "our",
    "need", "should", "will", "must", "have", "has", "had",
    "do", "does", "did", "can", "could", "would",
    "not", "no", "but", "if", "so", "then",
    # Serbian (Latin script)
    "je", "su", "sam", "si", "smo", "ste",
    "ili", "ali", "da", "ne",
    "za", "na", "u", "sa", "od", "do", "iz",
    "taj", "ta", "to", "ovo", "ono",
    "ja", "ti", "on", "ona", "mi", "vi", "oni",
    "treba", "moze", "mora", "ce",
})

JACCARD_THRESHOLD = 0.5
JACCARD_THRESHOLD_LONG = 0.4  # when the smaller keyword set has >= 6 members
LONG_KEYWORD_COUNT = 6
MIN_KEYWORD_UNION = 3
MIN_SUBSTRING_CHARS = 10

_LEADING_MARKER = re.compile(r"^\s*(?:[-*•]|\d+\.)\s+")
_MARKDOWN_GLYPHS = re.compile(r"\*\*|[*`]")
_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCT = re.compile(r"^[\W_]+|[\W_]+$")


def normalize(text: str) -> str:
    """Strip one leading bullet/number marker and markdown emphasis,
    collapse whitespace, lowercase, trim."""
    s = _LEADING_MARKER.sub("", text, count=1)
    s = _MARKDOWN_GLYPHS.sub("", s)
    s = _WHITESPACE.sub(" ", s)
    return s.lower().strip()


def _stem(word: str) -> str:
    if len(word) > 4:
        if word.endswith("ies"):
            return word[:-3] + "y"
        if word.endswith("es"):
            return word[:-2]
        if word.endswith("s"):
            return word[:-1]
    return word


def extract_keywords(text: str) -> set[str]:
    """Meaningful, lightly stemmed keywords of *text*."""
    keywords = set()
    for word in normalize(text).split(" "):
        cleaned = _EDGE_PUNCT.sub("", word)
        if len(cleaned) >= 3 and cleaned not in STOP_WORDS:
            keywords.add(_stem(cleaned))
    return keywords


def _keyword_overlap(a: str, b: str) -> bool:
    kw_a = extract_keywords(a)
    kw_b = extract_keywords(b)
    union = kw_a | kw_b
    if len(union) < MIN_KEYWORD_UNION:
        return False
    smaller = min(len(kw_a), len(kw_b))
    threshold = JACCARD_THRESHOLD_LONG if smaller >= LONG_KEYWORD_COUNT else JACCARD_THRESHOLD
    return len(kw_a & kw_b) / len(union) >= threshold


def _contains_at_word_boundary(longer: str, shorter: str) -> bool:
    start = longer.find(shorter)
    while start != -1:
        end = start + len(shorter)
        before_ok = start == 0 or not longer[start - 1].isalnum()
        after_ok = end >= len(longer) or not longer[end].isalnum()
        if before_ok and after_ok:
            return True
        start = longer.find(shorter, start + 1)
    return False


def is_semantic_duplicate(a: str, b: str) -> bool:
    """Return True when *a* and *b* express the same entry."""
    norm_a = normalize(a)
    norm_b = normalize(b)

    if norm_a == norm_b:
        return True

    if _keyword_overlap(a, b):
        return True

    if len(norm_a) <= len(norm_b):
        shorter, longer = norm_a, norm_b
    else:
        shorter, longer = norm_b, norm_a
    if len(shorter) >= MIN_SUBSTRING_CHARS and _contains_at_word_boundary(longer, shorter):
        return True

    return False


def dedupe(items: Iterable[str]) -> list[str]:
    """Order-preserving removal of semantic duplicates (first occurrence wins)."""
    kept: list[str] = []
    for item in items:
        if not any(is_semantic_duplicate(existing, item) for existing in kept):
            kept.append(item)
    return kept
