"""Lexical and structural similarity between search query strings.

Every function here is pure. ``similarity`` is the only entry point callers
need; the helpers are exposed for tests and for the query scorer.
"""
from __future__ import annotations

import re
from typing import Any

from contactscout.models.queries import SimilarityMethod

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
    }
)

SYNONYMS: dict[str, tuple[str, ...]] = {
    "journalist": ("reporter", "writer", "author", "correspondent"),
    "media": ("news", "press", "publication", "outlet"),
    "contact": ("reach", "email", "connect"),
    "search": ("find", "look", "research", "investigate"),
    "technology": ("tech", "software", "digital", "it"),
    "business": ("finance", "corporate", "commercial", "company"),
    "sports": ("athletics", "games", "competition", "fitness"),
    "health": ("medical", "wellness", "healthcare", "medicine"),
}

ADVANCED_OPERATORS = ("site:", "filetype:", "intitle:", "inurl:", "related:")

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_EXACT_PHRASE = re.compile(r'"[^"]+"')
_BOOLEAN = re.compile(r"\b(and|or|not)\b")
_EXCLUDE = re.compile(r"-\w+")


def normalize_query(query: str) -> str:
    lowered = _NON_WORD.sub(" ", query.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + cost,
                )
            )
        previous = current
    return previous[-1]


def jaccard(left: set[str], right: set[str]) -> float:
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def exact_similarity(query1: str, query2: str) -> float:
    normalized1 = normalize_query(query1)
    normalized2 = normalize_query(query2)
    if normalized1 == normalized2:
        return 1.0

    word_similarity = jaccard(set(normalized1.split()), set(normalized2.split()))

    max_length = max(len(normalized1), len(normalized2))
    edit_similarity = 1.0 if max_length == 0 else 1.0 - levenshtein(normalized1, normalized2) / max_length

    return word_similarity * 0.7 + edit_similarity * 0.3


def extract_keywords(query: str) -> list[str]:
    words = _WHITESPACE.split(_NON_WORD.sub(" ", query.lower()))
    return list(dict.fromkeys(w for w in words if len(w) > 2 and w not in STOP_WORDS))


def _are_synonyms(word1: str, word2: str) -> bool:
    return word2 in SYNONYMS.get(word1, ()) or word1 in SYNONYMS.get(word2, ())


def synonym_overlap(keywords1: set[str], keywords2: set[str]) -> float:
    comparisons = len(keywords1) * len(keywords2)
    if comparisons == 0:
        return 0.0
    matches = sum(
        1
        for word1 in keywords1
        for word2 in keywords2
        if word1 == word2 or _are_synonyms(word1, word2)
    )
    return matches / comparisons


def keyword_similarity(keywords1: list[str], keywords2: list[str]) -> float:
    if not keywords1 and not keywords2:
        return 1.0
    if not keywords1 or not keywords2:
        return 0.0
    set1, set2 = set(keywords1), set(keywords2)
    return jaccard(set1, set2) * 0.7 + synonym_overlap(set1, set2) * 0.3


def query_structure(query: str) -> dict[str, Any]:
    lowered = query.lower()
    return {
        "has_quotes": '"' in lowered,
        "has_exact_phrase": bool(_EXACT_PHRASE.search(query)),
        "has_site_operator": "site:" in lowered,
        "has_filetype_operator": "filetype:" in lowered,
        "has_boolean_operators": bool(_BOOLEAN.search(lowered)),
        "has_exclude_operators": bool(_EXCLUDE.search(query)),
        "word_count": len(_WHITESPACE.split(query)),
        "has_advanced_operators": any(op in lowered for op in ADVANCED_OPERATORS),
    }


def structural_similarity(query1: str, query2: str) -> float:
    structure1 = query_structure(query1)
    structure2 = query_structure(query2)
    matches = sum(1 for key, value in structure1.items() if structure2.get(key) == value)
    return matches / len(structure1)


def semantic_similarity(query1: str, query2: str) -> float:
    keyword_sim = keyword_similarity(extract_keywords(query1), extract_keywords(query2))
    return keyword_sim * 0.6 + structural_similarity(query1, query2) * 0.4


def similarity(query1: str, query2: str, method: SimilarityMethod = "hybrid") -> float:
    """Return a similarity in [0, 1] between two queries.

    Queries that normalize to the same text are identical under every method.
    """
    if method not in ("exact", "semantic", "hybrid"):
        raise ValueError(f"Unknown similarity method: {method}")
    if normalize_query(query1) == normalize_query(query2):
        return 1.0
    if method == "exact":
        return exact_similarity(query1, query2)
    if method == "semantic":
        return semantic_similarity(query1, query2)
    return (exact_similarity(query1, query2) + semantic_similarity(query1, query2)) / 2
