"""Query scoring: relevance, diversity, and coverage of a generated query.

``coverage`` folds the query's complexity (operators, phrases, length) and
its specificity (how many criteria it mentions) into one value, weighted
20:15 so the overall score keeps complexity at 0.20 and specificity at 0.15.
"""
from __future__ import annotations

import re
from typing import Sequence

from contactscout.models.queries import COVERAGE_WEIGHTS, QueryScores
from contactscout.models.search import SearchCriteria

MEDIA_KEYWORDS = ("journalist", "reporter", "media", "editor", "writer", "author", "contact")

SPECIFICITY_FACTORS = {
    "countries": 0.15,
    "categories": 0.12,
    "beats": 0.15,
    "languages": 0.08,
    "topics": 0.10,
}

COMPLEXITY_INDICATORS = ("site:", "filetype:", "intitle:", "inurl:", "related:", "author:", "-", '"')

COUNTRY_SYNONYMS = {
    "US": ("america", "usa", "united states", "american"),
    "GB": ("uk", "britain", "united kingdom", "british"),
    "CA": ("canada", "canadian"),
    "AU": ("australia", "australian"),
    "DE": ("germany", "german"),
    "FR": ("france", "french"),
}

GEOGRAPHIC_TERMS = (
    "city", "state", "region", "local", "national", "international", "global",
    "worldwide", "asia", "europe", "america", "africa", "north", "south", "east",
    "west", "central",
)

DATE_TERMS = (
    "2024", "2025", "2026", "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december", "recent",
    "latest", "current", "year",
)

_WHITESPACE = re.compile(r"\s+")
_PHRASE = re.compile(r'"[^"]+"')
_EXCLUDE = re.compile(r"-\w+")


def _terms(text: str) -> set[str]:
    return {t for t in _WHITESPACE.split(text.lower().strip()) if t}


def text_similarity(text1: str, text2: str) -> float:
    words1, words2 = _terms(text1), _terms(text2)
    union = words1 | words2
    return len(words1 & words2) / len(union) if union else 0.0


def _criteria_match(lowered: str, values: Sequence[str]) -> float:
    if not values:
        return 0.0
    return sum(1 for v in values if v.lower() in lowered) / len(values)


class QueryScorer:
    def relevance(self, query: str, original_query: str, criteria: SearchCriteria) -> float:
        lowered = query.lower()
        score = 0.5 + text_similarity(query, original_query) * 0.3
        score += _criteria_match(lowered, criteria.categories) * 0.15
        score += _criteria_match(lowered, criteria.beats) * 0.15
        score += _criteria_match(lowered, criteria.countries) * 0.10
        score += _criteria_match(lowered, criteria.topics) * 0.10
        if any(keyword in lowered for keyword in MEDIA_KEYWORDS):
            score += 0.1
        return min(score, 1.0)

    def diversity(self, query: str, existing: Sequence[str]) -> float:
        if not existing:
            return 1.0
        average = sum(text_similarity(query, other) for other in existing) / len(existing)
        diversity = 1.0 - average
        seen: set[str] = set()
        for other in existing:
            seen |= _terms(other)
        if len(_terms(query) - seen) > 2:
            diversity += 0.1
        return min(diversity, 1.0)

    def specificity(self, query: str, criteria: SearchCriteria) -> float:
        lowered = query.lower()
        score = 0.2
        for field_name, weight in SPECIFICITY_FACTORS.items():
            values: tuple[str, ...] = getattr(criteria, field_name)
            mentioned = any(v.lower() in lowered for v in values)
            if not mentioned and field_name == "countries":
                mentioned = any(
                    synonym in lowered
                    for country in values
                    for synonym in COUNTRY_SYNONYMS.get(country.upper(), ())
                )
            if mentioned:
                score += weight
        if any(term in lowered for term in GEOGRAPHIC_TERMS):
            score += 0.1
        if any(term in lowered for term in DATE_TERMS):
            score += 0.05
        return min(score, 1.0)

    def complexity(self, query: str) -> float:
        lowered = query.lower()
        score = 0.3
        score += 0.1 * sum(1 for indicator in COMPLEXITY_INDICATORS if indicator in lowered)

        word_count = len(_WHITESPACE.split(query.strip())) if query.strip() else 0
        if word_count > 5:
            score += 0.1
        if word_count > 10:
            score += 0.1

        phrases = _PHRASE.findall(query)
        if phrases:
            score += min(len(phrases) * 0.05, 0.2)
        for operator in (" and ", " or ", " not "):
            if operator in lowered:
                score += 0.05
        excludes = _EXCLUDE.findall(query)
        if excludes:
            score += min(len(excludes) * 0.03, 0.1)
        return min(score, 1.0)

    def coverage(self, query: str, criteria: SearchCriteria) -> float:
        weighted = (
            COVERAGE_WEIGHTS["complexity"] * self.complexity(query)
            + COVERAGE_WEIGHTS["specificity"] * self.specificity(query, criteria)
        )
        return weighted / sum(COVERAGE_WEIGHTS.values())

    def score(
        self,
        query: str,
        original_query: str,
        criteria: SearchCriteria,
        existing: Sequence[str] = (),
    ) -> QueryScores:
        return QueryScores.combine(
            relevance=self.relevance(query, original_query, criteria),
            diversity=self.diversity(query, existing),
            coverage=self.coverage(query, criteria),
        )

    def score_batch(
        self, queries: Sequence[str], original_query: str, criteria: SearchCriteria
    ) -> list[QueryScores]:
        """Score each query against the ones before it in the batch."""
        return [
            self.score(query, original_query, criteria, queries[:index])
            for index, query in enumerate(queries)
        ]
