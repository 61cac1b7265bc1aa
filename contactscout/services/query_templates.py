"""Deterministic query templates expanded from the seed query and criteria."""
from __future__ import annotations

import re
from dataclasses import dataclass

from contactscout.models.search import SearchCriteria


@dataclass(frozen=True, slots=True)
class QueryTemplate:
    id: str
    template: str
    priority: int
    country: str | None = None
    category: str | None = None
    beat: str | None = None

    def applies_to(self, criteria: SearchCriteria) -> bool:
        if self.country and self.country.lower() not in {c.lower() for c in criteria.countries}:
            return False
        if self.category and self.category.lower() not in {c.lower() for c in criteria.categories}:
            return False
        if self.beat and self.beat.lower() not in {b.lower() for b in criteria.beats}:
            return False
        return True


DEFAULT_TEMPLATES: tuple[QueryTemplate, ...] = (
    QueryTemplate("base_media_contact", "{query} media contact journalist reporter", 100),
    QueryTemplate("base_beat", "{query} {beat} journalist reporter", 90),
    QueryTemplate("base_category", "{query} {category} media journalism", 90),
    QueryTemplate("tech_media", "{query} technology tech journalist reporter media", 88, category="Technology"),
    QueryTemplate("business_media", "{query} business finance journalist reporter media", 88, category="Business"),
    QueryTemplate("sports_media", "{query} sports journalist reporter media athletics", 88, category="Sports"),
    QueryTemplate("politics_beat", "{query} politics government journalist reporter political", 87, beat="Politics"),
    QueryTemplate("health_beat", "{query} health medical journalist reporter healthcare", 87, beat="Healthcare"),
    QueryTemplate("entertainment_beat", "{query} entertainment celebrity journalist reporter media", 87, beat="Entertainment"),
    QueryTemplate("uk_media", "{query} UK British media journalist reporter", 85, country="GB"),
    QueryTemplate("us_media", "{query} US American media journalist reporter", 85, country="US"),
    QueryTemplate("ca_media", "{query} Canada Canadian media journalist reporter", 85, country="CA"),
    QueryTemplate("country_category", "{query} {country} {category} media journalist reporter", 80),
    QueryTemplate("multi_criteria", "{query} {category} {beat} journalist reporter media", 75),
    QueryTemplate("advanced_media", "{query} site:.com OR site:.org {category} journalist reporter author contact", 70),
)

_PLACEHOLDERS = {
    "country": "countries",
    "category": "categories",
    "beat": "beats",
    "language": "languages",
    "topic": "topics",
}
_UNRESOLVED = re.compile(r"\{[a-z_]+\}")
_WHITESPACE = re.compile(r"\s+")


def render_template(template: str, query: str, criteria: SearchCriteria) -> str | None:
    """Fill a template; ``None`` when a placeholder has no criteria value.

    ``{beat}`` takes the first beat, ``{beats}`` all of them joined by OR.
    """
    text = template.replace("{query}", query.strip())
    for singular, plural in _PLACEHOLDERS.items():
        values: tuple[str, ...] = getattr(criteria, plural)
        if not values:
            continue
        text = text.replace("{" + plural + "}", " OR ".join(values))
        text = text.replace("{" + singular + "}", values[0])
    if _UNRESOLVED.search(text):
        return None
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) < 3:
        return None
    return text


def expand_templates(
    query: str,
    criteria: SearchCriteria,
    templates: tuple[QueryTemplate, ...] = DEFAULT_TEMPLATES,
) -> list[tuple[str, str]]:
    """Return ``(template_id, text)`` pairs in priority order, without repeats."""
    seen: set[str] = set()
    expanded: list[tuple[str, str]] = []
    for template in sorted(templates, key=lambda t: t.priority, reverse=True):
        if not template.applies_to(criteria):
            continue
        text = render_template(template.template, query, criteria)
        if not text:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        expanded.append((template.id, text))
    return expanded
