from __future__ import annotations

from contactscout.models.search import SearchCriteria
from contactscout.services.query_templates import QueryTemplate, expand_templates, render_template


def test_empty_criteria_only_expands_query_only_templates():
    expanded = expand_templates("AI", SearchCriteria())
    assert expanded == [("base_media_contact", "AI media contact journalist reporter")]


def test_criteria_unlock_restricted_templates_in_priority_order():
    criteria = SearchCriteria(categories=("Technology",), beats=("Politics",))
    expanded = expand_templates("AI", criteria)
    ids = [template_id for template_id, _ in expanded]

    assert ids[0] == "base_media_contact"
    assert "tech_media" in ids
    assert "politics_beat" in ids
    assert "business_media" not in ids
    assert "country_category" not in ids
    assert ids.index("tech_media") < ids.index("multi_criteria")
    assert all("{" not in text for _, text in expanded)
    assert ("base_beat", "AI Politics journalist reporter") in expanded


def test_country_templates_match_case_insensitively():
    expanded = dict(expand_templates("climate", SearchCriteria(countries=("gb",))))
    assert expanded["uk_media"] == "climate UK British media journalist reporter"


def test_render_template_joins_plural_placeholders():
    criteria = SearchCriteria(beats=("Energy", "Climate"))
    assert render_template("{query} {beats}", "desk", criteria) == "desk Energy OR Climate"
    assert render_template("{query} {beat}", "desk", criteria) == "desk Energy"


def test_render_template_rejects_unresolved_placeholders():
    assert render_template("{query} {country}", "desk", SearchCriteria()) is None


def test_duplicate_renderings_are_dropped():
    templates = (
        QueryTemplate("one", "{query} reporters", 10),
        QueryTemplate("two", "{query}  Reporters", 5),
    )
    assert expand_templates("ai", SearchCriteria(), templates) == [("one", "ai reporters")]
