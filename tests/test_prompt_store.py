from __future__ import annotations

import pytest

from contactscout.services.prompt_store import get_prompt, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "query_generation.expansion_system",
        today_iso="2026-02-21",
        query_count=6,
    )
    assert "Today is 2026-02-21." in prompt
    assert "generate 6 web search queries" in prompt


def test_extraction_prompt_carries_page_fields():
    prompt = render_prompt(
        "contact_extraction.user",
        max_contacts=5,
        query="climate reporters",
        url="https://dailynews.com/team",
        title="Team",
        content="Jane Doe, reporter",
    )
    assert "up to 5 contacts" in prompt
    assert prompt.endswith("Jane Doe, reporter")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="query_count"):
        render_prompt("query_generation.expansion_system", today_iso="2026-02-21")


def test_get_prompt_rejects_section_keys():
    with pytest.raises(TypeError):
        get_prompt("query_generation")
