from __future__ import annotations

import json

import httpx
import pytest

from contactscout.llm_client import Completion, Usage
from contactscout.models.search import SearchCriteria, SearchOptions
from contactscout.tools.base import RetryPolicy
from contactscout.tools.query_generator import QueryGenerator, build_context

NO_RETRY = RetryPolicy(max_attempts=1)


class FakeLLM:
    configured = True
    model = "test-model"

    def __init__(self, reply: str = "[]", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, *, system: str, user: str, max_tokens: int = 1024) -> Completion:
        self.prompts.append(user)
        if self.error is not None:
            raise self.error
        return Completion(text=self.reply, model=self.model, usage=Usage())


def test_build_context_lists_populated_criteria():
    context = build_context(SearchCriteria(beats=("Climate",), countries=("US", "GB")))
    assert "Beats: Climate" in context
    assert "Countries: US, GB" in context
    assert "Languages" not in context
    assert build_context(SearchCriteria()) == ""


@pytest.mark.asyncio
async def test_templates_only_without_llm():
    generator = QueryGenerator(llm=None, retry_policy=NO_RETRY)
    queries = await generator.generate_queries("AI", SearchCriteria(), SearchOptions(), search_id="s1")

    template_ids = {q.metadata["template_id"] for q in queries}
    assert template_ids == {"original", "base_media_contact"}
    assert all(not q.metadata["ai_enhanced"] for q in queries)
    assert all(q.search_id == "s1" and q.original_query == "AI" for q in queries)
    assert len({q.batch_id for q in queries}) == 1
    overall = [q.scores.overall for q in queries]
    assert overall == sorted(overall, reverse=True)


@pytest.mark.asyncio
async def test_llm_expansions_are_added_and_deduplicated():
    llm = FakeLLM(reply=json.dumps(["climate desk editors", "AI", "  ", 42]))
    generator = QueryGenerator(llm=llm, retry_policy=NO_RETRY)

    queries = await generator.generate_queries("AI", SearchCriteria(beats=("Climate",)), SearchOptions())

    assert "Beats: Climate" in llm.prompts[0]
    ai = [q for q in queries if q.metadata["ai_enhanced"]]
    assert [q.text for q in ai] == ["climate desk editors"]
    assert ai[0].metadata["model"] == "test-model"
    assert [q.text.lower() for q in queries].count("ai") == 1


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_templates():
    llm = FakeLLM(error=httpx.ConnectError("down"))
    generator = QueryGenerator(llm=llm, retry_policy=NO_RETRY)

    queries = await generator.generate_queries("AI", SearchCriteria(), SearchOptions())

    assert queries
    assert not any(q.metadata["ai_enhanced"] for q in queries)
    assert (await generator.get_health()).error_rate == 100.0


@pytest.mark.asyncio
async def test_disabled_ai_enhancement_skips_llm():
    llm = FakeLLM(reply=json.dumps(["extra"]))
    generator = QueryGenerator(llm=llm, retry_policy=NO_RETRY)
    await generator.generate_queries("AI", SearchCriteria(), SearchOptions(enable_ai_enhancement=False))
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_empty_seed_still_yields_template_queries():
    generator = QueryGenerator(llm=None, retry_policy=NO_RETRY)
    queries = await generator.generate_queries("", SearchCriteria(), SearchOptions())
    assert [q.text for q in queries] == ["media contact journalist reporter"]


@pytest.mark.asyncio
async def test_max_queries_caps_output():
    generator = QueryGenerator(llm=None, retry_policy=NO_RETRY, max_queries=2)
    criteria = SearchCriteria(categories=("Technology",), beats=("Politics",), countries=("US",))
    queries = await generator.generate_queries("AI", criteria, SearchOptions())
    assert len(queries) == 2


@pytest.mark.asyncio
async def test_unparseable_reply_falls_back_to_templates():
    llm = FakeLLM(reply="no json here")
    generator = QueryGenerator(llm=llm, retry_policy=NO_RETRY)
    queries = await generator.generate_queries("AI", SearchCriteria(), SearchOptions())
    assert all(not q.metadata["ai_enhanced"] for q in queries)
